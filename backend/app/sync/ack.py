from __future__ import annotations

import json
import sys
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Iterable, Optional

from .schemas import SyncAck, SyncError


def json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


class SyncLogBuffer:
    """
    Bounded in-memory diagnostic log for `/sync/logs`.

    Lives for the lifetime of the hosting process; the oldest line is evicted
    once `capacity` is reached. Callers only get copies of the lines.
    """

    def __init__(self, capacity: int = 200):
        self.capacity = max(1, int(capacity))
        self._lines: deque[str] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()

    def append(self, message: str, *, at: Optional[datetime] = None) -> str:
        ts = (at or datetime.now(timezone.utc)).isoformat()
        line = f"[{ts}] {message}"
        with self._lock:
            self._lines.append(line)
        return line

    def tail(self, limit: int = 50) -> list[str]:
        """Most recent lines first."""
        with self._lock:
            lines = list(self._lines)
        lines.reverse()
        return lines[: max(0, int(limit))]

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


def build_ack(
    packet_id: str,
    errors: Optional[Iterable[SyncError]] = None,
    *,
    failed: bool = False,
    processed_at: Optional[datetime] = None,
) -> SyncAck:
    errs = list(errors or [])
    if failed:
        status = "FAILED"
    elif errs:
        status = "PARTIAL"
    else:
        status = "SUCCESS"
    return SyncAck(
        packet_id=packet_id,
        status=status,
        processed_at=processed_at or datetime.now(timezone.utc),
        errors=errs or None,
    )


def failed_ack(packet_id: str, entity: str, error: str, entity_id: Optional[str] = None) -> SyncAck:
    return build_ack(packet_id, [SyncError(entity=entity, error=error, id=entity_id)], failed=True)
