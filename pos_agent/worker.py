import sys
import threading
import traceback
from typing import Optional

from .config import save_config
from .local_store import LocalStore
from .transport import json_log, next_retry_delay, pending_total, rejected_ids, sync_once


class SyncWorker:
    """
    Background flush loop. Wakes every `sync_interval_seconds`, or immediately
    on request_flush(); backs off after consecutive FAILED pushes.
    """

    def __init__(self, store: LocalStore, cfg: dict, config_path: Optional[str] = None):
        self.store = store
        self.cfg = cfg
        self.config_path = config_path
        self.failures = 0
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread = None
        self._lock = threading.Lock()

    def request_flush(self):
        self._wake.set()

    def run_once(self) -> float:
        """
        Drain pending rows. Returns how long to wait before the next pass.

        Rows a PARTIAL ack rejected stay pending but are left out of the rest of
        this pass, so the valid rows behind them still go out.
        """
        interval = float(self.cfg.get('sync_interval_seconds') or 15)
        rejected: dict = {}
        with self._lock:
            while not self._stop.is_set():
                confirmed = self.cfg.get('terminal_confirmed')
                packet, ack = sync_once(self.store, self.cfg, exclude=rejected)
                if self.config_path and confirmed != self.cfg.get('terminal_confirmed'):
                    save_config(self.cfg, self.config_path)
                if packet is None:
                    self.failures = 0
                    return interval
                if ack['status'] == 'FAILED':
                    self.failures += 1
                    delay = next_retry_delay(self.failures, self.cfg.get('terminal_id') or '', self.cfg.get('max_backoff_seconds') or 300)
                    json_log("info", "agent.sync.backoff", attempt=self.failures, delay_seconds=delay, pending=pending_total(self.store))
                    return float(delay)
                self.failures = 0
                for key, errors in rejected_ids(packet, ack).items():
                    if errors:
                        rejected.setdefault(key, set()).update(errors)
        return interval

    def run_forever(self):
        while not self._stop.is_set():
            try:
                wait = self.run_once()
            except Exception as ex:
                # Never crash the sync loop; the local store is the source of truth.
                json_log("error", "agent.sync.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)
                wait = float(self.cfg.get('sync_interval_seconds') or 15)
            self._wake.wait(timeout=wait)
            self._wake.clear()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="pos-sync", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
