from __future__ import annotations

from typing import Any, Callable, Optional

from pydantic import ValidationError

from ..config import settings
from .ack import SyncLogBuffer, build_ack, failed_ack, json_log
from .reconciler import reconcile_packet
from .schemas import SyncAck, SyncError, SyncPacket
from .store import UnitOfWork
from .terminals import TerminalRejected, resolve_terminal


def parse_packet(body: Any, *, max_entities: Optional[int] = None) -> SyncPacket:
    """
    Validate a raw request body. Raises ValidationError for shape problems and
    ValueError when the packet exceeds the entity bound.
    """
    packet = SyncPacket.model_validate(body)
    limit = settings.sync_max_entities if max_entities is None else max_entities
    count = packet.entity_count()
    if count > limit:
        raise ValueError(f"packet carries {count} entities (max {limit})")
    return packet


def _raw_packet_id(body: Any) -> str:
    if isinstance(body, dict) and body.get("id") is not None:
        return str(body.get("id"))
    return ""


def _validation_errors(ex: ValidationError) -> list[SyncError]:
    out = []
    for err in ex.errors():
        loc = ".".join(str(p) for p in err.get("loc") or ())
        out.append(SyncError(entity="Packet", error=f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))))
    return out or [SyncError(entity="Packet", error="invalid packet")]


def reject_body(body: Any, ex: Exception, log: Optional[SyncLogBuffer] = None) -> SyncAck:
    """FAILED ack for a body that never made it to a valid packet."""
    packet_id = _raw_packet_id(body)
    if isinstance(ex, ValidationError):
        ack = build_ack(packet_id, _validation_errors(ex), failed=True)
    else:
        ack = failed_ack(packet_id, "Packet", str(ex))
    json_log("warning", "sync.packet.failed", packet_id=packet_id, reason="invalid packet", errors=[e.error for e in ack.errors or []])
    if log is not None:
        log.append(f"Packet {packet_id or '?'} rejected: invalid packet")
    return ack


def process_packet(
    packet: SyncPacket,
    caller: Optional[dict],
    uow_factory: Callable[[], UnitOfWork],
    log: Optional[SyncLogBuffer] = None,
    *,
    max_attempts: Optional[int] = None,
) -> SyncAck:
    """
    Resolve the terminal and reconcile the packet in one unit of work.

    Every outcome is an acknowledgement: rejections and unexpected errors roll
    the whole packet back and come back as FAILED. Serialization failures and
    deadlocks are retried with a fresh unit of work.
    """
    attempts = max(1, int(max_attempts or settings.sync_max_attempts))
    counts = {
        "customers": len(packet.customers or []),
        "sales": len(packet.sales or []),
        "shifts": len(packet.shifts or []),
        "cash_transactions": len(packet.cash_transactions or []),
        "stock_movements": len(packet.stock_movements or []),
    }
    json_log("info", "sync.packet.received", packet_id=packet.id, terminal_id=packet.terminal_id, **counts)
    if log is not None:
        log.append(
            f"Received packet {packet.id} from terminal {packet.terminal_id}: "
            f"sales={counts['sales']} shifts={counts['shifts']} customers={counts['customers']} "
            f"cash={counts['cash_transactions']} stock={counts['stock_movements']}"
        )

    attempt = 0
    while True:
        attempt += 1
        uow = uow_factory()
        try:
            with uow:
                terminal = resolve_terminal(
                    uow,
                    packet.terminal_id,
                    caller,
                    organization_id=packet.organization_id,
                    terminal_name=packet.terminal_name,
                )
                errors, stats = reconcile_packet(uow, packet, terminal)
                uow.commit()
        except TerminalRejected as ex:
            json_log("error", "sync.packet.failed", packet_id=packet.id, terminal_id=packet.terminal_id, entity=ex.entity, error=ex.message)
            if log is not None:
                log.append(f"Packet {packet.id} rejected ({ex.entity}): {ex.message}")
            return failed_ack(packet.id, ex.entity, ex.message)
        except Exception as ex:
            if isinstance(ex, uow.retryable_errors) and attempt < attempts:
                json_log("warning", "sync.packet.retry", packet_id=packet.id, attempt=attempt, error=str(ex))
                continue
            json_log("error", "sync.packet.failed", packet_id=packet.id, terminal_id=packet.terminal_id, attempt=attempt, error=str(ex))
            if log is not None:
                log.append(f"Packet {packet.id} failed: {ex}")
            return failed_ack(packet.id, "Packet", str(ex) or ex.__class__.__name__)

        ack = build_ack(packet.id, errors)
        if log is not None:
            suffix = f" ({len(errors)} skipped)" if errors else ""
            log.append(f"Packet {packet.id} from terminal {packet.terminal_id}: {ack.status}{suffix}")
        json_log("info", "sync.packet.processed", packet_id=packet.id, terminal_id=packet.terminal_id, status=ack.status, **stats)
        return ack
