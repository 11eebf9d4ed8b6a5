"""
Sync transport: push one packet, apply the server's acknowledgement to the
local store.

Delivery is at-least-once. A row is only marked synced after the server said
so; on any failure the same entity ids are resent in a later packet and the
server's idempotent reconciliation absorbs the duplicate.
"""
import hashlib
import json
import sys
from datetime import datetime, timezone
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .local_store import SYNC_TABLES, LocalStore
from .packet_builder import build_packet, packet_entity_ids, packet_entity_versions

TERMINAL_NOT_RECOGNIZED = "Terminal not recognized"

# Ack error entity name -> packet array.
ENTITY_KEYS = {
    'Customer': 'customers',
    'Sale': 'sales',
    'WorkShift': 'shifts',
    'CashTransaction': 'cash_transactions',
    'StockMovement': 'stock_movements',
}


def json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def post_json(url, payload, headers=None, timeout=10):
    data = json.dumps(payload, default=str).encode('utf-8')
    req = Request(url, data=data, headers=headers or {}, method='POST')
    req.add_header('Content-Type', 'application/json')
    with urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode('utf-8'))


def auth_headers(cfg: dict) -> dict:
    token = (cfg.get('api_token') or '').strip()
    return {'Authorization': f'Bearer {token}'} if token else {}


def _local_failure(packet_id: str, error: str) -> dict:
    return {
        'packet_id': packet_id,
        'status': 'FAILED',
        'processed_at': datetime.now(timezone.utc).isoformat(),
        'errors': [{'entity': 'Transport', 'error': error}],
    }


def push_packet(cfg: dict, packet: dict) -> dict:
    """
    POST the packet. Network errors, timeouts and non-2xx responses come back
    as a local FAILED ack so callers handle a single shape.
    """
    url = f"{cfg['api_base_url'].rstrip('/')}/sync/push"
    try:
        ack = post_json(url, packet, headers=auth_headers(cfg), timeout=float(cfg.get('http_timeout_seconds') or 10))
    except HTTPError as ex:
        return _local_failure(packet['id'], f"http {ex.code}")
    except (URLError, TimeoutError, OSError) as ex:
        return _local_failure(packet['id'], str(ex))
    except ValueError as ex:
        return _local_failure(packet['id'], f"invalid response: {ex}")
    if not isinstance(ack, dict) or ack.get('status') not in {'SUCCESS', 'PARTIAL', 'FAILED'}:
        return _local_failure(packet['id'], "invalid response")
    return ack


def rejected_ids(packet: dict, ack: dict) -> dict:
    """
    {key: {id: error}} for the packet entities a PARTIAL ack rejected. An error
    naming an entity type without an id rejects every row of that type.
    """
    out: dict = {key: {} for key in SYNC_TABLES}
    if ack.get('status') != 'PARTIAL':
        return out
    sent = packet_entity_ids(packet)
    for err in ack.get('errors') or []:
        key = ENTITY_KEYS.get(err.get('entity'))
        if not key:
            continue
        message = str(err.get('error') or 'rejected')
        if err.get('id'):
            if str(err['id']) in sent[key]:
                out[key][str(err['id'])] = message
        else:
            for entity_id in sent[key]:
                out[key].setdefault(entity_id, message)
    return out


def acked_ids(packet: dict, ack: dict) -> dict:
    """
    {key: {id: version}} of the packet entities that may be marked synced.
    SUCCESS: all. PARTIAL: all but the rejected ones. FAILED: none.
    """
    sent = packet_entity_versions(packet)
    status = ack.get('status')
    if status not in {'SUCCESS', 'PARTIAL'}:
        return {key: {} for key in sent}
    rejected = rejected_ids(packet, ack)
    return {
        key: {i: v for i, v in versions.items() if i not in rejected[key]}
        for key, versions in sent.items()
    }


def apply_ack(store: LocalStore, cfg: dict, packet: dict, ack: dict) -> dict:
    """
    Mark acknowledged rows synced (only at the version that was sent), record
    rejections, and track whether the server knows this terminal.
    """
    marked = {}
    for key, versions in acked_ids(packet, ack).items():
        if versions:
            marked[key] = store.mark_synced(key, versions)
    for key, errors in rejected_ids(packet, ack).items():
        store.record_sync_errors(key, errors)

    status = ack.get('status')
    if status in {'SUCCESS', 'PARTIAL'}:
        cfg['terminal_confirmed'] = True
    elif any((e.get('error') == TERMINAL_NOT_RECOGNIZED) for e in ack.get('errors') or []):
        cfg['terminal_confirmed'] = False
    return marked


def sync_once(store: LocalStore, cfg: dict, only=None, exclude=None):
    """
    Build, push and acknowledge one packet.
    Returns (packet, ack); both are None when nothing is pending.
    """
    packet = build_packet(store, cfg, only=only, exclude=exclude)
    if packet is None:
        return None, None
    ack = push_packet(cfg, packet)
    apply_ack(store, cfg, packet, ack)
    counts = {key: len(ids) for key, ids in packet_entity_ids(packet).items() if ids}
    if ack['status'] == 'FAILED':
        json_log("warning", "agent.sync.failed", packet_id=packet['id'], errors=ack.get('errors'), entities=counts)
    else:
        json_log("info", "agent.sync.pushed", packet_id=packet['id'], status=ack['status'], entities=counts, errors=len(ack.get('errors') or []))
    return packet, ack


def next_retry_delay(attempt: int, terminal_id: str, max_backoff: int = 300) -> int:
    """
    Exponential backoff (1s, 2s, 4s, ...) capped at max_backoff, plus a small
    deterministic jitter so a fleet of terminals does not retry in lockstep.
    """
    attempt = max(1, int(attempt or 1))
    cap = max(1, int(max_backoff or 300))
    delay = min(cap, 2 ** min(attempt - 1, 20))
    jitter_window = max(1, min(30, delay // 5 or 1))
    digest = hashlib.sha1(f"{terminal_id}:{attempt}".encode('utf-8')).hexdigest()
    return min(cap, delay + int(digest[:8], 16) % (jitter_window + 1))


def pending_total(store: LocalStore) -> int:
    return sum(store.pending_counts().get(key, 0) for key in SYNC_TABLES)
