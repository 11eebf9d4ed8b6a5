import json
import uuid
from datetime import datetime, timezone
from typing import Optional

from .local_store import SYNC_TABLES, LocalStore

# Local bookkeeping columns the server does not need. `version` stays on each
# row (the server ignores it) so the ack can be matched to what was sent.
_LOCAL_ONLY = {'synced', 'updated_at', 'sync_attempts', 'last_error'}


def _strip(row: dict) -> dict:
    return {k: v for k, v in row.items() if k not in _LOCAL_ONLY}


def _sale_to_wire(row: dict) -> dict:
    out = _strip(row)
    out['is_tax_inclusive'] = bool(out.get('is_tax_inclusive'))
    raw = out.pop('discount_info_json', None)
    if raw:
        out['discount_info'] = json.loads(raw)
    out['items'] = [
        {k: v for k, v in it.items() if k not in {'sale_id', 'line_no'}}
        for it in (row.get('items') or [])
    ]
    return out


def build_packet(
    store: LocalStore,
    cfg: dict,
    batch_size: Optional[int] = None,
    only: Optional[dict] = None,
    exclude: Optional[dict] = None,
) -> Optional[dict]:
    """
    Collect pending rows into one packet, at most `batch_size` entities, filled
    in reconciliation order. `only` restricts the packet to {key: [ids]}
    (eager sync of a just-opened shift, a fresh cash transaction, ...);
    `exclude` ({key: ids}) leaves rows out, e.g. ones rejected earlier in the
    same flush.

    Returns None when nothing is pending. Never marks anything synced.
    """
    budget = int(batch_size or cfg.get('sync_batch_size') or 100)
    packet = {
        'id': str(uuid.uuid4()),
        'terminal_id': cfg['terminal_id'],
        'created_at': datetime.now(timezone.utc).isoformat(),
    }
    total = 0
    for key in SYNC_TABLES:
        if budget <= 0:
            break
        ids = None
        if only is not None:
            if key not in only:
                continue
            ids = only[key]
        rows = store.list_unsynced(key, budget, ids=ids, exclude=(exclude or {}).get(key))
        if not rows:
            continue
        if key == 'sales':
            packet[key] = [_sale_to_wire(r) for r in rows]
        else:
            packet[key] = [_strip(r) for r in rows]
        budget -= len(rows)
        total += len(rows)

    if not total:
        return None
    if not cfg.get('terminal_confirmed'):
        # The server may not know this terminal yet; give it enough to recreate it.
        packet['organization_id'] = cfg.get('organization_id') or None
        packet['terminal_name'] = cfg.get('terminal_name') or None
    return packet


def packet_entity_ids(packet: dict) -> dict:
    return {key: [r['id'] for r in packet.get(key) or []] for key in SYNC_TABLES}


def packet_entity_versions(packet: dict) -> dict:
    return {key: {r['id']: r.get('version') or 0 for r in packet.get(key) or []} for key in SYNC_TABLES}
