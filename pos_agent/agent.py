import argparse
import json
import os
import sys
import time
from urllib.error import HTTPError, URLError

from . import config as agent_config
from .local_store import LocalStore, LocalStoreError
from .transport import auth_headers, json_log, pending_total, post_json, sync_once
from .worker import SyncWorker

DB_PATH = os.path.join(agent_config.ROOT, 'pos.sqlite')


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def _api_url(cfg: dict, path: str) -> str:
    return f"{(cfg.get('api_base_url') or '').rstrip('/')}{path}"


def eager_flush(store: LocalStore, cfg: dict, config_path: str, only: dict):
    """
    Best-effort immediate push of just-written rows. Failures are fine: the
    rows stay pending and the regular loop picks them up.
    """
    confirmed = cfg.get('terminal_confirmed')
    packet, ack = sync_once(store, cfg, only=only)
    if confirmed != cfg.get('terminal_confirmed'):
        agent_config.save_config(cfg, config_path)
    return ack


def cmd_init_db(args, store, cfg):
    store.init_db()
    if agent_config.ensure_terminal_id(cfg):
        agent_config.save_config(cfg, args.config)
    _print({'ok': True, 'db': store.db_path, 'terminal_id': cfg['terminal_id']})


def cmd_login(args, store, cfg):
    try:
        res = post_json(_api_url(cfg, '/auth/login'), {'username': args.username, 'password': args.password}, timeout=float(cfg.get('http_timeout_seconds') or 10))
    except HTTPError as ex:
        _print({'ok': False, 'error': f"http {ex.code}"})
        return 1
    except URLError as ex:
        _print({'ok': False, 'error': str(ex)})
        return 1
    cfg['api_token'] = res['token']
    org_id = (res.get('user') or {}).get('organization_id')
    if org_id:
        cfg['organization_id'] = org_id
    agent_config.save_config(cfg, args.config)
    _print({'ok': True, 'user': res.get('user'), 'expires_at': res.get('expires_at')})
    return 0


def cmd_register(args, store, cfg):
    body = {'organization_id': cfg.get('organization_id') or None, 'device_id': args.device_id}
    try:
        res = post_json(_api_url(cfg, '/terminals/register'), body, headers=auth_headers(cfg), timeout=float(cfg.get('http_timeout_seconds') or 10))
    except HTTPError as ex:
        _print({'ok': False, 'error': f"http {ex.code}"})
        return 1
    except URLError as ex:
        _print({'ok': False, 'error': str(ex)})
        return 1
    cfg['terminal_id'] = res['terminal_id']
    cfg['terminal_name'] = res.get('name') or ''
    cfg['terminal_confirmed'] = True
    agent_config.save_config(cfg, args.config)
    _print({'ok': True, **res})
    return 0


def cmd_sync(args, store, cfg):
    worker = SyncWorker(store, cfg, config_path=args.config)
    wait = worker.run_once()
    _print({'ok': worker.failures == 0, 'pending': store.pending_counts(), 'next_in_seconds': wait})
    return 0 if worker.failures == 0 else 1


def cmd_run(args, store, cfg):
    worker = SyncWorker(store, cfg, config_path=args.config)
    worker.start()
    json_log("info", "agent.started", terminal_id=cfg.get('terminal_id'), pending=pending_total(store))
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        worker.stop()
    return 0


def cmd_status(args, store, cfg):
    _print({
        'config': agent_config.public_config(cfg),
        'pending': store.pending_counts(),
        'open_shift': store.get_open_shift(),
    })
    return 0


def cmd_product(args, store, cfg):
    ingredients = json.loads(args.ingredients) if args.ingredients else []
    store.upsert_product({
        'id': args.id,
        'name': args.name,
        'price': args.price,
        'category': args.category,
        'type': args.type,
        'stock_level': args.stock,
        'ingredients': ingredients,
    })
    _print({'ok': True, 'product': store.get_product(args.id)})
    return 0


def cmd_customer(args, store, cfg):
    customer_id = store.upsert_customer({'id': args.id, 'name': args.name, 'phone': args.phone, 'email': args.email})
    _print({'ok': True, 'id': customer_id})
    return 0


def cmd_open_shift(args, store, cfg):
    shift = store.open_shift(args.opening_float, notes=args.notes)
    ack = eager_flush(store, cfg, args.config, {'shifts': [shift['id']]})
    _print({'ok': True, 'shift': shift, 'sync': (ack or {}).get('status')})
    return 0


def cmd_cash(args, store, cfg):
    txn = store.add_cash_transaction(args.type, args.amount, args.reason, performed_by=args.performed_by)
    ack = eager_flush(store, cfg, args.config, {'shifts': [txn['shift_id']], 'cash_transactions': [txn['id']]})
    _print({'ok': True, 'cash_transaction': txn, 'sync': (ack or {}).get('status')})
    return 0


def cmd_close_shift(args, store, cfg):
    shift = store.close_shift(args.actual_cash, notes=args.notes, closed_by=args.closed_by)
    _print({'ok': True, 'shift': shift})
    return 0


def cmd_sale(args, store, cfg):
    lines = []
    for spec in args.item:
        product_id, _, qty = spec.partition(':')
        lines.append({'product_id': product_id, 'quantity': int(qty or 1)})
    sale = store.record_sale(
        lines,
        args.payment,
        customer_id=args.customer,
        discount_amount=args.discount,
        tax_rate=args.tax_rate,
        tax_name=args.tax_name,
        tax_inclusive=not args.tax_exclusive,
        notes=args.notes,
    )
    _print({'ok': True, 'sale': sale})
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Offline-first POS terminal agent")
    parser.add_argument(
        "--db",
        default=os.environ.get("POS_DB_PATH", DB_PATH),
        help="SQLite DB path (default: pos_agent/pos.sqlite). Useful to run several terminals on one machine.",
    )
    parser.add_argument(
        "--config",
        default=os.environ.get("POS_CONFIG_PATH", agent_config.CONFIG_PATH),
        help="Config JSON path (default: pos_agent/config.json).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the local schema and a terminal id")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("login", help="Obtain an API token")
    p.add_argument("--username", required=True)
    p.add_argument("--password", required=True)
    p.set_defaults(func=cmd_login)

    p = sub.add_parser("register", help="Register this terminal with the server")
    p.add_argument("--device-id", default=None)
    p.set_defaults(func=cmd_register)

    p = sub.add_parser("sync", help="Push pending rows once")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("run", help="Run the background sync loop")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("status", help="Show config and pending counts")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("product", help="Create or update a local product")
    p.add_argument("--id", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--price", type=float, default=0)
    p.add_argument("--category", default="Uncategorized")
    p.add_argument("--type", default="RETAIL")
    p.add_argument("--stock", type=int, default=0)
    p.add_argument("--ingredients", default=None, help='JSON list: [{"product_id": "...", "quantity": 1}]')
    p.set_defaults(func=cmd_product)

    p = sub.add_parser("customer", help="Create or update a customer")
    p.add_argument("--id", default=None)
    p.add_argument("--name", required=True)
    p.add_argument("--phone", default=None)
    p.add_argument("--email", default=None)
    p.set_defaults(func=cmd_customer)

    p = sub.add_parser("open-shift", help="Open a cash shift")
    p.add_argument("--opening-float", type=float, required=True)
    p.add_argument("--notes", default=None)
    p.set_defaults(func=cmd_open_shift)

    p = sub.add_parser("cash", help="Record a pay-in / pay-out / drop")
    p.add_argument("--type", required=True, choices=["PAY_IN", "PAY_OUT", "DROP"])
    p.add_argument("--amount", type=float, required=True)
    p.add_argument("--reason", required=True)
    p.add_argument("--performed-by", default=None)
    p.set_defaults(func=cmd_cash)

    p = sub.add_parser("close-shift", help="Close the open shift")
    p.add_argument("--actual-cash", type=float, required=True)
    p.add_argument("--notes", default=None)
    p.add_argument("--closed-by", default=None)
    p.set_defaults(func=cmd_close_shift)

    p = sub.add_parser("sale", help="Record a sale")
    p.add_argument("--item", action="append", required=True, help="product_id[:qty], repeatable")
    p.add_argument("--payment", default="CASH", choices=["CASH", "CARD", "ONLINE"])
    p.add_argument("--customer", default=None)
    p.add_argument("--discount", type=float, default=0)
    p.add_argument("--tax-rate", type=float, default=0)
    p.add_argument("--tax-name", default=None)
    p.add_argument("--tax-exclusive", action="store_true")
    p.add_argument("--notes", default=None)
    p.set_defaults(func=cmd_sale)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.db = os.path.abspath(args.db)
    args.config = os.path.abspath(args.config)

    cfg = agent_config.load_config(args.config)
    if agent_config.ensure_terminal_id(cfg):
        agent_config.save_config(cfg, args.config)
    store = LocalStore(args.db)
    if args.command != "init-db":
        store.init_db()
    try:
        return args.func(args, store, cfg) or 0
    except LocalStoreError as ex:
        _print({'ok': False, 'error': str(ex)})
        return 2


if __name__ == "__main__":
    sys.exit(main())
