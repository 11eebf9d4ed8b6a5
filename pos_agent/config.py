import json
import os
import uuid

ROOT = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(ROOT, 'config.json')  # can be overridden via CLI/env (see agent.main())

DEFAULT_CONFIG = {
    'api_base_url': 'http://localhost:8000',
    'organization_id': '',
    'terminal_id': '',
    'terminal_name': '',
    # False until the server acknowledged a packet from this terminal. While false,
    # packets carry organization_id/terminal_name so the server can recreate the terminal.
    'terminal_confirmed': False,
    'api_token': '',
    'sync_batch_size': 100,
    'sync_interval_seconds': 15,
    'http_timeout_seconds': 10,
    'max_backoff_seconds': 300,
}


def load_config(path=None):
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        save_config(DEFAULT_CONFIG, path)
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **data}
    # Allow Docker/ops to override without rewriting the on-disk config.
    if os.environ.get("POS_API_BASE_URL"):
        cfg["api_base_url"] = os.environ["POS_API_BASE_URL"]
    if os.environ.get("POS_ORGANIZATION_ID"):
        cfg["organization_id"] = os.environ["POS_ORGANIZATION_ID"]
    if os.environ.get("POS_TERMINAL_ID"):
        cfg["terminal_id"] = os.environ["POS_TERMINAL_ID"]
    if os.environ.get("POS_API_TOKEN"):
        cfg["api_token"] = os.environ["POS_API_TOKEN"]
    return cfg


def save_config(data, path=None):
    path = path or CONFIG_PATH
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def ensure_terminal_id(cfg: dict) -> bool:
    """
    Give a fresh install a stable local terminal id. The server creates the
    matching row on first sync (recovery path). Returns True when cfg changed.
    """
    if (cfg.get('terminal_id') or '').strip():
        return False
    cfg['terminal_id'] = str(uuid.uuid4())
    cfg['terminal_confirmed'] = False
    return True


def public_config(cfg: dict) -> dict:
    out = dict(cfg)
    out['api_token'] = '***' if cfg.get('api_token') else ''
    return out
