import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/possync')
        # Comma-separated list of allowed CORS origins for the admin console.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.session_days = max(1, _env_int("SESSION_DAYS", 7))

        # Rolling diagnostic log kept in process memory (see sync/ack.py); /sync/logs returns at most 50 lines.
        self.sync_log_capacity = max(1, _env_int("SYNC_LOG_CAPACITY", 200))
        self.sync_log_tail = max(1, min(50, _env_int("SYNC_LOG_TAIL", 50)))
        # Upper bound on entities accepted in a single packet.
        self.sync_max_entities = max(1, _env_int("SYNC_MAX_ENTITIES", 500))
        # Packet transactions are retried on serialization failures / deadlocks.
        self.sync_max_attempts = max(1, _env_int("SYNC_MAX_ATTEMPTS", 3))

settings = Settings()
