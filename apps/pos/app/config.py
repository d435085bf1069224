import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


ENV = _env_or("ENV", "dev")
DB_URL = _env_or("POS_DB_URL", "sqlite+pysqlite:////tmp/pos.db")
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None
ALLOWED_ORIGINS = _env_or("ALLOWED_ORIGINS", "*")
INTERNAL_SECRET = os.getenv("POS_INTERNAL_SECRET", "")
CURRENCY = _env_or("POS_CURRENCY", "EUR")
SEED_DEMO = _env_or("POS_SEED_DEMO", "false").lower() == "true"

EVENTS_ENABLED = _env_or("EVENTS_ENABLED", "false").lower() == "true"
EVENTS_REDIS_URL = _env_or("EVENTS_REDIS_URL", "redis://localhost:6379/0")
EVENTS_CHANNEL_PREFIX = _env_or("EVENTS_CHANNEL_PREFIX", "events:pos")

OUTBOX_DRAIN_INTERVAL_SECS = float(_env_or("OUTBOX_DRAIN_INTERVAL_SECS", "2"))
OUTBOX_BATCH_SIZE = int(_env_or("OUTBOX_BATCH_SIZE", "100"))
# rows that keep failing stay in the table for inspection but stop being retried
OUTBOX_MAX_ATTEMPTS = int(_env_or("OUTBOX_MAX_ATTEMPTS", "20"))

LOYALTY_BASE_URL = _env_or("LOYALTY_BASE_URL", "")
LOYALTY_TIMEOUT_SECS = float(_env_or("LOYALTY_TIMEOUT_SECS", "3"))
