import os
from dotenv import load_dotenv

load_dotenv()

POSTGRES_DB = os.getenv("POSTGRES_DB", "tenantcron")
POSTGRES_USER = os.getenv("POSTGRES_USER", "tenantcron")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "tenantcron")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "postgres")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")

REDIS_HOST = os.getenv("REDIS_HOST", "redis")
REDIS_PORT = os.getenv("REDIS_PORT", "6379")

DATABASE_URL = os.getenv("DATABASE_URL") or (
    f"postgresql+psycopg2://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}"
)

REDIS_URL = f"redis://{REDIS_HOST}:{REDIS_PORT}/0"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Tag attached to every exception forwarded to the error tracker.
APP_VERSION = os.getenv("APP_VERSION", "dev")

# Batch runner
BATCH_MAX_CONCURRENCY = max(1, min(10, int(os.getenv("BATCH_MAX_CONCURRENCY", "5"))))
BATCH_TIME_BUDGET_SECONDS = float(os.getenv("BATCH_TIME_BUDGET_SECONDS", "55"))
BATCH_MAX_ERROR_DETAILS = int(os.getenv("BATCH_MAX_ERROR_DETAILS", "50"))
BATCH_ERROR_MESSAGE_MAX_CHARS = int(os.getenv("BATCH_ERROR_MESSAGE_MAX_CHARS", "500"))

# A 'running' cron_run_log row older than this no longer blocks a new invocation.
CRON_RUN_STALE_SECONDS = int(os.getenv("CRON_RUN_STALE_SECONDS", "900"))

# Durable step functions
DURABLE_MAX_ATTEMPTS = int(os.getenv("DURABLE_MAX_ATTEMPTS", "4"))
DURABLE_RETRY_BACKOFF_MAX_SECONDS = int(os.getenv("DURABLE_RETRY_BACKOFF_MAX_SECONDS", "600"))

# Google OAuth token refresh
TOKEN_REFRESH_WINDOW_MINUTES = int(os.getenv("TOKEN_REFRESH_WINDOW_MINUTES", "30"))
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_TOKEN_URL = os.getenv("GOOGLE_TOKEN_URL", "https://oauth2.googleapis.com/token")

# Google Places details refresh
GOOGLE_PLACES_API_KEY = os.getenv("GOOGLE_PLACES_API_KEY", "")
GOOGLE_PLACES_BASE_URL = os.getenv("GOOGLE_PLACES_BASE_URL", "https://places.googleapis.com/v1")
PLACES_STALE_DAYS = int(os.getenv("PLACES_STALE_DAYS", "29"))

# Comma-separated modules that register per-tenant processors on import.
PROCESSOR_MODULES = [
    m.strip() for m in os.getenv("PROCESSOR_MODULES", "").split(",") if m.strip()
]

# NOTE: CRON_SECRET and STOP_<JOB>_CRON are read at call time, not here
# (see deps.require_cron_secret and services.kill_switch.KillSwitchSnapshot).
