import os
import logging
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

APP_ENV = os.environ.get("APP_ENV") or os.environ.get("ENV") or "development"
IS_PROD = APP_ENV.lower() in {"prod", "production"}

# Storage
MONGO_URL = os.environ.get("MONGO_URL")
DB_NAME = os.environ.get("DB_NAME", "famstars")
# ":memory:" keeps everything in-process (tests, demos).
DATA_FILE = os.environ.get("DATA_FILE")

# JWT Settings
_DEFAULT_JWT_SECRET = "famstars-secret-key-change-me"
_jwt_secret_env = os.environ.get("JWT_SECRET")
JWT_SECRET = _jwt_secret_env or _DEFAULT_JWT_SECRET
JWT_SECRET_SOURCE = "env" if _jwt_secret_env else "default"
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

# Leaderboard / scheduler
LEADERBOARD_TZ = os.environ.get("LEADERBOARD_TZ", "UTC")
LEADERBOARD_WEEK_START = os.environ.get("LEADERBOARD_WEEK_START", "sun").lower()
RECONCILE_INTERVAL_MINUTES = int(os.environ.get("RECONCILE_INTERVAL_MINUTES", "15"))
SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "true").lower() not in {"0", "false", "no"}

INTERNAL_TOKEN = os.environ.get("INTERNAL_TOKEN")

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def get_leaderboard_tz() -> ZoneInfo:
    try:
        return ZoneInfo(LEADERBOARD_TZ or "UTC")
    except Exception:
        logger.warning("Unknown LEADERBOARD_TZ %r, using UTC", LEADERBOARD_TZ)
        return ZoneInfo("UTC")


def get_week_start() -> str:
    if LEADERBOARD_WEEK_START in WEEKDAYS:
        return LEADERBOARD_WEEK_START
    return "sun"
