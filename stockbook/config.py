import os
import json
from pathlib import Path


def _resolve_config_path() -> Path:
    """Find configuration JSON file location.

    Preference order:
    1. Explicit CONFIG_PATH env override (if file exists);
    2. Repository-local ``config.json``.

    If neither exists, fall back to the env override (or the local path) so
    that external tooling still knows where to create it.
    """

    env_override = os.getenv("CONFIG_PATH")
    search_paths = []
    if env_override:
        search_paths.append(Path(env_override).expanduser())
    search_paths.append(Path("config.json"))

    for candidate in search_paths:
        if candidate.exists():
            return candidate

    if env_override:
        return Path(env_override).expanduser()
    return Path("config.json")


# Paths
CONFIG_PATH = _resolve_config_path()
DATA_DIR = Path("data")
UPLOAD_DIR = DATA_DIR / "uploads"
PHOTOS_DIR = Path("media/photos")


def _load_config() -> dict:
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as f:
            return json.load(f)
    return {}


_cfg = _load_config()


def _setting(key: str, default=None):
    val = _cfg.get(key)
    if val is None or val == "":
        val = os.getenv(key)
    if val is None or val == "":
        return default
    return val


def _int_setting(key: str, default: int) -> int:
    raw = _setting(key, default)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise RuntimeError(f"{key} must be an integer, got {raw!r}")


BOT_TOKEN = _setting("BOT_TOKEN")
SECRET_KEY = _setting("SECRET_KEY", "dev-local-dashboard")

# Bootstrap admin account, created by init_db() when no admin exists yet
SUPER_ADMIN_USERNAME = _setting("SUPER_ADMIN_USERNAME", "admin")
SUPER_ADMIN_PASSWORD = _setting("SUPER_ADMIN_PASSWORD")
SUPER_ADMIN_TG_ID = _int_setting("SUPER_ADMIN_TG_ID", 0)

DB_PATH = _setting("DB_PATH") or str(DATA_DIR / "stockbook.sqlite3")

LOG_LEVEL = str(_setting("LOG_LEVEL", "INFO")).upper()

# Stock
LOW_STOCK_THRESHOLD = _int_setting("LOW_STOCK_THRESHOLD", 5)

# Notifications
DIGEST_TIME = str(_setting("DIGEST_TIME", "21:10"))
ACTIVITY_POLL_SECONDS = _int_setting("ACTIVITY_POLL_SECONDS", 15)

# Images
PHOTO_QUALITY = 85
PHOTO_MAX_SIDE = 1200

# Pagination/constants
PAGE_SIZE = 10
SEARCH_LIMIT = 5
ACTIVITY_LIMIT = 50

# Ensure folders exist
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
PHOTOS_DIR.mkdir(parents=True, exist_ok=True)
