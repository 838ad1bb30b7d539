import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_API_BASE = "http://127.0.0.1:8000"
DEFAULT_DATA_DIR = "~/.local/share/timecheck"
DEFAULT_SYNC_INTERVAL = 15.0
DEFAULT_HTTP_TIMEOUT = 30.0
TOKEN_ENV = "TIMECHECK_TOKEN"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Settings:
    database_url: str
    data_dir: Path
    api_base: str
    sync_interval: float
    http_timeout: float
    log_level: str
    token_env: str = TOKEN_ENV


def get_settings() -> Settings:
    data_dir = Path(os.getenv("TIMECHECK_DATA_DIR") or DEFAULT_DATA_DIR).expanduser()
    database_url = os.getenv("TIMECHECK_DATABASE_URL") or f"sqlite:///{data_dir / 'timecheck.db'}"
    return Settings(
        database_url=database_url,
        data_dir=data_dir,
        api_base=(os.getenv("TIMECHECK_API_BASE") or DEFAULT_API_BASE).rstrip("/"),
        sync_interval=_env_float("TIMECHECK_SYNC_INTERVAL", DEFAULT_SYNC_INTERVAL),
        http_timeout=_env_float("TIMECHECK_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        log_level=(os.getenv("TIMECHECK_LOG_LEVEL") or "INFO").upper(),
    )
