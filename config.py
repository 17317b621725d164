import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        scheduler_enabled: bool,
        scheduler_hour: int,
        scheduler_minute: int,
        max_catch_up: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.scheduler_enabled = scheduler_enabled
        self.scheduler_hour = scheduler_hour
        self.scheduler_minute = scheduler_minute
        self.max_catch_up = max_catch_up


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("RECURRING_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "recurring.db"
    database_url = os.getenv("RECURRING_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("RECURRING_TIMEZONE", "UTC")
    scheduler_enabled = _env_flag("RECURRING_SCHEDULER_ENABLED", "true")
    scheduler_hour = int(os.getenv("RECURRING_SCHEDULER_HOUR", "3"))
    scheduler_minute = int(os.getenv("RECURRING_SCHEDULER_MINUTE", "15"))
    max_catch_up = int(os.getenv("RECURRING_MAX_CATCH_UP", "400"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        scheduler_enabled=scheduler_enabled,
        scheduler_hour=scheduler_hour,
        scheduler_minute=scheduler_minute,
        max_catch_up=max_catch_up,
    )
