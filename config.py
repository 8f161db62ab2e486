import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        scheduler_enabled: bool,
        scheduler_hour: int,
        scheduler_minute: int,
        scheduler_max_workers: int,
        plan_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.scheduler_enabled = scheduler_enabled
        self.scheduler_hour = scheduler_hour
        self.scheduler_minute = scheduler_minute
        self.scheduler_max_workers = scheduler_max_workers
        self.plan_timeout_secs = plan_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'ledger.db'}"
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Kolkata")
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "INR").upper()
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "true")
    scheduler_hour = int(os.getenv("LEDGER_SCHEDULER_HOUR", "0"))
    scheduler_minute = int(os.getenv("LEDGER_SCHEDULER_MINUTE", "0"))
    scheduler_max_workers = max(1, int(os.getenv("LEDGER_SCHEDULER_MAX_WORKERS", "1")))
    plan_timeout_secs = float(os.getenv("LEDGER_PLAN_TIMEOUT_SECS", "30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        scheduler_enabled=scheduler_enabled,
        scheduler_hour=scheduler_hour,
        scheduler_minute=scheduler_minute,
        scheduler_max_workers=scheduler_max_workers,
        plan_timeout_secs=plan_timeout_secs,
    )
