import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str = "INFO",
        reconcile_batch_size: int = 500,
        reconcile_concurrency: int = 4,
        retry_attempts: int = 5,
        retry_base_delay_secs: float = 0.05,
        lock_timeout_secs: float = 10.0,
        consistency_tolerance_cents: int = 0,
        verify_on_write: bool = False,
        scheduler_enabled: bool = True,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.reconcile_batch_size = reconcile_batch_size
        self.reconcile_concurrency = reconcile_concurrency
        self.retry_attempts = retry_attempts
        self.retry_base_delay_secs = retry_base_delay_secs
        self.lock_timeout_secs = lock_timeout_secs
        self.consistency_tolerance_cents = consistency_tolerance_cents
        self.verify_on_write = verify_on_write
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("ADSPEND_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("ADSPEND_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "adspend.db"
        database_url = f"sqlite:///{default_db}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("ADSPEND_TIMEZONE", "Asia/Ho_Chi_Minh"),
        log_level=os.getenv("ADSPEND_LOG_LEVEL", "INFO").upper(),
        reconcile_batch_size=int(os.getenv("ADSPEND_RECONCILE_BATCH_SIZE", "500")),
        reconcile_concurrency=int(os.getenv("ADSPEND_RECONCILE_CONCURRENCY", "4")),
        retry_attempts=int(os.getenv("ADSPEND_RETRY_ATTEMPTS", "5")),
        retry_base_delay_secs=float(
            os.getenv("ADSPEND_RETRY_BASE_DELAY_SECS", "0.05")
        ),
        lock_timeout_secs=float(os.getenv("ADSPEND_LOCK_TIMEOUT_SECS", "10")),
        consistency_tolerance_cents=int(
            os.getenv("ADSPEND_CONSISTENCY_TOLERANCE_CENTS", "0")
        ),
        verify_on_write=_env_flag("ADSPEND_VERIFY_ON_WRITE", "false"),
        scheduler_enabled=_env_flag("ADSPEND_SCHEDULER_ENABLED", "true"),
    )
