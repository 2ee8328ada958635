import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        default_timezone: str,
        conflict_retries: int,
        audit_hour: int,
        audit_minute: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.default_timezone = default_timezone
        self.conflict_retries = conflict_retries
        self.audit_hour = audit_hour
        self.audit_minute = audit_minute
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    default_timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    conflict_retries = int(os.getenv("LEDGER_CONFLICT_RETRIES", "3"))
    audit_hour = int(os.getenv("LEDGER_AUDIT_HOUR", "3"))
    audit_minute = int(os.getenv("LEDGER_AUDIT_MINUTE", "30"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        default_timezone=default_timezone,
        conflict_retries=conflict_retries,
        audit_hour=audit_hour,
        audit_minute=audit_minute,
        log_level=log_level,
    )
