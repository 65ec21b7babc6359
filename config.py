import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_user_id: str,
        allow_dev_header_auth: bool,
        settlement_day: int,
        settlement_hour: int,
        sweep_hour: int,
        snapshot_hour: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_user_id = default_user_id
        self.allow_dev_header_auth = allow_dev_header_auth
        self.settlement_day = settlement_day
        self.settlement_hour = settlement_hour
        self.sweep_hour = sweep_hour
        self.snapshot_hour = snapshot_hour


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINLEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finledger.db"
    database_url = os.getenv("FINLEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINLEDGER_TIMEZONE", "Asia/Seoul")
    default_user_id = os.getenv("FINLEDGER_DEFAULT_USER_ID", "demo-user")
    allow_dev_header_auth = _env_flag("FINLEDGER_ALLOW_DEV_HEADER_AUTH", True)
    settlement_day = int(os.getenv("FINLEDGER_SETTLEMENT_DAY", "1"))
    settlement_hour = int(os.getenv("FINLEDGER_SETTLEMENT_HOUR", "0"))
    sweep_hour = int(os.getenv("FINLEDGER_SWEEP_HOUR", "6"))
    snapshot_hour = int(os.getenv("FINLEDGER_SNAPSHOT_HOUR", "12"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_user_id=default_user_id,
        allow_dev_header_auth=allow_dev_header_auth,
        settlement_day=settlement_day,
        settlement_hour=settlement_hour,
        sweep_hour=sweep_hour,
        snapshot_hour=snapshot_hour,
    )
