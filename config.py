import os
from datetime import tzinfo
from typing import Literal, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_VARS = {
    "biotime_api_url": "BIOTIME_API_URL",
    "biotime_username": "BIOTIME_USERNAME",
    "biotime_password": "BIOTIME_PASSWORD",
    "verify_tls": "BIOTIME_VERIFY_TLS",
    "remote_timeout_seconds": "REMOTE_TIMEOUT_SECONDS",
    "timezone": "SYNC_TIMEZONE",
    "reconciliation_interval_minutes": "RECONCILIATION_INTERVAL_MINUTES",
    "days_to_check": "DAYS_TO_CHECK",
    "completeness_threshold": "COMPLETENESS_THRESHOLD",
    "detection_interval_minutes": "DETECTION_INTERVAL_MINUTES",
    "cache_validity_minutes": "CACHE_VALIDITY_MINUTES",
    "poll_interval_seconds": "POLL_INTERVAL_SECONDS",
    "poll_overlap_minutes": "POLL_OVERLAP_MINUTES",
    "initial_lookback_minutes": "INITIAL_LOOKBACK_MINUTES",
    "pull_page_size": "PULL_PAGE_SIZE",
    "remote_failure_policy": "REMOTE_FAILURE_POLICY",
    "database_path": "PUNCH_DB_PATH",
    "log_level": "LOG_LEVEL",
}


class SyncSettings(BaseModel):
    biotime_api_url: str = "https://biotime.local/"
    biotime_username: str = ""
    biotime_password: str = ""
    verify_tls: bool = False
    remote_timeout_seconds: float = Field(default=15.0, gt=0)
    timezone: str = "Asia/Karachi"

    reconciliation_interval_minutes: float = Field(default=60, gt=0)
    days_to_check: int = Field(default=7, ge=1)
    completeness_threshold: float = Field(default=0.95, gt=0, le=1)

    detection_interval_minutes: float = Field(default=10, gt=0)
    cache_validity_minutes: float = Field(default=5, gt=0)

    poll_interval_seconds: float = Field(default=30, gt=0)
    poll_overlap_minutes: float = Field(default=2, ge=0)
    initial_lookback_minutes: float = Field(default=60, gt=0)
    pull_page_size: int = Field(default=1000, ge=1)

    remote_failure_policy: Literal["zero", "unknown"] = "zero"
    database_path: Optional[str] = "punches.db"
    log_level: str = "INFO"

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "SyncSettings":
        load_dotenv(env_file)
        values = {}
        for field_name, env_name in ENV_VARS.items():
            raw = os.environ.get(env_name)
            if raw is not None and raw != "":
                values[field_name] = raw
        return cls(**values)
