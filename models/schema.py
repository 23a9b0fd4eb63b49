from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class GapPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    GapPriority.LOW: 1,
    GapPriority.MEDIUM: 2,
    GapPriority.HIGH: 3,
    GapPriority.CRITICAL: 4,
}


class PollingTier(str, Enum):
    NORMAL = "normal"
    EXTENDED = "extended"
    RECOVERY = "recovery"
    FULL_DAY = "full_day"
    MULTI_DAY_RECOVERY = "multi_day_recovery"


class PunchRecord(BaseModel):
    id: int
    emp_code: str
    punch_time: datetime
    punch_state: Optional[str] = None
    punch_state_display: Optional[str] = None
    verify_type: Optional[int] = None
    terminal_sn: Optional[str] = None
    terminal_alias: Optional[str] = None
    area_alias: Optional[str] = None


class TimeWindow(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_bounds(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("window bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError("window end precedes start")
        return self

    @property
    def minutes(self) -> float:
        return (self.end - self.start) / timedelta(minutes=1)


class TransactionPage(BaseModel):
    count: int = Field(ge=0)
    next: Optional[str] = None
    previous: Optional[str] = None
    data: List[PunchRecord] = Field(default_factory=list)


class DailyReconciliation(BaseModel):
    date: str
    start_of_day: datetime
    local_count: int
    remote_count: int
    missing_count: int
    completeness_ratio: float
    is_complete: bool
    needs_full_day_poll: bool
    remote_verified: bool = True
    last_checked: datetime


class AggregateGap(BaseModel):
    time_slot: str
    start_time: datetime
    end_time: datetime
    expected_count: int
    actual_count: int
    missing_count: int
    gap_percentage: float
    priority: GapPriority


class RemoteCountCacheEntry(BaseModel):
    key: str
    count: int
    observed_at: float


class PollingWindow(BaseModel):
    start_time: datetime
    end_time: datetime
    tier: PollingTier
    expected_records: int = 0
    reason: str
    target_dates: List[str] = Field(default_factory=list)

    @property
    def window_minutes(self) -> float:
        return (self.end_time - self.start_time) / timedelta(minutes=1)

    def as_window(self) -> TimeWindow:
        return TimeWindow(start=self.start_time, end=self.end_time)


class PullResult(BaseModel):
    success: bool
    records_pulled: int = 0
    records_stored: int = 0
    window: Optional[TimeWindow] = None
    error: Optional[str] = None


class ReconciliationSummary(BaseModel):
    total_days_checked: int
    incomplete_days: int
    total_missing_records: int
    oldest_incomplete_day: Optional[str] = None
    recommended_action: str = "none"


class GapSummary(BaseModel):
    total_gaps: int
    critical_gaps: int
    total_missing_records: int
    oldest_gap_hours: float
    recommended_action: str
