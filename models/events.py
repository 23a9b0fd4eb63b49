from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from models.schema import AggregateGap, DailyReconciliation


class ReconciliationComplete(BaseModel):
    kind: Literal["reconciliation_complete"] = "reconciliation_complete"
    days: List[DailyReconciliation]


class IncompleteDaysDetected(BaseModel):
    kind: Literal["incomplete_days_detected"] = "incomplete_days_detected"
    days: List[DailyReconciliation]


class FullDayPollRequested(BaseModel):
    kind: Literal["full_day_poll_requested"] = "full_day_poll_requested"
    day: DailyReconciliation


class FullDayPollComplete(BaseModel):
    kind: Literal["full_day_poll_complete"] = "full_day_poll_complete"
    date: str
    success: bool
    records_pulled: int = 0
    error: Optional[str] = None


class AggregateGapsDetected(BaseModel):
    kind: Literal["aggregate_gaps_detected"] = "aggregate_gaps_detected"
    gaps: List[AggregateGap]


class CriticalAggregateGap(BaseModel):
    kind: Literal["critical_aggregate_gap"] = "critical_aggregate_gap"
    gaps: List[AggregateGap]


class HighPriorityAggregateGap(BaseModel):
    kind: Literal["high_priority_aggregate_gap"] = "high_priority_aggregate_gap"
    gaps: List[AggregateGap]


class RemoteCountUnavailable(BaseModel):
    # Only published under the "unknown" remote failure policy.
    kind: Literal["remote_count_unavailable"] = "remote_count_unavailable"
    source: str
    windows: List[str]


class ReconciliationError(BaseModel):
    kind: Literal["reconciliation_error"] = "reconciliation_error"
    error: str


class AggregateDetectionError(BaseModel):
    kind: Literal["aggregate_detection_error"] = "aggregate_detection_error"
    error: str


SyncEvent = Annotated[
    Union[
        ReconciliationComplete,
        IncompleteDaysDetected,
        FullDayPollRequested,
        FullDayPollComplete,
        AggregateGapsDetected,
        CriticalAggregateGap,
        HighPriorityAggregateGap,
        RemoteCountUnavailable,
        ReconciliationError,
        AggregateDetectionError,
    ],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(SyncEvent)


def parse_event(payload) -> BaseModel:
    """Rebuild a typed event from its dumped form, picking the class by ``kind``."""
    if isinstance(payload, (str, bytes)):
        return _event_adapter.validate_json(payload)
    return _event_adapter.validate_python(payload)
