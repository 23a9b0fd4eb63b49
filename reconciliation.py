import logging
import threading
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Dict, List, Optional, Union

from models.events import (
    FullDayPollComplete,
    FullDayPollRequested,
    IncompleteDaysDetected,
    ReconciliationComplete,
    ReconciliationError,
    RemoteCountUnavailable,
)
from models.schema import DailyReconciliation, PollingTier, PollingWindow, ReconciliationSummary
from utils.events import EventBus
from utils.helper import day_window, last_moment_of_day, parse_day
from utils.remote import apply_failure_policy, remote_count_or_none
from utils.scheduler import PeriodicJob

COMPLETENESS_THRESHOLD = 0.95
FULL_DAY_MISSING_LIMIT = 50
FULL_DAY_RATIO_LIMIT = 0.8
RECOVERABLE_MINUTES = 1440
MAX_RECOVERY_DAYS = 3
TRAILING_BUFFER = timedelta(minutes=1)


def classify_day(
    day: str,
    start_of_day: datetime,
    local_count: int,
    remote_count: Optional[int],
    checked_at: datetime,
    threshold: float = COMPLETENESS_THRESHOLD,
) -> DailyReconciliation:
    if remote_count is None:
        # Remote could not be asked: neither complete nor a recovery candidate.
        return DailyReconciliation(
            date=day,
            start_of_day=start_of_day,
            local_count=local_count,
            remote_count=0,
            missing_count=0,
            completeness_ratio=1.0,
            is_complete=False,
            needs_full_day_poll=False,
            remote_verified=False,
            last_checked=checked_at,
        )

    missing_count = max(0, remote_count - local_count)
    ratio = local_count / remote_count if remote_count > 0 else 1.0
    needs_full_day_poll = missing_count > 0 and (
        missing_count > FULL_DAY_MISSING_LIMIT
        or ratio < FULL_DAY_RATIO_LIMIT
        or (remote_count > 0 and local_count == 0)
    )
    return DailyReconciliation(
        date=day,
        start_of_day=start_of_day,
        local_count=local_count,
        remote_count=remote_count,
        missing_count=missing_count,
        completeness_ratio=ratio,
        is_complete=ratio >= threshold,
        needs_full_day_poll=needs_full_day_poll,
        last_checked=checked_at,
    )


def is_incomplete(day: DailyReconciliation) -> bool:
    return day.remote_verified and not day.is_complete


def recommend_action(incomplete_days: int, total_missing: int) -> str:
    if total_missing > 500:
        return "full_recovery"
    if incomplete_days > 2:
        return "poll_multiple_days"
    if incomplete_days > 0:
        return "poll_recent"
    return "none"


class DailyReconciliationService:
    def __init__(
        self,
        store,
        remote,
        bus: EventBus,
        tz: tzinfo,
        days_to_check: int = 7,
        completeness_threshold: float = COMPLETENESS_THRESHOLD,
        check_interval_minutes: float = 60,
        remote_failure_policy: str = "zero",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.remote = remote
        self.bus = bus
        self.tz = tz
        self.days_to_check = days_to_check
        self.completeness_threshold = completeness_threshold
        self.check_interval_minutes = check_interval_minutes
        self.remote_failure_policy = remote_failure_policy
        self.clock = clock or (lambda: datetime.now(self.tz))
        self._reconciliations: Dict[str, DailyReconciliation] = {}
        self._lock = threading.Lock()
        self._job: Optional[PeriodicJob] = None
        self._stopped = False

    @classmethod
    def from_settings(cls, settings, store, remote, bus: EventBus, clock=None) -> "DailyReconciliationService":
        return cls(
            store,
            remote,
            bus,
            tz=settings.tz,
            days_to_check=settings.days_to_check,
            completeness_threshold=settings.completeness_threshold,
            check_interval_minutes=settings.reconciliation_interval_minutes,
            remote_failure_policy=settings.remote_failure_policy,
            clock=clock,
        )

    def start(self) -> None:
        if self._job is not None and self._job.is_started:
            logging.info("[DailyReconciliation] Already running")
            return
        self._stopped = False
        self._job = PeriodicJob("DailyReconciliation", self.check_interval_minutes * 60, self.perform_daily_reconciliation)
        self._job.start()

    def stop(self) -> None:
        self._stopped = True
        if self._job is not None:
            self._job.stop()
            self._job = None

    def reconcile_day(self, day: Union[date, str]) -> DailyReconciliation:
        window = day_window(day, self.tz)
        day_str = parse_day(day).isoformat()
        local_count = self.store.count(window)
        remote_count = apply_failure_policy(
            remote_count_or_none(self.remote, window, label=day_str), self.remote_failure_policy
        )
        return classify_day(
            day_str,
            window.start,
            local_count,
            remote_count,
            self.clock(),
            threshold=self.completeness_threshold,
        )

    def perform_daily_reconciliation(self) -> List[DailyReconciliation]:
        logging.info("[DailyReconciliation] Performing daily reconciliation")
        today = self.clock().astimezone(self.tz).date()
        try:
            reconciliations = [self.reconcile_day(today - timedelta(days=i)) for i in range(self.days_to_check)]
        except Exception as e:
            logging.exception("[DailyReconciliation] Local count failed, aborting pass")
            self.bus.publish(ReconciliationError(error=str(e)))
            return []

        with self._lock:
            for reconciliation in reconciliations:
                self._reconciliations[reconciliation.date] = reconciliation

        if self._stopped:
            logging.info("[DailyReconciliation] Stopped during pass, results not published")
            return reconciliations

        for r in reconciliations:
            if is_incomplete(r):
                logging.warning(f"[DailyReconciliation] Day {r.date}: {r.missing_count}/{r.remote_count} records missing")

        self.bus.publish(ReconciliationComplete(days=reconciliations))

        unverified = [r.date for r in reconciliations if not r.remote_verified]
        if unverified:
            self.bus.publish(RemoteCountUnavailable(source="daily_reconciliation", windows=unverified))

        incomplete_days = [r for r in reconciliations if is_incomplete(r)]
        if incomplete_days:
            logging.warning(f"[DailyReconciliation] Found {len(incomplete_days)} incomplete days")
            self.bus.publish(IncompleteDaysDetected(days=incomplete_days))
            for day in incomplete_days:
                if day.needs_full_day_poll:
                    logging.info(f"[DailyReconciliation] Requesting full day poll for {day.date}")
                    self.bus.publish(FullDayPollRequested(day=day))
        else:
            logging.info("[DailyReconciliation] All days complete")

        return reconciliations

    def get_optimal_polling_strategy(self) -> PollingWindow:
        reconciliations = self.perform_daily_reconciliation()
        now = self.clock()
        end_time = now - TRAILING_BUFFER
        incomplete_days = [r for r in reconciliations if is_incomplete(r)]

        if not incomplete_days:
            return PollingWindow(
                start_time=end_time - timedelta(minutes=5),
                end_time=end_time,
                tier=PollingTier.NORMAL,
                reason="All days complete - normal polling",
            )

        horizon = now - timedelta(minutes=RECOVERABLE_MINUTES)
        recent = [d for d in incomplete_days if day_window(d.date, self.tz).end > horizon]
        if not recent:
            return PollingWindow(
                start_time=end_time - timedelta(minutes=10),
                end_time=end_time,
                tier=PollingTier.NORMAL,
                reason=f"{len(incomplete_days)} incomplete days are too old to recover - normal polling",
            )

        recent.sort(key=lambda d: (d.date, d.missing_count), reverse=True)
        critical_days = [d for d in recent if d.needs_full_day_poll]

        if len(critical_days) == 1:
            target = critical_days[0]
            return PollingWindow(
                start_time=day_window(target.date, self.tz).start,
                end_time=last_moment_of_day(target.date, self.tz),
                tier=PollingTier.FULL_DAY,
                target_dates=[target.date],
                expected_records=target.missing_count,
                reason=f"Full day recovery for {target.date} - {target.missing_count} records missing",
            )

        if critical_days:
            targets = critical_days[:MAX_RECOVERY_DAYS]
            total_missing = sum(d.missing_count for d in targets)
            return PollingWindow(
                start_time=min(day_window(d.date, self.tz).start for d in targets),
                end_time=max(last_moment_of_day(d.date, self.tz) for d in targets),
                tier=PollingTier.MULTI_DAY_RECOVERY,
                target_dates=[d.date for d in targets],
                expected_records=total_missing,
                reason=f"Multi-day recovery for {len(targets)} days - {total_missing} total records missing",
            )

        latest = recent[0]
        return PollingWindow(
            start_time=min(day_window(latest.date, self.tz).start, end_time),
            end_time=end_time,
            tier=PollingTier.NORMAL,
            target_dates=[latest.date],
            expected_records=latest.missing_count,
            reason=f"Extended polling for {latest.date} - {latest.missing_count} records missing",
        )

    def get_reconciliation(self, day: Union[date, str]) -> Optional[DailyReconciliation]:
        with self._lock:
            return self._reconciliations.get(parse_day(day).isoformat())

    def get_reconciliation_summary(self) -> ReconciliationSummary:
        with self._lock:
            reconciliations = list(self._reconciliations.values())
        incomplete_days = [r for r in reconciliations if is_incomplete(r)]
        total_missing = sum(d.missing_count for d in incomplete_days)
        return ReconciliationSummary(
            total_days_checked=len(reconciliations),
            incomplete_days=len(incomplete_days),
            total_missing_records=total_missing,
            oldest_incomplete_day=min((d.date for d in incomplete_days), default=None),
            recommended_action=recommend_action(len(incomplete_days), total_missing),
        )

    def trigger_full_day_poll(self, day: Union[date, str], executor) -> bool:
        day_str = parse_day(day).isoformat()
        reconciliation = self.get_reconciliation(day_str)
        if reconciliation is None:
            logging.warning(f"[DailyReconciliation] No reconciliation data for {day_str}")
            return False

        window = day_window(day_str, self.tz)
        logging.info(f"[DailyReconciliation] Pulling full day {day_str}, expecting to recover {reconciliation.missing_count} records")
        result = executor.fetch(window)

        if result.success:
            logging.info(f"[DailyReconciliation] Full day poll for {day_str} pulled {result.records_pulled} records")
            refreshed = self.reconcile_day(day_str)
            with self._lock:
                self._reconciliations[day_str] = refreshed
        else:
            logging.error(f"[DailyReconciliation] Full day poll for {day_str} failed: {result.error}")

        self.bus.publish(
            FullDayPollComplete(
                date=day_str,
                success=result.success,
                records_pulled=result.records_pulled,
                error=result.error,
            )
        )
        return result.success
