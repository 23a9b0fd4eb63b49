import logging
import threading
import time
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, List, NamedTuple, Optional

from models.events import (
    AggregateDetectionError,
    AggregateGapsDetected,
    CriticalAggregateGap,
    HighPriorityAggregateGap,
    RemoteCountUnavailable,
)
from models.schema import (
    AggregateGap,
    GapPriority,
    GapSummary,
    PollingTier,
    PollingWindow,
    RemoteCountCacheEntry,
    TimeWindow,
)
from utils.events import EventBus
from utils.remote import apply_failure_policy, remote_count_or_none
from utils.scheduler import PeriodicJob

TIME_SLOTS = [
    (15, "Last 15 minutes"),
    (30, "Last 30 minutes"),
    (60, "Last hour"),
    (180, "Last 3 hours"),
    (360, "Last 6 hours"),
    (720, "Last 12 hours"),
    (1440, "Last 24 hours"),
]
RECENT_GAP_MINUTES = 1440
TRAILING_BUFFER = timedelta(minutes=1)
MIN_BUFFER_MINUTES = 5
MAX_BUFFER_MINUTES = 15
CRITICAL_WINDOW_CAP_MINUTES = 120
WINDOW_CAP_MINUTES = 60


class SlotCount(NamedTuple):
    name: str
    start_time: datetime
    end_time: datetime
    expected_count: Optional[int]
    actual_count: int

    @property
    def missing_count(self) -> int:
        return max(0, (self.expected_count or 0) - self.actual_count)


def calculate_gap_priority(missing_count: int, expected_count: int) -> GapPriority:
    missing_percentage = missing_count / expected_count * 100 if expected_count > 0 else 0.0

    if missing_percentage > 50 or missing_count > 100:
        return GapPriority.CRITICAL
    if missing_percentage > 25 or missing_count > 50:
        return GapPriority.HIGH
    if missing_percentage > 10 or missing_count > 20:
        return GapPriority.MEDIUM
    return GapPriority.LOW


def recovery_window(target: AggregateGap, now: datetime) -> PollingWindow:
    """Window that re-pulls ``target`` with some lead-in, capped so one cycle stays bounded.

    The cap moves the start forward and never the end, so an old severe gap
    is recovered from its most recent part and narrowed over later cycles.
    """
    end_time = now - TRAILING_BUFFER
    buffer_minutes = min(MAX_BUFFER_MINUTES, max(MIN_BUFFER_MINUTES, target.missing_count / 10))
    start_time = target.start_time - timedelta(minutes=buffer_minutes)

    critical = target.priority == GapPriority.CRITICAL
    cap = timedelta(minutes=CRITICAL_WINDOW_CAP_MINUTES if critical else WINDOW_CAP_MINUTES)
    if end_time - start_time > cap:
        start_time = end_time - cap

    return PollingWindow(
        start_time=start_time,
        end_time=end_time,
        tier=PollingTier.RECOVERY if critical else PollingTier.EXTENDED,
        expected_records=target.missing_count,
        reason=(
            f"Gap recovery: {target.missing_count} missing records "
            f"({target.gap_percentage:.1f}%) in {target.time_slot}"
        ),
    )


class AggregateDataGapDetector:
    def __init__(
        self,
        store,
        remote,
        bus: EventBus,
        tz: tzinfo,
        detection_interval_minutes: float = 10,
        cache_validity_minutes: float = 5,
        remote_failure_policy: str = "zero",
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.remote = remote
        self.bus = bus
        self.tz = tz
        self.detection_interval_minutes = detection_interval_minutes
        self.cache_validity_seconds = cache_validity_minutes * 60
        self.remote_failure_policy = remote_failure_policy
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.monotonic = monotonic
        self._cache: Dict[str, RemoteCountCacheEntry] = {}
        self._cache_lock = threading.Lock()
        self._job: Optional[PeriodicJob] = None
        self._stopped = False

    @classmethod
    def from_settings(cls, settings, store, remote, bus: EventBus, clock=None) -> "AggregateDataGapDetector":
        return cls(
            store,
            remote,
            bus,
            tz=settings.tz,
            detection_interval_minutes=settings.detection_interval_minutes,
            cache_validity_minutes=settings.cache_validity_minutes,
            remote_failure_policy=settings.remote_failure_policy,
            clock=clock,
        )

    def start(self) -> None:
        if self._job is not None and self._job.is_started:
            logging.info("[AggregateGapDetector] Already running")
            return
        self._stopped = False
        self._job = PeriodicJob("AggregateGapDetector", self.detection_interval_minutes * 60, self.detect_aggregate_gaps)
        self._job.start()

    def stop(self) -> None:
        self._stopped = True
        if self._job is not None:
            self._job.stop()
            self._job = None

    def detect_aggregate_gaps(self) -> List[AggregateGap]:
        logging.info("[AggregateGapDetector] Detecting gaps using aggregate counts")
        try:
            # Remote bounds are whole seconds.
            slots = self.get_aggregate_counts(self.clock().replace(microsecond=0))
        except Exception as e:
            logging.exception("[AggregateGapDetector] Local count failed, aborting detection")
            self.bus.publish(AggregateDetectionError(error=str(e)))
            return []

        gaps = []
        for slot in slots:
            if slot.expected_count and slot.missing_count > 0:
                gap = AggregateGap(
                    time_slot=slot.name,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    expected_count=slot.expected_count,
                    actual_count=slot.actual_count,
                    missing_count=slot.missing_count,
                    gap_percentage=slot.missing_count / slot.expected_count * 100,
                    priority=calculate_gap_priority(slot.missing_count, slot.expected_count),
                )
                gaps.append(gap)
                logging.info(
                    f"[AggregateGapDetector] Gap in {gap.time_slot}: {gap.missing_count}/{gap.expected_count} "
                    f"missing ({gap.gap_percentage:.1f}% - {gap.priority.value})"
                )

        if self._stopped:
            logging.info("[AggregateGapDetector] Stopped during detection, results not published")
            return gaps

        unverified = [slot.name for slot in slots if slot.expected_count is None]
        if unverified:
            self.bus.publish(RemoteCountUnavailable(source="aggregate_gap_detector", windows=unverified))

        if not gaps:
            logging.info("[AggregateGapDetector] No aggregate gaps detected")
            return gaps

        self.bus.publish(AggregateGapsDetected(gaps=gaps))
        critical = [g for g in gaps if g.priority == GapPriority.CRITICAL]
        high = [g for g in gaps if g.priority == GapPriority.HIGH]
        if critical:
            logging.warning(f"[AggregateGapDetector] {len(critical)} CRITICAL aggregate gaps")
            self.bus.publish(CriticalAggregateGap(gaps=critical))
        elif high:
            logging.warning(f"[AggregateGapDetector] {len(high)} HIGH priority aggregate gaps")
            self.bus.publish(HighPriorityAggregateGap(gaps=high))
        return gaps

    def get_aggregate_counts(self, now: datetime) -> List[SlotCount]:
        results = []
        for minutes, name in TIME_SLOTS:
            window = TimeWindow(start=now - timedelta(minutes=minutes), end=now)
            actual_count = self.store.count(window)
            expected_count = self.remote_count(name, window)
            results.append(SlotCount(name, window.start, window.end, expected_count, actual_count))
        return results

    def remote_count(self, slot_name: str, window: TimeWindow) -> Optional[int]:
        key = f"{slot_name}|{window.start.isoformat()}|{window.end.isoformat()}"
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is not None and self.monotonic() - cached.observed_at < self.cache_validity_seconds:
                return cached.count

        count = remote_count_or_none(self.remote, window, label=slot_name)
        if count is None:
            return apply_failure_policy(count, self.remote_failure_policy)

        with self._cache_lock:
            self._cache[key] = RemoteCountCacheEntry(key=key, count=count, observed_at=self.monotonic())
            self._clean_cache()
        return count

    def _clean_cache(self) -> None:
        max_age = self.cache_validity_seconds * 2
        now = self.monotonic()
        for key in [k for k, v in self._cache.items() if now - v.observed_at > max_age]:
            del self._cache[key]

    @property
    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._cache)

    def calculate_optimal_polling_window(self, gaps: Optional[List[AggregateGap]] = None) -> PollingWindow:
        if gaps is None:
            gaps = self.detect_aggregate_gaps()
        now = self.clock()
        end_time = now - TRAILING_BUFFER

        if not gaps:
            return PollingWindow(
                start_time=end_time - timedelta(minutes=5),
                end_time=end_time,
                tier=PollingTier.NORMAL,
                reason="Normal polling - no gaps detected",
            )

        recent = [g for g in gaps if now - g.start_time <= timedelta(minutes=RECENT_GAP_MINUTES)]
        if not recent:
            return PollingWindow(
                start_time=end_time - timedelta(minutes=10),
                end_time=end_time,
                tier=PollingTier.NORMAL,
                reason="Normal polling - gaps too old to recover",
            )

        target = max(recent, key=lambda g: (g.priority.rank, g.missing_count))
        window = recovery_window(target, now)
        logging.info(f"[AggregateGapDetector] Optimal window: {window.window_minutes:.0f}min to recover {target.missing_count} records")
        return window

    def get_gap_summary(self) -> GapSummary:
        gaps = self.detect_aggregate_gaps()
        now = self.clock()
        critical = sum(1 for g in gaps if g.priority == GapPriority.CRITICAL)
        total_missing = sum(g.missing_count for g in gaps)
        oldest_hours = 0.0
        if gaps:
            oldest = min(g.start_time for g in gaps)
            oldest_hours = (now - oldest) / timedelta(hours=1)

        if critical:
            action = "Immediate recovery polling required"
        elif total_missing > 50:
            action = "Extended polling recommended"
        elif total_missing > 0:
            action = "Normal polling with overlap"
        else:
            action = "No action required"

        return GapSummary(
            total_gaps=len(gaps),
            critical_gaps=critical,
            total_missing_records=total_missing,
            oldest_gap_hours=oldest_hours,
            recommended_action=action,
        )
