import logging
import signal
import threading
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Optional, Tuple

from config import SyncSettings
from gap_detector import AggregateDataGapDetector
from models.events import CriticalAggregateGap, FullDayPollRequested, HighPriorityAggregateGap
from models.schema import PollingWindow, PullResult, TimeWindow
from reconciliation import DailyReconciliationService
from selector import choose_polling_window
from utils.events import EventBus
from utils.helper import PunchStoreError, SqlitePunchStore
from utils.remote import BioTimeClient, RemoteUnavailable
from utils.scheduler import PeriodicJob

TRAILING_BUFFER = timedelta(minutes=1)
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s - %(message)s"


class IncrementalPuller:
    def __init__(
        self,
        store,
        remote,
        tz: tzinfo,
        page_size: int = 1000,
        overlap_minutes: float = 2,
        initial_lookback_minutes: float = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.remote = remote
        self.tz = tz
        self.page_size = page_size
        self.overlap = timedelta(minutes=overlap_minutes)
        self.initial_lookback = timedelta(minutes=initial_lookback_minutes)
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.last_seen: Optional[datetime] = None
        self.watermark: Optional[datetime] = None
        self._lock = threading.Lock()

    def fetch(self, window: TimeWindow) -> PullResult:
        """Pull every remote punch in ``window`` and upsert it. Never raises.

        Out-of-band pulls (recovery, full day) go through here and leave the
        incremental position alone, only ``poll`` moves it.
        """
        result, _ = self._pull(window)
        return result

    def _pull(self, window: TimeWindow) -> Tuple[PullResult, Optional[datetime]]:
        pulled = stored = 0
        newest = None
        page = 1
        try:
            while True:
                result = self.remote.fetch(window, page=page, page_size=self.page_size)
                records = result.data
                if not records:
                    break
                stored += self.store.upsert(records)
                pulled += len(records)
                page_newest = max(r.punch_time for r in records)
                newest = page_newest if newest is None else max(newest, page_newest)
                if len(records) < self.page_size or not result.next:
                    break
                page += 1
        except (RemoteUnavailable, PunchStoreError) as e:
            logging.error(f"Pull of {window.start.isoformat()} .. {window.end.isoformat()} failed after {pulled} records: {e}")
            return PullResult(success=False, records_pulled=pulled, records_stored=stored, window=window, error=str(e)), None

        logging.info(f"Pulled {pulled} records across {page} pages for {window.start.isoformat()} .. {window.end.isoformat()}")
        return PullResult(success=True, records_pulled=pulled, records_stored=stored, window=window), newest

    def next_window(self) -> Optional[TimeWindow]:
        end = self.clock() - TRAILING_BUFFER
        with self._lock:
            anchor = self.watermark or self.last_seen
        if anchor is None:
            anchor = self.store.latest_punch_time() or end - self.initial_lookback
        start = anchor - self.overlap
        if start >= end:
            return None
        return TimeWindow(start=start, end=end)

    def poll(self) -> PullResult:
        window = self.next_window()
        if window is None:
            logging.info("Incremental poll skipped, nothing new to ask for yet")
            return PullResult(success=True)
        result, newest = self._pull(window)
        if result.success:
            with self._lock:
                if newest is not None and (self.last_seen is None or newest > self.last_seen):
                    self.last_seen = newest
                if self.watermark is None or window.end > self.watermark:
                    self.watermark = window.end
        return result


class SyncService:
    def __init__(self, settings: SyncSettings, store=None, remote=None, bus: Optional[EventBus] = None, clock=None):
        self.settings = settings
        self.store = store if store is not None else SqlitePunchStore(settings.database_path or ":memory:")
        self.remote = remote if remote is not None else BioTimeClient.from_settings(settings)
        self.bus = bus or EventBus()
        self.puller = IncrementalPuller(
            self.store,
            self.remote,
            settings.tz,
            page_size=settings.pull_page_size,
            overlap_minutes=settings.poll_overlap_minutes,
            initial_lookback_minutes=settings.initial_lookback_minutes,
            clock=clock,
        )
        self.reconciliation = DailyReconciliationService.from_settings(settings, self.store, self.remote, self.bus, clock=clock)
        self.detector = AggregateDataGapDetector.from_settings(settings, self.store, self.remote, self.bus, clock=clock)
        self._poll_job = PeriodicJob("IncrementalPuller", settings.poll_interval_seconds, self.puller.poll)

        self.bus.subscribe(FullDayPollRequested, self.on_full_day_poll_requested)
        self.bus.subscribe(CriticalAggregateGap, self.on_aggregate_gap)
        self.bus.subscribe(HighPriorityAggregateGap, self.on_aggregate_gap)
        self.bus.subscribe_all(self.log_event)

    def start(self) -> None:
        logging.info("Starting punch sync service")
        self._poll_job.start()
        self.detector.start()
        self.reconciliation.start()

    def stop(self) -> None:
        self._poll_job.stop()
        self.detector.stop()
        self.reconciliation.stop()
        logging.info("Punch sync service stopped")

    def log_event(self, event) -> None:
        logging.debug(f"Event {event.kind}: {event.model_dump_json()}")

    def on_full_day_poll_requested(self, event: FullDayPollRequested) -> None:
        self.reconciliation.trigger_full_day_poll(event.day.date, self.puller)

    def on_aggregate_gap(self, event) -> None:
        window = self.detector.calculate_optimal_polling_window(event.gaps)
        self.execute(window)

    def recommended_window(self) -> PollingWindow:
        return choose_polling_window(
            self.detector.calculate_optimal_polling_window(),
            self.reconciliation.get_optimal_polling_strategy(),
        )

    def execute(self, window: PollingWindow) -> PullResult:
        logging.info(f"Executing {window.tier.value} window ({window.window_minutes:.0f}min): {window.reason}")
        result = self.puller.fetch(window.as_window())
        if result.success and window.expected_records:
            logging.info(f"Recovery pulled {result.records_pulled} records, {window.expected_records} were missing")
        return result


def main() -> int:
    settings = SyncSettings.from_env()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    service = SyncService(settings)
    finished = threading.Event()

    def shutdown(signum, frame):
        logging.info(f"Received signal {signum}, shutting down")
        finished.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    service.start()
    finished.wait()
    service.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
