import logging
import threading
from typing import Callable, Optional


class PeriodicJob:
    """Runs ``func`` every ``interval_seconds`` on a daemon thread.

    A tick that fires while the previous call is still running is skipped,
    not queued. ``stop()`` never interrupts an in-flight call.
    """

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], object], run_immediately: bool = True):
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.run_immediately = run_immediately
        self._running = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def start(self) -> None:
        if self.is_started:
            logging.info(f"[{self.name}] Already running")
            return
        # One stop event per run, an earlier loop keeps its own.
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._loop, args=(self._stopped,), name=self.name, daemon=True)
        self._thread.start()
        logging.info(f"[{self.name}] Started - every {self.interval_seconds:g}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._stopped.set()
        if timeout is not None:
            self._thread.join(timeout)
        self._thread = None
        logging.info(f"[{self.name}] Stopped")

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def tick(self) -> bool:
        """Run one cycle unless one is already in progress. Returns whether it ran."""
        if not self._running.acquire(blocking=False):
            logging.warning(f"[{self.name}] Previous cycle still running, skipping tick")
            return False
        try:
            self.func()
        except Exception:
            logging.exception(f"[{self.name}] Cycle failed")
        finally:
            self._running.release()
        return True

    def _loop(self, stopped: threading.Event) -> None:
        if self.run_immediately and not stopped.is_set():
            self.tick()
        while not stopped.wait(self.interval_seconds):
            self.tick()
