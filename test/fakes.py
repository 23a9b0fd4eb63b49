from datetime import datetime, timedelta, timezone

from models.schema import PunchRecord, TransactionPage
from utils.events import EventBus
from utils.helper import PunchStoreError
from utils.remote import RemoteUnavailable

PKT = timezone(timedelta(hours=5), "PKT")
NOW = datetime(2025, 6, 1, 18, 0, tzinfo=PKT)


def make_punches(start: datetime, count: int, first_id: int = 1, step: timedelta = timedelta(seconds=30)):
    return [
        PunchRecord(id=first_id + i, emp_code=f"E{(first_id + i) % 40:03d}", punch_time=start + i * step, punch_state="0")
        for i in range(count)
    ]


class FakeRemote:
    def __init__(self, punches=None, fail_auth=False, fail_count=False):
        self.punches = list(punches or [])
        self.fail_auth = fail_auth
        self.fail_count = fail_count
        self.auth_calls = 0
        self.count_calls = []
        self.fetch_calls = []

    def authenticate(self):
        self.auth_calls += 1
        if self.fail_auth:
            raise RemoteUnavailable("authentication failed: 401")
        return "token"

    def _in(self, window):
        return [p for p in self.punches if window.start <= p.punch_time < window.end]

    def count(self, window):
        self.count_calls.append(window)
        if self.fail_count:
            raise RemoteUnavailable("transactions query failed: timeout")
        return len(self._in(window))

    def fetch(self, window, page=1, page_size=1000):
        self.fetch_calls.append((window, page, page_size))
        if self.fail_auth or self.fail_count:
            raise RemoteUnavailable("transactions query failed: timeout")
        matched = self._in(window)
        chunk = matched[(page - 1) * page_size:page * page_size]
        more = page * page_size < len(matched)
        return TransactionPage(count=len(matched), next="next" if more else None, data=chunk)


class BrokenStore:
    def count(self, window):
        raise PunchStoreError("database is locked")

    def upsert(self, records):
        raise PunchStoreError("database is locked")

    def latest_punch_time(self):
        return None


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self, value=1000.0):
        self.value = value

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


class RecordingBus(EventBus):
    """Bus that also keeps every published event, for inspection."""

    def __init__(self):
        super().__init__()
        self.events = []

    def publish(self, event):
        self.events.append(event)
        super().publish(event)

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]
