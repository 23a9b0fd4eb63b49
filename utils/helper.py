import json
import sqlite3
import threading
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, Iterable, List, Union

from models.schema import PunchRecord, TimeWindow

STORE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


class PunchStoreError(Exception):
    """The local punch store could not answer a query or write."""


def parse_day(day: Union[date, str]) -> date:
    if isinstance(day, datetime):
        return day.date()
    if isinstance(day, date):
        return day
    try:
        return date.fromisoformat(day)
    except (TypeError, ValueError) as e:
        raise ValueError(f"not a calendar date: {day!r}") from e


def day_window(day: Union[date, str], tz: tzinfo) -> TimeWindow:
    """[00:00, next day's 00:00) of ``day`` in ``tz``."""
    day = parse_day(day)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return TimeWindow(start=start, end=end)


def last_moment_of_day(day: Union[date, str], tz: tzinfo) -> datetime:
    return datetime.combine(parse_day(day), time(23, 59, 59, 999000), tzinfo=tz)


def to_store_time(value: datetime) -> str:
    if value.tzinfo is None:
        raise ValueError("punch times must be timezone-aware")
    return value.astimezone(timezone.utc).strftime(STORE_TIME_FORMAT)


class InMemoryPunchStore:
    def __init__(self):
        self._punches: Dict[int, PunchRecord] = {}
        self._lock = threading.Lock()

    def upsert(self, records: Iterable[PunchRecord]) -> int:
        stored = 0
        with self._lock:
            for record in records:
                if record.punch_time.tzinfo is None:
                    raise PunchStoreError(f"punch {record.id} has a naive punch_time")
                self._punches[record.id] = record
                stored += 1
        return stored

    def count(self, window: TimeWindow) -> int:
        with self._lock:
            return sum(1 for p in self._punches.values() if window.start <= p.punch_time < window.end)

    def latest_punch_time(self):
        with self._lock:
            if not self._punches:
                return None
            return max(p.punch_time for p in self._punches.values())

    def all(self) -> List[PunchRecord]:
        with self._lock:
            return sorted(self._punches.values(), key=lambda p: p.punch_time)


class SqlitePunchStore:
    def __init__(self, path: str = ":memory:"):
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS punches (
                    remote_id INTEGER PRIMARY KEY,
                    emp_code TEXT NOT NULL,
                    punch_time TEXT NOT NULL,
                    punch_state TEXT,
                    terminal_sn TEXT,
                    terminal_alias TEXT,
                    area_alias TEXT,
                    all_fields TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_punches_punch_time ON punches (punch_time)")

    def upsert(self, records: Iterable[PunchRecord]) -> int:
        rows = [
            (
                r.id,
                r.emp_code,
                to_store_time(r.punch_time),
                r.punch_state,
                r.terminal_sn,
                r.terminal_alias,
                r.area_alias,
                json.dumps(r.model_dump(mode="json")),
            )
            for r in records
        ]
        try:
            with self._lock, self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO punches (remote_id, emp_code, punch_time, punch_state,
                                         terminal_sn, terminal_alias, area_alias, all_fields)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(remote_id) DO UPDATE SET
                        emp_code = excluded.emp_code,
                        punch_time = excluded.punch_time,
                        punch_state = excluded.punch_state,
                        terminal_sn = excluded.terminal_sn,
                        terminal_alias = excluded.terminal_alias,
                        area_alias = excluded.area_alias,
                        all_fields = excluded.all_fields
                    """,
                    rows,
                )
        except sqlite3.Error as e:
            raise PunchStoreError(f"upsert of {len(rows)} punches failed: {e}") from e
        return len(rows)

    def count(self, window: TimeWindow) -> int:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM punches WHERE punch_time >= ? AND punch_time < ?",
                    (to_store_time(window.start), to_store_time(window.end)),
                ).fetchone()
        except sqlite3.Error as e:
            raise PunchStoreError(f"count query failed: {e}") from e
        return row[0]

    def latest_punch_time(self):
        try:
            with self._lock:
                row = self._conn.execute("SELECT MAX(punch_time) FROM punches").fetchone()
        except sqlite3.Error as e:
            raise PunchStoreError(f"latest punch query failed: {e}") from e
        if not row or row[0] is None:
            return None
        return datetime.strptime(row[0], STORE_TIME_FORMAT).replace(tzinfo=timezone.utc)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
