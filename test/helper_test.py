from datetime import date, datetime, timedelta, timezone

import pytest

from fakes import NOW, PKT, make_punches
from models.schema import TimeWindow
from utils.helper import InMemoryPunchStore, SqlitePunchStore, day_window, last_moment_of_day, parse_day


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield InMemoryPunchStore()
    else:
        sqlite_store = SqlitePunchStore(":memory:")
        yield sqlite_store
        sqlite_store.close()


def test_reingesting_same_remote_id_keeps_counts(store):
    punches = make_punches(NOW - timedelta(hours=1), 10)
    window = TimeWindow(start=NOW - timedelta(hours=2), end=NOW)

    store.upsert(punches)
    store.upsert(punches[3:7])
    store.upsert([punches[0].model_copy(update={"punch_state": "1"})])

    assert store.count(window) == 10


def test_count_is_half_open(store):
    punches = make_punches(NOW - timedelta(minutes=10), 3, step=timedelta(minutes=5))
    store.upsert(punches)

    assert store.count(TimeWindow(start=NOW - timedelta(minutes=10), end=NOW)) == 2
    assert store.count(TimeWindow(start=NOW - timedelta(minutes=5), end=NOW + timedelta(seconds=1))) == 2


def test_count_compares_instants_across_timezones(store):
    store.upsert(make_punches(datetime(2025, 6, 1, 0, 30, tzinfo=PKT), 1))
    utc_window = TimeWindow(
        start=datetime(2025, 5, 31, 19, 0, tzinfo=timezone.utc),
        end=datetime(2025, 5, 31, 20, 0, tzinfo=timezone.utc),
    )

    assert store.count(utc_window) == 1


def test_latest_punch_time(store):
    assert store.latest_punch_time() is None
    punches = make_punches(NOW - timedelta(hours=1), 5)
    store.upsert(punches)

    assert store.latest_punch_time() == punches[-1].punch_time


def test_day_window_covers_one_calendar_day():
    window = day_window("2025-06-01", PKT)

    assert window.start == datetime(2025, 6, 1, tzinfo=PKT)
    assert window.end == datetime(2025, 6, 2, tzinfo=PKT)
    assert window.minutes == 1440
    assert last_moment_of_day(date(2025, 6, 1), PKT) == datetime(2025, 6, 1, 23, 59, 59, 999000, tzinfo=PKT)


def test_parse_day_rejects_garbage():
    assert parse_day(datetime(2025, 6, 1, 12, 0)) == date(2025, 6, 1)
    with pytest.raises(ValueError):
        parse_day("June 1st")


def test_window_requires_aware_ordered_bounds():
    with pytest.raises(ValueError):
        TimeWindow(start=datetime(2025, 6, 1), end=datetime(2025, 6, 2))
    with pytest.raises(ValueError):
        TimeWindow(start=NOW, end=NOW - timedelta(minutes=1))
