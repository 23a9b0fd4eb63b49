import json
from datetime import datetime, timedelta

import pytest
import requests

from fakes import NOW, PKT
from models.schema import TimeWindow
from utils.remote import BioTimeClient, RemoteUnavailable, remote_count_or_none

BASE_URL = "https://biotime.example/"


def make_response(status_code, payload):
    response = requests.Response()
    response.status_code = status_code
    response._content = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    response.url = BASE_URL
    return response


class StubSession(requests.Session):
    def __init__(self, responses):
        super().__init__()
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class MonotonicStub:
    value = 0.0

    def __call__(self):
        return self.value


def make_client(*responses, monotonic=None):
    session = StubSession(responses)
    client = BioTimeClient(
        BASE_URL,
        "naeem",
        "secret",
        tz=PKT,
        timeout=10,
        session=session,
        monotonic=monotonic or MonotonicStub(),
    )
    return client, session


WINDOW = TimeWindow(start=NOW - timedelta(minutes=15), end=NOW)
TOKEN = make_response(200, {"token": "abc"})


def page(count, data=()):
    return make_response(200, {"count": count, "next": None, "previous": None, "data": list(data)})


def test_count_reads_envelope_with_single_record_page():
    client, session = make_client(TOKEN, page(42))

    assert client.count(WINDOW) == 42

    method, url, kwargs = session.calls[1]
    assert method == "GET"
    assert url == BASE_URL + "iclock/api/transactions/"
    assert kwargs["params"]["page_size"] == 1
    assert kwargs["params"]["start_time"] == "2025-06-01 17:45:00"
    assert kwargs["params"]["end_time"] == "2025-06-01 18:00:00"
    assert kwargs["headers"]["Authorization"] == "JWT abc"
    assert kwargs["timeout"] == 10


def test_tls_verification_is_scoped_to_the_client_session():
    client, session = make_client()
    assert session.verify is False
    assert requests.Session().verify is True


def test_token_is_reused_until_it_expires():
    monotonic = MonotonicStub()
    client, session = make_client(TOKEN, make_response(200, {"token": "def"}), monotonic=monotonic)

    assert client.authenticate() == "abc"
    assert client.authenticate() == "abc"
    monotonic.value = 23 * 60 * 60 + 1
    assert client.authenticate() == "def"
    assert len(session.calls) == 2


def test_authentication_rejected():
    client, _ = make_client(make_response(400, {"non_field_errors": ["bad credentials"]}))

    with pytest.raises(RemoteUnavailable):
        client.authenticate()


def test_authentication_without_token():
    client, _ = make_client(make_response(200, {"detail": "ok"}))

    with pytest.raises(RemoteUnavailable, match="no token"):
        client.authenticate()


def test_timeout_is_remote_unavailable():
    client, _ = make_client(TOKEN, requests.Timeout("read timed out"))

    with pytest.raises(RemoteUnavailable, match="read timed out"):
        client.count(WINDOW)


def test_malformed_envelope_is_remote_unavailable():
    client, _ = make_client(TOKEN, make_response(200, {"results": []}))

    with pytest.raises(RemoteUnavailable, match="unexpected transactions payload"):
        client.count(WINDOW)


def test_non_json_body_is_remote_unavailable():
    client, _ = make_client(TOKEN, make_response(200, b"<html>maintenance</html>"))

    with pytest.raises(RemoteUnavailable):
        client.count(WINDOW)


def test_unauthorized_drops_cached_token():
    client, _ = make_client(TOKEN, make_response(401, {"detail": "expired"}), make_response(200, {"token": "fresh"}))

    with pytest.raises(RemoteUnavailable):
        client.count(WINDOW)
    assert client.authenticate() == "fresh"


def test_fetch_localizes_naive_punch_times():
    record = {"id": 7, "emp_code": "10023", "punch_time": "2025-06-01 17:50:12", "punch_state": "0", "terminal_sn": "CQZ7"}
    client, _ = make_client(TOKEN, page(1, [record]))

    result = client.fetch(WINDOW, page=1, page_size=500)

    assert result.count == 1
    assert result.data[0].punch_time == datetime(2025, 6, 1, 17, 50, 12, tzinfo=PKT)


def test_remote_count_or_none_swallows_only_remote_failures():
    client, _ = make_client(make_response(500, {"detail": "boom"}))

    assert remote_count_or_none(client, WINDOW, label="Last 15 minutes") is None
