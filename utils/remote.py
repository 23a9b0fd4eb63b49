import logging
import time
from datetime import datetime, tzinfo
from typing import Callable, Optional

import requests
from pydantic import ValidationError

from models.schema import TimeWindow, TransactionPage

TOKEN_TTL_SECONDS = 23 * 60 * 60
AUTH_PATH = "jwt-api-token-auth/"
TRANSACTIONS_PATH = "iclock/api/transactions/"
REMOTE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class RemoteUnavailable(Exception):
    """The remote attendance API could not answer (auth, network, timeout or bad payload)."""


def format_remote_time(value: datetime, tz: tzinfo) -> str:
    return value.astimezone(tz).strftime(REMOTE_TIME_FORMAT)


def remote_count_or_none(remote, window: TimeWindow, label: str = "") -> Optional[int]:
    try:
        remote.authenticate()
        return remote.count(window)
    except RemoteUnavailable as e:
        logging.warning(f"Remote count unavailable for {label or window}: {e}")
        return None


def apply_failure_policy(count: Optional[int], policy: str) -> Optional[int]:
    """Under the "zero" policy an unanswered remote count reads as 0; otherwise it stays None."""
    if count is None and policy == "zero":
        return 0
    return count


class BioTimeClient:
    """Client for a BioTime style attendance appliance.

    TLS verification is set on this client's own session only, so turning it
    off for a self-signed appliance leaves other outbound connections alone.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        tz: tzinfo,
        timeout: float = 15.0,
        verify_tls: bool = False,
        session: Optional[requests.Session] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.username = username
        self.password = password
        self.tz = tz
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify_tls
        self.session.headers.update({"Content-Type": "application/json"})
        self._monotonic = monotonic
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls, settings) -> "BioTimeClient":
        return cls(
            base_url=settings.biotime_api_url,
            username=settings.biotime_username,
            password=settings.biotime_password,
            tz=settings.tz,
            timeout=settings.remote_timeout_seconds,
            verify_tls=settings.verify_tls,
        )

    def authenticate(self) -> str:
        if self._token and self._monotonic() < self._token_expires_at:
            return self._token

        logging.info("Authenticating with BioTime API")
        try:
            response = self.session.post(
                self.base_url + AUTH_PATH,
                json={"username": self.username, "password": self.password},
                timeout=self.timeout,
            )
            response.raise_for_status()
            token = response.json().get("token")
        except (requests.RequestException, ValueError, AttributeError) as e:
            self._token = None
            raise RemoteUnavailable(f"authentication failed: {e}") from e

        if not token:
            self._token = None
            raise RemoteUnavailable("authentication response carried no token")

        self._token = token
        self._token_expires_at = self._monotonic() + TOKEN_TTL_SECONDS
        return token

    def count(self, window: TimeWindow) -> int:
        # One record per page is enough, the envelope's count is independent of page size.
        page = self.fetch(window, page=1, page_size=1)
        return page.count

    def fetch(self, window: TimeWindow, page: int = 1, page_size: int = 1000) -> TransactionPage:
        token = self.authenticate()
        params = {
            "start_time": format_remote_time(window.start, self.tz),
            "end_time": format_remote_time(window.end, self.tz),
            "page": page,
            "page_size": page_size,
        }
        try:
            response = self.session.get(
                self.base_url + TRANSACTIONS_PATH,
                params=params,
                headers={"Authorization": f"JWT {token}"},
                timeout=self.timeout,
            )
            if response.status_code == 401:
                self._token = None
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise RemoteUnavailable(f"transactions query failed: {e}") from e

        try:
            result = TransactionPage.model_validate(payload)
        except ValidationError as e:
            raise RemoteUnavailable(f"unexpected transactions payload: {e.error_count()} errors") from e

        for record in result.data:
            if record.punch_time.tzinfo is None:
                record.punch_time = record.punch_time.replace(tzinfo=self.tz)
        return result
