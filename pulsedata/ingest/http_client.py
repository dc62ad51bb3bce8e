"""Rate-limited JSON client shared by every source adapter.

Each adapter owns one ``RateLimitedClient``. The instance keeps a single
"last request started at" timestamp and sleeps before dispatching whenever
the previous request started less than ``min_interval_ms`` ago, so requests
to one upstream are strictly paced while different upstreams (different
instances) never wait on each other.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple, Union

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)

# HDX allows 1 req/s; the strictest upstream sets the default spacing
DEFAULT_MIN_INTERVAL_MS = 1100
DEFAULT_MAX_ATTEMPTS = 3

# Request timeout (connect, read) in seconds
REQUEST_TIMEOUT = (10, 60)

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "pulsedata/2.0",
}

Timeout = Union[float, Tuple[float, float]]


class UpstreamError(Exception):
    """HTTP or network failure talking to an upstream source."""

    def __init__(self, url: str, status: Optional[int] = None, message: str = ""):
        self.url = url
        self.status = status
        self.message = message
        if status is not None:
            text = f"HTTP {status} from {url}"
        else:
            text = f"request to {url} failed"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)


class RateLimitedClient:
    """GET-and-parse-JSON client enforcing a minimum gap between request starts."""

    def __init__(
        self,
        min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: Timeout = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
        name: str = "upstream",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms must be >= 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.min_interval_ms = min_interval_ms
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.name = name
        self._clock = clock
        self._sleep = sleep

        if session is None:
            session = requests.Session()
            session.mount("https://", HTTPAdapter(pool_maxsize=4))
            session.mount("http://", HTTPAdapter(pool_maxsize=4))
            session.headers.update(DEFAULT_HEADERS)
        self.session = session

        self._last_request_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def min_interval(self) -> float:
        """Minimum spacing in seconds."""
        return self.min_interval_ms / 1000.0

    def _wait_for_slot(self) -> None:
        # Lock is held across the sleep: callers are granted slots one at a time.
        with self._lock:
            now = self._clock()
            if self._last_request_at is not None:
                wait = self._last_request_at + self.min_interval - now
                if wait > 0:
                    logger.debug(f"[{self.name}] rate limiting: waiting {wait * 1000:.0f}ms")
                    self._sleep(wait)
                    now = self._clock()
            self._last_request_at = now

    def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        """
        Issue a paced GET.

        Network failures are retried up to ``max_attempts`` total attempts,
        each attempt paced like any other request. A non-2xx response is not
        retried.

        Raises:
            UpstreamError: on non-2xx status or after exhausting retries
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            self._wait_for_slot()
            try:
                response = self.session.get(
                    url, params=params, headers=headers, timeout=self.timeout
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
                if attempt < self.max_attempts:
                    logger.warning(
                        f"[{self.name}] retry {attempt}/{self.max_attempts} for {url}: {e}"
                    )
                continue

            if not 200 <= response.status_code < 300:
                raise UpstreamError(url, response.status_code)
            return response

        logger.error(f"[{self.name}] failed after {self.max_attempts} attempts for {url}: {last_error}")
        raise UpstreamError(
            url, None, f"network failure after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    def fetch_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """GET ``url`` and return the decoded JSON body."""
        response = self.get(url, params=params, headers=headers)
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(url, response.status_code, "response body is not valid JSON") from e
