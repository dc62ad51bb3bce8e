"""Tests for the rate-limited JSON client."""

import pytest
import requests
from unittest.mock import MagicMock

from pulsedata.ingest.http_client import RateLimitedClient, UpstreamError


class FakeClock:
    """Monotonic clock advanced only by sleep() and explicit ticks."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds

    def tick(self, seconds: float):
        self.now += seconds


def make_response(status=200, payload=None, json_error=False):
    response = MagicMock()
    response.status_code = status
    if json_error:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = payload if payload is not None else {}
    return response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    return MagicMock()


def make_client(session, clock, min_interval_ms=1100, max_attempts=3):
    return RateLimitedClient(
        min_interval_ms=min_interval_ms,
        max_attempts=max_attempts,
        session=session,
        name="test",
        clock=clock,
        sleep=clock.sleep,
    )


class TestRateLimiting:
    """Request starts through one instance are at least min_interval apart."""

    def test_first_request_does_not_wait(self, session, clock):
        session.get.return_value = make_response(payload=[1])
        client = make_client(session, clock)

        client.fetch_json("https://example.org/a")

        assert clock.sleeps == []

    def test_back_to_back_requests_are_spaced(self, session, clock):
        """Three immediate calls start at t, t+1.1, t+2.2."""
        starts = []

        def record_start(*args, **kwargs):
            starts.append(clock.now)
            return make_response(payload={})

        session.get.side_effect = record_start
        client = make_client(session, clock)

        for _ in range(3):
            client.fetch_json("https://example.org/a")

        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(gap >= 1.1 - 1e-9 for gap in gaps)
        assert len(clock.sleeps) == 2

    def test_no_wait_when_interval_already_elapsed(self, session, clock):
        session.get.return_value = make_response(payload={})
        client = make_client(session, clock)

        client.fetch_json("https://example.org/a")
        clock.tick(5.0)
        client.fetch_json("https://example.org/b")

        assert clock.sleeps == []

    def test_partial_wait(self, session, clock):
        session.get.return_value = make_response(payload={})
        client = make_client(session, clock, min_interval_ms=1000)

        client.fetch_json("https://example.org/a")
        clock.tick(0.4)
        client.fetch_json("https://example.org/b")

        assert clock.sleeps == [pytest.approx(0.6)]

    def test_instances_do_not_share_state(self, clock):
        """Different upstreams never wait on each other."""
        session_a, session_b = MagicMock(), MagicMock()
        session_a.get.return_value = make_response(payload={})
        session_b.get.return_value = make_response(payload={})

        client_a = make_client(session_a, clock)
        client_b = make_client(session_b, clock)

        client_a.fetch_json("https://a.example.org")
        client_b.fetch_json("https://b.example.org")

        assert clock.sleeps == []

    def test_invalid_configuration_rejected(self, session, clock):
        with pytest.raises(ValueError):
            make_client(session, clock, min_interval_ms=-1)
        with pytest.raises(ValueError):
            make_client(session, clock, max_attempts=0)


class TestErrors:
    """Status, network and body failures map to UpstreamError."""

    def test_non_2xx_raises_without_retry(self, session, clock):
        session.get.return_value = make_response(status=503)
        client = make_client(session, clock)

        with pytest.raises(UpstreamError) as exc_info:
            client.fetch_json("https://example.org/a")

        assert exc_info.value.status == 503
        assert exc_info.value.url == "https://example.org/a"
        assert session.get.call_count == 1

    def test_404_raises(self, session, clock):
        session.get.return_value = make_response(status=404)
        client = make_client(session, clock)

        with pytest.raises(UpstreamError) as exc_info:
            client.fetch_json("https://example.org/missing")

        assert exc_info.value.status == 404

    def test_network_failure_retried_then_succeeds(self, session, clock):
        session.get.side_effect = [
            requests.ConnectionError("reset"),
            make_response(payload={"ok": True}),
        ]
        client = make_client(session, clock)

        assert client.fetch_json("https://example.org/a") == {"ok": True}
        assert session.get.call_count == 2
        # The retry is paced like any other request
        assert clock.sleeps == [pytest.approx(1.1)]

    def test_network_failure_exhausts_attempts(self, session, clock):
        session.get.side_effect = requests.Timeout("read timed out")
        client = make_client(session, clock, max_attempts=3)

        with pytest.raises(UpstreamError) as exc_info:
            client.fetch_json("https://example.org/a")

        assert exc_info.value.status is None
        assert session.get.call_count == 3

    def test_invalid_json_raises(self, session, clock):
        session.get.return_value = make_response(status=200, json_error=True)
        client = make_client(session, clock)

        with pytest.raises(UpstreamError) as exc_info:
            client.fetch_json("https://example.org/a")

        assert exc_info.value.status == 200
        assert "not valid JSON" in str(exc_info.value)

    def test_params_and_headers_forwarded(self, session, clock):
        session.get.return_value = make_response(payload=[])
        client = make_client(session, clock)

        client.fetch_json("https://example.org/a", params={"page": 2}, headers={"X-Key": "k"})

        _, kwargs = session.get.call_args
        assert kwargs["params"] == {"page": 2}
        assert kwargs["headers"] == {"X-Key": "k"}
        assert kwargs["timeout"] == client.timeout
