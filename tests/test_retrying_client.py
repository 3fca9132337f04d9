"""
Tests for RetryingClient: admission control, retry policy and backoff sleeps.
"""
import json
import threading
from unittest.mock import Mock

import pytest
import requests

from marsview.resilience.backoff import RetryConfig
from marsview.resilience.errors import ApiError, ErrorCategory, QuotaExceededError
from marsview.resilience.rate_limiter import AdmissionWindow
from marsview.resilience.retrying_client import RetryingClient

URL = "https://api.example.test/manifests/perseverance"


def make_response(status: int, body=None, reason: str = "") -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.reason = reason or {200: "OK", 404: "Not Found", 429: "Too Many Requests"}.get(status, "")
    response._content = json.dumps(body).encode() if body is not None else b""
    return response


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def admission(clock):
    return AdmissionWindow(max_requests=1000, window_seconds=3600, clock=clock)


@pytest.fixture
def config():
    return RetryConfig(max_attempts=4, base_delay=1.0, max_delay=10.0, multiplier=2.0,
                       jitter=True, jitter_fraction=0.1)


@pytest.fixture
def client(session, config, admission, monitor, sleeps, clock):
    return RetryingClient(
        session=session,
        config=config,
        admission=admission,
        metrics=monitor,
        sleep=sleeps.append,
        timeout=5,
        clock=clock,
    )


# =============================================================================
# Success and retry paths
# =============================================================================

class TestRetries:
    """Attempt loop behaviour."""

    def test_success_first_try(self, client, session, sleeps):
        session.get.return_value = make_response(200, {"photo_manifest": {"name": "Perseverance"}})

        data = client.execute(URL, "manifest_perseverance", params={"api_key": "k"})

        assert data == {"photo_manifest": {"name": "Perseverance"}}
        assert sleeps == []
        session.get.assert_called_once_with(URL, params={"api_key": "k"}, timeout=5)

    def test_rate_limited_twice_then_success(self, client, session, sleeps, admission, monitor, config):
        session.get.side_effect = [
            make_response(429),
            make_response(429),
            make_response(200, {"ok": True}),
        ]

        assert client.execute(URL, "manifest_perseverance") == {"ok": True}

        assert session.get.call_count == 3
        assert len(sleeps) == 2
        assert 0.9 <= sleeps[0] <= 1.1
        assert 1.8 <= sleeps[1] <= 2.2
        assert admission.recent_count() == 3
        assert monitor.api_counts["failed"] == 2
        assert monitor.api_counts["successful"] == 1
        assert monitor.errors_by_category == {"RATE_LIMIT": 2}

    def test_network_error_is_retried(self, client, session, sleeps):
        session.get.side_effect = [
            requests.ConnectionError("connection reset"),
            make_response(200, [1, 2, 3]),
        ]
        assert client.execute(URL, "photos_sol_curiosity") == [1, 2, 3]
        assert len(sleeps) == 1

    def test_unexpected_session_error_becomes_api_error(self, client, session, monitor, config):
        failure = RuntimeError("adapter exploded")
        session.get.side_effect = failure

        with pytest.raises(ApiError) as exc_info:
            client.execute(URL, "manifest_perseverance")

        error = exc_info.value
        assert error.category == ErrorCategory.UNKNOWN_ERROR
        assert error.cause is failure
        assert error.attempts == config.max_attempts
        assert monitor.errors_by_category == {"UNKNOWN_ERROR": config.max_attempts}

    def test_server_errors_exhaust_attempts(self, client, session, sleeps, config):
        session.get.return_value = make_response(503, reason="Service Unavailable")

        with pytest.raises(ApiError) as exc_info:
            client.execute(URL, "latest_curiosity")

        error = exc_info.value
        assert error.category == ErrorCategory.SERVER_ERROR
        assert error.status_code == 503
        assert error.attempts == config.max_attempts
        assert session.get.call_count == config.max_attempts
        assert len(sleeps) == config.max_attempts - 1
        assert all(s <= config.delay_ceiling for s in sleeps)

    def test_invalid_json_is_unknown_error(self, session, admission, monitor, clock):
        client = RetryingClient(
            session=session,
            config=RetryConfig(max_attempts=2, jitter=False),
            admission=admission,
            metrics=monitor,
            sleep=lambda s: None,
            clock=clock,
        )
        response = make_response(200)
        response._content = b"<html>not json</html>"
        session.get.return_value = response

        with pytest.raises(ApiError) as exc_info:
            client.execute(URL, "manifest_perseverance")

        assert exc_info.value.category == ErrorCategory.UNKNOWN_ERROR
        assert session.get.call_count == 2


# =============================================================================
# Non-retryable failures
# =============================================================================

class TestNonRetryable:
    """Client-side errors fail after one attempt."""

    @pytest.mark.parametrize("status,category", [
        (404, ErrorCategory.NOT_FOUND),
        (403, ErrorCategory.AUTH_ERROR),
        (400, ErrorCategory.CLIENT_ERROR),
    ])
    def test_fails_after_one_attempt(self, client, session, sleeps, status, category):
        session.get.return_value = make_response(status)

        with pytest.raises(ApiError) as exc_info:
            client.execute(URL, "manifest_perseverance")

        assert exc_info.value.category == category
        assert exc_info.value.status_code == status
        assert exc_info.value.attempts == 1
        assert session.get.call_count == 1
        assert sleeps == []


# =============================================================================
# Admission control
# =============================================================================

class TestAdmission:
    """Quota check before any network I/O."""

    def test_full_window_rejects_without_network_call(self, client, session, admission, monitor, sleeps):
        for _ in range(admission.max_requests):
            admission.record()

        with pytest.raises(QuotaExceededError) as exc_info:
            client.execute(URL, "manifest_perseverance")

        assert exc_info.value.category == ErrorCategory.QUOTA_EXCEEDED
        assert exc_info.value.retry_after is not None
        session.get.assert_not_called()
        assert sleeps == []
        assert admission.recent_count() == admission.max_requests
        assert monitor.errors_by_category == {"QUOTA_EXCEEDED": 1}

    def test_window_frees_up_after_an_hour(self, client, session, admission, clock):
        for _ in range(admission.max_requests):
            admission.record()
        clock.advance(3601)
        session.get.return_value = make_response(200, {})
        assert client.execute(URL, "manifest_perseverance") == {}

    def test_concurrent_calls_cannot_overshoot_quota(self, session, monitor, clock):
        admission = AdmissionWindow(max_requests=1, window_seconds=3600, clock=clock)
        client = RetryingClient(
            session=session,
            config=RetryConfig(max_attempts=1),
            admission=admission,
            metrics=monitor,
            sleep=lambda s: None,
            clock=clock,
        )
        session.get.return_value = make_response(200, {"ok": True})
        start = threading.Barrier(5)
        outcomes = []

        def call():
            start.wait()
            try:
                outcomes.append(client.execute(URL, "manifest_perseverance"))
            except QuotaExceededError as e:
                outcomes.append(e.category)

        threads = [threading.Thread(target=call) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert session.get.call_count == 1
        assert admission.recent_count() == 1
        assert outcomes.count({"ok": True}) == 1
        assert outcomes.count(ErrorCategory.QUOTA_EXCEEDED) == 4

    def test_status(self, client, admission):
        admission.record()
        status = client.get_status()
        assert status["recent_requests"] == 1
        assert status["remaining_requests"] == 999
        assert status["can_make_request"] is True
        assert status["retry"]["max_attempts"] == 4
