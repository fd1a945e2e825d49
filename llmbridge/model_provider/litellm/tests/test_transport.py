"""Tests for RetryingTransport: transient retries, 429 backoff, cancellation."""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from llmbridge.model_provider.litellm.errors import TransientTransportError
from llmbridge.model_provider.litellm.transport import RetryingTransport
from llmbridge.model_provider.types import CancelledException, CancelToken
from llmbridge.retry_utils import RetryPolicy

URL = "http://gateway.test/chat/completions"


def _response(status_code=200, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    return response


class _Recorder:
    """Sleeper stand-in that records requested delays."""

    def __init__(self):
        self.delays = []

    def __call__(self, seconds, cancel_token=None):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self.delays.append(seconds)


@pytest.fixture
def policy():
    return RetryPolicy(
        max_transient_retries=2,
        transient_delay=1.0,
        max_cumulative_rate_limit_delay=10.0,
        initial_rate_limit_delay=0.5,
    )


@pytest.fixture
def sleeper():
    return _Recorder()


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def transport(session, policy, sleeper, monkeypatch):
    for name in ("NO_PROXY", "no_proxy", "LITELLM_NO_PROXY"):
        monkeypatch.delenv(name, raising=False)
    return RetryingTransport(session=session, policy=policy, sleeper=sleeper)


class TestTransientRetry:
    """Tests for 5xx and network error handling."""

    def test_success_first_try(self, transport, session, sleeper):
        session.request.return_value = _response(200)
        response, stats = transport.send(URL, {"model": "m"})

        assert response.status_code == 200
        assert stats.attempts == 1
        assert sleeper.delays == []
        kwargs = session.request.call_args.kwargs
        assert kwargs["json"] == {"model": "m"}
        assert kwargs["stream"] is True

    def test_5xx_then_success(self, transport, session, sleeper):
        first = _response(502)
        session.request.side_effect = [first, _response(200)]
        response, stats = transport.send(URL)

        assert response.status_code == 200
        assert stats.attempts == 2
        assert stats.transient_errors == 1
        assert sleeper.delays == [1.0]
        first.close.assert_called_once()

    def test_5xx_returned_when_retries_exhausted(self, transport, session, sleeper):
        session.request.side_effect = [_response(503), _response(503), _response(500)]
        response, stats = transport.send(URL)

        assert response.status_code == 500
        assert stats.attempts == 3
        assert sleeper.delays == [1.0, 1.0]

    def test_network_error_exhaustion(self, transport, session, sleeper):
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(TransientTransportError) as exc_info:
            transport.send(URL)

        assert exc_info.value.attempts == 3
        assert "refused" in exc_info.value.original_error
        assert sleeper.delays == [1.0, 1.0]

    def test_network_error_then_success(self, transport, session):
        session.request.side_effect = [requests.Timeout("slow"), _response(200)]
        response, stats = transport.send(URL)
        assert response.status_code == 200
        assert stats.errors[0]["error_type"] == "Timeout"

    def test_4xx_not_retried(self, transport, session, sleeper):
        session.request.return_value = _response(400)
        response, stats = transport.send(URL)
        assert response.status_code == 400
        assert stats.attempts == 1
        assert sleeper.delays == []

    def test_retry_callback(self, session, policy, sleeper):
        calls = []
        transport = RetryingTransport(session=session, policy=policy, sleeper=sleeper,
                                      on_retry=lambda *args: calls.append(args))
        session.request.side_effect = [_response(502), _response(200)]
        transport.send(URL, context="chat")

        message, attempt, max_attempts, delay = calls[0]
        assert "chat (transient): HTTP 502" in message
        assert (attempt, max_attempts, delay) == (1, 2, 1.0)


class TestRateLimit:
    """Tests for 429 backoff."""

    def test_retry_after_hint_used(self, transport, session, sleeper):
        limited = _response(429, {"Retry-After": "2"})
        session.request.side_effect = [limited, _response(200)]
        response, stats = transport.send(URL)

        assert response.status_code == 200
        assert sleeper.delays == [2.0]
        assert stats.rate_limit_errors == 1
        limited.close.assert_called_once()

    def test_exponential_fallback(self, transport, session, sleeper):
        session.request.side_effect = [_response(429), _response(429), _response(429), _response(200)]
        transport.send(URL)
        assert sleeper.delays == [0.5, 1.0, 2.0]

    def test_zero_retry_after_still_waits_a_little(self, transport, session, sleeper):
        session.request.side_effect = [_response(429, {"Retry-After": "0"}), _response(200)]
        transport.send(URL)
        assert 0 < sleeper.delays[0] < 0.01

    def test_budget_bounds_total_wait(self, transport, session, sleeper):
        session.request.return_value = _response(429, {"Retry-After": "4"})
        response, stats = transport.send(URL)

        assert response.status_code == 429
        assert sleeper.delays == [4.0, 4.0, 2.0]
        assert sum(sleeper.delays) <= 10.0
        assert stats.rate_limit_delay == pytest.approx(10.0)

    def test_rate_limit_and_transient_counted_separately(self, transport, session):
        session.request.side_effect = [_response(502), _response(429), _response(200)]
        _, stats = transport.send(URL)
        assert stats.transient_errors == 1
        assert stats.rate_limit_errors == 1
        assert stats.attempts == 3


class TestCancellation:
    """Tests for CancelToken handling."""

    def test_cancelled_before_send(self, transport, session):
        token = CancelToken()
        token.cancel()
        with pytest.raises(CancelledException):
            transport.send(URL, cancel_token=token)
        session.request.assert_not_called()

    def test_cancel_during_backoff(self, transport, session, sleeper):
        token = CancelToken()

        def cancelling_sleep(seconds, cancel_token=None):
            token.cancel()
            cancel_token.raise_if_cancelled()

        transport._sleep = cancelling_sleep
        session.request.return_value = _response(429)
        with pytest.raises(CancelledException):
            transport.send(URL, cancel_token=token)
        assert session.request.call_count == 1

    def test_cancel_in_flight_releases_caller(self, transport, session):
        started = threading.Event()
        release = threading.Event()
        late = _response(200)
        closed = threading.Event()
        late.close.side_effect = closed.set

        def slow_request(**kwargs):
            started.set()
            release.wait(5)
            return late

        session.request.side_effect = slow_request
        token = CancelToken()
        threading.Thread(target=lambda: (started.wait(5), token.cancel())).start()

        with pytest.raises(CancelledException):
            transport.send(URL, cancel_token=token)

        release.set()
        assert closed.wait(5)
        transport.close()

    def test_hung_requests_do_not_block_later_sends(self, transport, session):
        release = threading.Event()
        hung = [threading.Event(), threading.Event()]
        ok = _response(200)
        calls = []

        def request(**kwargs):
            calls.append(kwargs)
            n = len(calls)
            if n <= len(hung):
                hung[n - 1].set()
                release.wait(5)
                return _response(200)
            return ok

        session.request.side_effect = request
        try:
            for started in hung:
                token = CancelToken()
                threading.Thread(target=lambda s=started, t=token: (s.wait(5), t.cancel())).start()
                with pytest.raises(CancelledException):
                    transport.send(URL, cancel_token=token)

            result = {}
            done = threading.Event()

            def send_again():
                result["response"], _ = transport.send(URL, cancel_token=CancelToken())
                done.set()

            threading.Thread(target=send_again, daemon=True).start()
            assert done.wait(5)
            assert result["response"] is ok
            assert len(calls) == 3
        finally:
            release.set()
            transport.close()

    def test_network_error_after_cancel_is_cancellation(self, transport, session):
        token = CancelToken()

        def failing_request(**kwargs):
            token.cancel()
            raise requests.ConnectionError("socket closed")

        session.request.side_effect = failing_request
        with pytest.raises(CancelledException):
            transport.send(URL, cancel_token=token)
