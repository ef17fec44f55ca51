from __future__ import annotations

import psycopg2
import pytest
import requests.exceptions

from faturador.services.retry import (
    DB_TRANSIENT,
    LOOKUP_READ,
    PROVIDER_READ,
    RetryableHTTPError,
    RetryPolicy,
    _calc_delay,
    retry_call,
)


class TestRetryCall:
    def test_success_first_attempt(self):
        assert retry_call(lambda: 42, PROVIDER_READ, sleep_func=lambda _: None) == 42

    def test_retries_connection_error_then_succeeds(self):
        calls = []

        def func():
            calls.append(1)
            if len(calls) < 2:
                raise requests.exceptions.ConnectionError("reset")
            return "ok"

        assert retry_call(func, PROVIDER_READ, sleep_func=lambda _: None) == "ok"
        assert len(calls) == 2

    def test_exhausts_retries_and_reraises(self):
        def func():
            raise requests.exceptions.ConnectionError("down")

        with pytest.raises(requests.exceptions.ConnectionError, match="down"):
            retry_call(func, PROVIDER_READ, sleep_func=lambda _: None)

    def test_does_not_retry_non_retryable(self):
        calls = []

        def func():
            calls.append(1)
            raise RuntimeError("fatal")

        with pytest.raises(RuntimeError, match="fatal"):
            retry_call(func, PROVIDER_READ, sleep_func=lambda _: None)
        assert len(calls) == 1

    def test_should_retry_vetoes(self):
        calls = []

        def func():
            calls.append(1)
            raise psycopg2.OperationalError("out of memory")

        with pytest.raises(psycopg2.OperationalError):
            retry_call(func, DB_TRANSIENT, sleep_func=lambda _: None, should_retry=lambda e: False)
        assert len(calls) == 1

    def test_retries_retryable_http_error(self):
        calls = []

        def func():
            calls.append(1)
            if len(calls) < 3:
                raise RetryableHTTPError("503")
            return "recovered"

        assert retry_call(func, PROVIDER_READ, sleep_func=lambda _: None) == "recovered"
        assert len(calls) == 3

    def test_delay_capped_at_max(self):
        policy = RetryPolicy(
            max_attempts=6,
            base_delay=5.0,
            max_delay=8.0,
            backoff_factor=3.0,
            jitter=0.0,
            retryable_exceptions=(requests.exceptions.ConnectionError,),
        )
        delays: list[float] = []

        def func():
            if len(delays) < 5:
                raise requests.exceptions.ConnectionError("err")
            return "done"

        retry_call(func, policy, sleep_func=delays.append)
        assert delays[0] == pytest.approx(5.0)
        assert all(d <= policy.max_delay for d in delays)


class TestPolicies:
    def test_db_transient_delays(self):
        assert DB_TRANSIENT.max_attempts == 3
        assert _calc_delay(0, DB_TRANSIENT) == pytest.approx(1.0)
        assert _calc_delay(1, DB_TRANSIENT) == pytest.approx(2.0)
        assert _calc_delay(5, DB_TRANSIENT) == pytest.approx(5.0)

    def test_provider_read(self):
        assert PROVIDER_READ.max_attempts == 3
        assert PROVIDER_READ.retryable_status_codes == frozenset({429, 502, 503, 504})

    def test_lookup_read_retries_timeout(self):
        calls = []

        def func():
            calls.append(1)
            if len(calls) < 2:
                raise requests.exceptions.ReadTimeout("read timed out")
            return "ok"

        assert retry_call(func, LOOKUP_READ, sleep_func=lambda _: None) == "ok"
        assert LOOKUP_READ.max_attempts == 2


class TestCalcDelay:
    def test_exponential_growth(self):
        policy = RetryPolicy(
            max_attempts=5,
            base_delay=1.0,
            max_delay=100.0,
            backoff_factor=2.0,
            jitter=0.0,
            retryable_exceptions=(),
        )
        assert _calc_delay(0, policy) == pytest.approx(1.0)
        assert _calc_delay(1, policy) == pytest.approx(2.0)
        assert _calc_delay(2, policy) == pytest.approx(4.0)

    def test_jitter_within_range(self):
        for _ in range(50):
            d = _calc_delay(0, PROVIDER_READ)
            assert 0.75 <= d <= 1.25

    def test_never_negative(self):
        policy = RetryPolicy(
            max_attempts=2,
            base_delay=0.0,
            max_delay=1.0,
            backoff_factor=2.0,
            jitter=1.0,
            retryable_exceptions=(),
        )
        assert _calc_delay(0, policy) >= 0.0
