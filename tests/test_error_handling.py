import pytest
import requests

from adlab.infrastructure.error_handling import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    RemotePolicyError,
    RemoteTransientError,
    RetryConfig,
    RetryHandler,
    classify_exception,
    classify_remote_error,
)
from adlab.infrastructure.locking import KeyedLock


class TestClassification:
    @pytest.mark.parametrize("status,payload,transient", [
        (500, None, True),
        (503, {"error": {"message": "unavailable"}}, True),
        (429, None, True),
        (400, {"error": {"code": 100, "message": "Invalid parameter"}}, False),
        (400, {"error": {"code": 17, "message": "User request limit reached"}}, True),
        (400, {"error": {"code": 613}}, True),
        (400, {"error": {"code": 200, "is_transient": True}}, True),
        (403, {"error": {"code": 10}}, False),
        (400, "not a dict", False),
    ])
    def test_status_and_code(self, status, payload, transient):
        err = classify_remote_error(status, payload, op="x")
        assert isinstance(err, RemoteTransientError if transient else RemotePolicyError)
        assert err.status == status

    def test_expired_credential(self):
        err = classify_remote_error(400, {"error": {"code": "190", "error_subcode": 463, "message": "expired"}})
        assert isinstance(err, RemotePolicyError)
        assert err.credential_expired
        assert err.subcode == 463
        assert "code=190" in str(err)

    def test_user_message_preferred(self):
        err = classify_remote_error(400, {"error": {"message": "raw", "error_user_msg": "Budget too low", "code": 100}})
        assert err.message == "Budget too low"

    @pytest.mark.parametrize("exc", [requests.Timeout("t"), requests.ConnectionError("c"), TimeoutError()])
    def test_network_errors_are_transient(self, exc):
        assert isinstance(classify_exception(exc), RemoteTransientError)

    def test_sdk_style_errors(self):
        class SdkError(Exception):
            def http_status(self):
                return 500

            def api_error_code(self):
                return 2

            def body(self):
                return {"error": {"code": 2, "message": "temporarily unavailable"}}

        err = classify_exception(SdkError("boom"), op="create_campaign")
        assert isinstance(err, RemoteTransientError)
        assert err.op == "create_campaign"

    def test_anything_else_is_policy(self):
        assert isinstance(classify_exception(KeyError("x")), RemotePolicyError)


class TestCircuitBreaker:
    def test_opens_after_transient_failures(self):
        br = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=2, timeout_seconds=60))

        def boom():
            raise RemoteTransientError("down", status=500)

        for _ in range(2):
            with pytest.raises(RemoteTransientError):
                br.call(boom)
        assert br.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            br.call(lambda: "never")

    def test_policy_errors_do_not_count(self):
        br = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=1))

        def reject():
            raise RemotePolicyError("bad", status=400, code=100)

        for _ in range(3):
            with pytest.raises(RemotePolicyError):
                br.call(reject)
        assert br.state == CircuitState.CLOSED
        assert br.call(lambda: 5) == 5

    def test_half_open_recovers(self):
        br = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=1, success_threshold=1, timeout_seconds=0))
        with pytest.raises(RemoteTransientError):
            br.call(lambda: (_ for _ in ()).throw(RemoteTransientError("x")))
        assert br.state == CircuitState.OPEN
        assert br.call(lambda: "ok") == "ok"
        assert br.state == CircuitState.CLOSED


class TestRetryHandler:
    def test_retries_transient_then_succeeds(self):
        sleeps = []
        calls = iter([RemoteTransientError("a"), RemoteTransientError("b"), "done"])

        def flaky():
            v = next(calls)
            if isinstance(v, Exception):
                raise v
            return v

        handler = RetryHandler(RetryConfig(max_retries=3, initial_delay=1.0, jitter=False), sleeper=sleeps.append)
        assert handler.execute(flaky) == "done"
        assert sleeps == [1.0, 2.0]

    def test_policy_error_not_retried(self):
        sleeps = []
        handler = RetryHandler(RetryConfig(max_retries=3), sleeper=sleeps.append)
        with pytest.raises(RemotePolicyError):
            handler.execute(lambda: (_ for _ in ()).throw(RemotePolicyError("no")))
        assert sleeps == []

    def test_open_circuit_not_retried(self):
        sleeps = []
        handler = RetryHandler(RetryConfig(max_retries=3), sleeper=sleeps.append)
        with pytest.raises(CircuitOpenError):
            handler.execute(lambda: (_ for _ in ()).throw(CircuitOpenError("open")))
        assert sleeps == []

    def test_gives_up_after_max(self):
        sleeps = []
        handler = RetryHandler(RetryConfig(max_retries=2, initial_delay=0.1), sleeper=sleeps.append)
        with pytest.raises(RemoteTransientError):
            handler.execute(lambda: (_ for _ in ()).throw(RemoteTransientError("down")))
        assert len(sleeps) == 2


class TestKeyedLock:
    def test_try_acquire_is_exclusive_per_key(self):
        locks = KeyedLock()
        assert locks.try_acquire("a")
        assert not locks.try_acquire("a")
        assert locks.try_acquire("b")
        assert locks.locked("a")
        locks.release("a")
        assert not locks.locked("a")
        assert locks.try_acquire("a")
