from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar('T')


# -------------------------
# Error taxonomy
# -------------------------
class AdlabError(Exception):
    pass


class ValidationError(AdlabError):
    pass


class NotConnectedError(ValidationError):
    pass


class InvalidTransitionError(ValidationError):
    pass


class RemoteError(AdlabError):
    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        op: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.subcode = subcode
        self.op = op

    @property
    def credential_expired(self) -> bool:
        return self.code == 190

    def __str__(self) -> str:
        bits = [self.message]
        if self.code is not None:
            bits.append(f"code={self.code}")
        if self.subcode is not None:
            bits.append(f"subcode={self.subcode}")
        if self.status is not None:
            bits.append(f"http={self.status}")
        return " ".join(bits)


class RemoteTransientError(RemoteError):
    pass


class RemotePolicyError(RemoteError):
    pass


class BuildFailure(AdlabError):
    def __init__(self, step: str, cause: Exception, orphaned_campaign_id: Optional[str] = None) -> None:
        super().__init__(f"build failed at {step}: {cause}")
        self.step = step
        self.cause = cause
        self.orphaned_campaign_id = orphaned_campaign_id


class SyncFailure(AdlabError):
    def __init__(self, experiment_id: str, cause: Exception) -> None:
        super().__init__(f"sync failed for {experiment_id}: {cause}")
        self.experiment_id = experiment_id
        self.cause = cause


class SyncInProgressError(AdlabError):
    pass


# Graph API codes for throttling and temporary unavailability.
TRANSIENT_GRAPH_CODES = frozenset({1, 2, 4, 17, 32, 341, 613, 80004})


def classify_remote_error(
    status: Optional[int],
    payload: Optional[Dict[str, Any]] = None,
    op: str = "",
) -> RemoteError:
    """Map an HTTP status plus Graph error body onto the taxonomy."""
    err = (payload or {}).get("error") if isinstance(payload, dict) else None
    err = err if isinstance(err, dict) else {}
    message = str(err.get("error_user_msg") or err.get("message") or f"HTTP {status}")
    code = _as_int(err.get("code"))
    subcode = _as_int(err.get("error_subcode"))
    transient = (
        (status is not None and (status >= 500 or status == 429))
        or (code in TRANSIENT_GRAPH_CODES)
        or bool(err.get("is_transient"))
    )
    cls = RemoteTransientError if transient else RemotePolicyError
    return cls(message, status=status, code=code, subcode=subcode, op=op)


def classify_exception(exc: BaseException, op: str = "") -> RemoteError:
    if isinstance(exc, RemoteError):
        return exc
    if isinstance(exc, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        return RemoteTransientError(f"{type(exc).__name__}: {exc}", op=op)
    # facebook_business FacebookRequestError exposes these accessors
    status_fn = getattr(exc, "http_status", None)
    code_fn = getattr(exc, "api_error_code", None)
    if callable(status_fn) and callable(code_fn):
        body = getattr(exc, "body", None)
        payload = body() if callable(body) else None
        if not isinstance(payload, dict):
            payload = {"error": {"message": str(exc), "code": code_fn()}}
        return classify_remote_error(status_fn(), payload, op=op)
    return RemotePolicyError(str(exc), op=op)


def _as_int(v: Any) -> Optional[int]:
    try:
        return int(v) if v is not None else None
    except (TypeError, ValueError):
        return None


# -------------------------
# Circuit breaker / retry
# -------------------------
class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RemoteTransientError):
    pass


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: int = 60


@dataclass
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple = (RemoteTransientError,)


class CircuitBreaker:
    """Opens after consecutive transient failures; only transient errors count."""

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        if self.state == CircuitState.OPEN:
            elapsed = (datetime.now() - self.last_failure_time).total_seconds() if self.last_failure_time else 0.0
            if elapsed >= self.config.timeout_seconds:
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                logger.info(f"Circuit breaker {self.name} entering HALF_OPEN state")
            else:
                raise CircuitOpenError(f"Circuit breaker {self.name} is OPEN", op=self.name)
        try:
            result = func(*args, **kwargs)
        except RemoteTransientError:
            self._record_failure()
            raise
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                logger.info(f"Circuit breaker {self.name} CLOSED")
        if self.state == CircuitState.CLOSED:
            self.failure_count = 0
        return result

    def _record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = datetime.now()
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            logger.warning(f"Circuit breaker {self.name} back to OPEN")
        elif self.failure_count >= self.config.failure_threshold:
            self.state = CircuitState.OPEN
            logger.error(f"Circuit breaker {self.name} OPENED after {self.failure_count} failures")

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None


class RetryHandler:
    def __init__(self, config: Optional[RetryConfig] = None, sleeper: Callable[[float], None] = time.sleep) -> None:
        self.config = config or RetryConfig()
        self.sleeper = sleeper

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except self.config.retryable_exceptions as e:
                if isinstance(e, CircuitOpenError) or attempt >= self.config.max_retries:
                    logger.error(f"Giving up after {attempt + 1} attempt(s): {e}")
                    raise
                delay = self._calculate_delay(attempt)
                logger.warning(f"Retry attempt {attempt + 1}/{self.config.max_retries} after {delay:.2f}s: {e}")
                self.sleeper(delay)
                attempt += 1

    def _calculate_delay(self, attempt: int) -> float:
        delay = min(self.config.initial_delay * (self.config.exponential_base ** attempt), self.config.max_delay)
        if self.config.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        return delay

