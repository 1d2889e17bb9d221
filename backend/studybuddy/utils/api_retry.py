"""
Backoff and circuit breaking for calls to the generative-text provider.

Only transient failures are retried: 500/502/504 responses and dropped
connections. Quota and overload errors go straight back to the caller,
which has a fallback ready (canned chat reply, practice quiz, heuristic
file analysis).

Usage:
    handler = ProviderRetryHandler(RetryConfig(max_retries=2))

    @handler.get_decorator()
    def call():
        return client.chat.completions.create(...)
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)

TRANSIENT_MESSAGES = ("connection reset", "connection error", "server error", "internal error")


@dataclass
class RetryConfig:
    max_retries: int = 2
    initial_delay: float = 0.5  # seconds
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.5  # up to +50% of the computed delay

    retry_on_status_codes: Tuple[int, ...] = (500, 502, 504)
    retry_on_exceptions: Tuple[Type[Exception], ...] = (ConnectionError,)

    enable_circuit_breaker: bool = True
    failure_threshold: int = 5  # consecutive failed calls
    recovery_timeout: float = 60.0  # seconds spent OPEN before probing


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN once `recovery_timeout` has passed.
    HALF_OPEN -> CLOSED after two successes, or back to OPEN on any failure.
    """

    SUCCESSES_TO_CLOSE = 2

    def __init__(self, config: RetryConfig):
        self.config = config
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None

    def _recovery_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return False
        waited = (datetime.utcnow() - self.last_failure_time).total_seconds()
        return waited >= self.config.recovery_timeout

    def can_execute(self) -> bool:
        with self._lock:
            if self.state == CircuitState.OPEN and self._recovery_elapsed():
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                logger.info("Circuit breaker HALF_OPEN, probing provider")
            return self.state != CircuitState.OPEN

    def record_success(self):
        with self._lock:
            if self.state != CircuitState.HALF_OPEN:
                self.failure_count = 0
                return
            self.success_count += 1
            if self.success_count >= self.SUCCESSES_TO_CLOSE:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                logger.info("Circuit breaker CLOSED, provider recovered")

    def record_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.utcnow()
            tripped = (
                self.state == CircuitState.HALF_OPEN
                or self.failure_count >= self.config.failure_threshold
            )
            if tripped and self.state != CircuitState.OPEN:
                self.state = CircuitState.OPEN
                logger.warning(f"Circuit breaker OPEN after {self.failure_count} consecutive failures")


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number `attempt` (0-based), jittered and capped."""
    delay = config.initial_delay * config.exponential_base ** attempt
    delay += random.uniform(0, delay * config.jitter_factor)
    return min(delay, config.max_delay)


def _status_code(exception: Exception) -> Optional[int]:
    status = getattr(exception, "status_code", None)
    if status is None:
        status = getattr(getattr(exception, "response", None), "status_code", None)
    return status


def should_retry(exception: Exception, config: RetryConfig) -> bool:
    status = _status_code(exception)
    if status is not None:
        return status in config.retry_on_status_codes
    if isinstance(exception, config.retry_on_exceptions):
        return True
    message = str(exception).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGES)


def retry_with_backoff(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
):
    """Retry a synchronous callable on transient provider errors."""
    config = config or RetryConfig()

    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if attempt >= config.max_retries or not should_retry(e, config):
                        raise
                    delay = calculate_delay(attempt, config)
                    logger.warning(f"Provider call failed ({e}); retry {attempt + 1}/{config.max_retries} in {delay:.2f}s")
                    if on_retry:
                        on_retry(attempt, e, delay)
                    time.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


class ProviderRetryHandler:
    """One circuit breaker plus call counters shared by every provider call."""

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()
        self.circuit_breaker = CircuitBreaker(self.config)
        self._metrics_lock = threading.Lock()
        self._metrics: Dict[str, int] = dict.fromkeys(
            ("total_calls", "successful_calls", "retried_calls", "failed_calls"), 0
        )

    def _bump(self, key: str):
        with self._metrics_lock:
            self._metrics[key] += 1

    def get_decorator(self):
        return retry_with_backoff(self.config, on_retry=lambda attempt, exc, delay: self._bump("retried_calls"))

    def record(self, success: bool):
        """Count a finished call (after retries) and feed the breaker."""
        self._bump("total_calls")
        if success:
            self._bump("successful_calls")
            self.circuit_breaker.record_success()
        else:
            self._bump("failed_calls")
            self.circuit_breaker.record_failure()

    def get_metrics(self) -> Dict[str, int]:
        with self._metrics_lock:
            return dict(self._metrics)

    def reset_metrics(self):
        with self._metrics_lock:
            for key in self._metrics:
                self._metrics[key] = 0
