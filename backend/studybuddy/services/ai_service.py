"""
Centralized generative-text service with circuit breaker, retry and bounded waits.

Every AI-backed feature (chat replies, quiz generation, file summaries) sends a
single prompt string and gets text back through `ai_service.generate_text`.
Provider failures are translated into a small error hierarchy so callers can
pick their fallback:

    AIServiceError
    ├── AIAuthError              invalid / missing API key          -> 401
    ├── AIQuotaError             quota, rate limit, overload        -> 429
    │   └── CircuitBreakerOpenError
    └── AITimeoutError           bounded wait exceeded

Usage:
    from studybuddy.services.ai_service import ai_service, AIQuotaError

    try:
        text = ai_service.generate_text(prompt, timeout=10)
    except AIQuotaError:
        text = fallback_text()

With a timeout the provider call runs on a worker thread and the caller waits
at most `timeout` seconds. A call that loses the race is abandoned, not
cancelled: it may still finish, and its result is logged and dropped.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any, Deque, Dict, Optional

import openai
import sentry_sdk

from studybuddy.utils.api_retry import (
    ProviderRetryHandler,
    CircuitState,
    RetryConfig
)
from studybuddy.utils.openai_client import (
    MissingAPIKeyError,
    OPENAI_MODEL,
    get_openai_client
)

logger = logging.getLogger(__name__)

# Thread pool for bounded-wait provider calls
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="ai-call")

_QUOTA_MARKERS = ("quota", "rate limit", "limit", "overloaded", "resource exhausted")
_AUTH_MARKERS = ("api key", "api_key", "unauthorized")


class AIServiceError(Exception):
    """Base exception for generative-text service errors."""
    pass


class AIAuthError(AIServiceError):
    """The provider rejected our credentials."""
    pass


class AIQuotaError(AIServiceError):
    """The provider is over quota, rate limiting or overloaded."""
    pass


class CircuitBreakerOpenError(AIQuotaError):
    """Raised when circuit breaker is open and requests are being rejected."""
    pass


class AITimeoutError(AIServiceError):
    """The provider did not answer within the caller's bounded wait."""
    pass


def classify_provider_error(error: Exception) -> AIServiceError:
    """Map a raw provider exception onto the service error hierarchy."""
    if isinstance(error, AIServiceError):
        return error
    if isinstance(error, (MissingAPIKeyError, openai.AuthenticationError, openai.PermissionDeniedError)):
        return AIAuthError(str(error))
    if isinstance(error, openai.RateLimitError):
        return AIQuotaError(str(error))
    if getattr(error, "status_code", None) in (429, 503, 529):
        return AIQuotaError(str(error))

    message = str(error).lower()
    if any(marker in message for marker in _AUTH_MARKERS):
        return AIAuthError(str(error))
    if any(marker in message for marker in _QUOTA_MARKERS):
        return AIQuotaError(str(error))
    return AIServiceError(str(error))


def _discard_late_result(future: Future) -> None:
    """Done-callback for abandoned calls: the caller already answered without it."""
    error = future.exception()
    if error is not None:
        logger.info(f"Abandoned AI call failed after timeout: {type(error).__name__}")
    else:
        logger.info("Discarding AI response that arrived after the caller timed out")


class AIService:
    """
    All provider traffic goes through one instance so the circuit breaker
    sees every failure.
    """

    HISTORY_SIZE = 1000
    STATUS_WINDOW = 100

    def __init__(self, model: str = OPENAI_MODEL):
        self.model = model
        # Quota errors are not retried; callers fall back instead.
        self.config = RetryConfig(
            max_retries=2,
            initial_delay=0.5,
            max_delay=8.0,
            retry_on_status_codes=(500, 502, 504),
            failure_threshold=5,
            recovery_timeout=60.0
        )
        self.retry_handler = ProviderRetryHandler(self.config)
        self._calls: Deque[Dict[str, Any]] = deque(maxlen=self.HISTORY_SIZE)
        self._abandoned_calls = 0
        self._lock = threading.Lock()

    @property
    def circuit_breaker(self):
        return self.retry_handler.circuit_breaker

    def generate_text(self, prompt: str, timeout: Optional[float] = None) -> str:
        """
        Send a single prompt and return the generated text.

        Args:
            prompt: Full prompt text
            timeout: Seconds to wait before abandoning the call (None = provider's own limit)

        Raises:
            AIAuthError, AIQuotaError, AITimeoutError, AIServiceError
        """
        if timeout is None:
            return self._generate(prompt)

        future = _executor.submit(self._generate, prompt)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            # Only a call still waiting for a worker can be cancelled
            if not future.cancel():
                future.add_done_callback(_discard_late_result)
            with self._lock:
                self._abandoned_calls += 1
            logger.warning(f"AI call exceeded {timeout}s, abandoning it")
            raise AITimeoutError(f"AI service did not respond within {timeout} seconds")

    def _generate(self, prompt: str) -> str:
        if self.config.enable_circuit_breaker and not self.circuit_breaker.can_execute():
            self._log_call(ok=False, error="circuit open")
            logger.warning(f"Rejecting AI call, circuit OPEN ({self.circuit_breaker.failure_count} failures)")
            sentry_sdk.capture_message("AI circuit breaker open, calls rejected", level="warning")
            raise CircuitBreakerOpenError(
                "AI service temporarily unavailable after repeated failures, try again later"
            )

        call = self.retry_handler.get_decorator()(self._complete)
        started = time.perf_counter()
        try:
            text = call(prompt)
        except Exception as e:
            self.retry_handler.record(success=False)
            self._log_call(ok=False, error=str(e))

            classified = classify_provider_error(e)
            if type(classified) is AIServiceError:
                sentry_sdk.capture_exception(e)
            logger.error(
                f"AI call failed as {type(classified).__name__}: {e} "
                f"(circuit {self.circuit_breaker.state.value})"
            )
            raise classified from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.retry_handler.record(success=True)
        self._log_call(ok=True, latency_ms=elapsed_ms)
        logger.debug(f"AI call took {elapsed_ms:.0f}ms")
        return text

    def _complete(self, prompt: str) -> str:
        """One raw provider round trip."""
        response = get_openai_client().chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}]
        )
        return response.choices[0].message.content or ""

    def _log_call(self, ok: bool, latency_ms: float = 0.0, error: Optional[str] = None):
        with self._lock:
            self._calls.append({"at": datetime.utcnow(), "ok": ok, "latency_ms": latency_ms, "error": error})

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for /health: breaker state, retry counters, recent latency."""
        breaker = self.circuit_breaker
        with self._lock:
            window = list(self._calls)[-self.STATUS_WINDOW:]
            abandoned = self._abandoned_calls

        latencies = [c["latency_ms"] for c in window if c["ok"]]
        last_failure = breaker.last_failure_time

        return {
            "model": self.model,
            "circuit_breaker": {
                "state": breaker.state.value,
                "failure_count": breaker.failure_count,
                "failure_threshold": self.config.failure_threshold,
                "last_failure_time": last_failure.isoformat() if last_failure else None,
            },
            "retry_metrics": self.retry_handler.get_metrics(),
            "recent_performance": {
                "total_calls": len(window),
                "successful_calls": len(latencies),
                "failed_calls": len(window) - len(latencies),
                "abandoned_calls": abandoned,
                "avg_latency_ms": round(sum(latencies) / len(latencies), 1) if latencies else 0.0,
            },
        }

    def reset_circuit_breaker(self):
        self.circuit_breaker.reset()
        logger.warning("AI circuit breaker reset to CLOSED")

    def is_healthy(self) -> bool:
        return self.circuit_breaker.state != CircuitState.OPEN


ai_service = AIService()
