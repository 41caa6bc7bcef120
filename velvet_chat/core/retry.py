"""
Retrying request executor.

Runs one remote call with bounded latency and bounded, classified
retries.

Classification Order:
1. Quota markers - trigger the usage guard cooldown, never retried
2. Transient markers - exponential backoff while attempts remain
3. Everything else - fatal
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from velvet_chat.config.loader import ErrorMarkers, RetryPolicy

from .errors import (
    ErrorKind,
    FatalError,
    QuotaExhausted,
    RequestTimeout,
    RetryOutcome,
)
from .usage_guard import UsageGuard

logger = logging.getLogger(__name__)

RequestFn = Callable[[], Awaitable[Any]]


def error_signature(error: BaseException) -> str:
    """Flatten an opaque provider error into a searchable string."""
    parts = [type(error).__name__, str(error), repr(error)]
    for attr in ("status_code", "code", "status", "body"):
        value = getattr(error, attr, None)
        if value is not None:
            parts.append(str(value))
    return " ".join(parts)


def _matches(signature: str, markers: Iterable[str]) -> bool:
    return any(marker in signature for marker in markers)


class RetryingRequestExecutor:
    """Executes remote calls with a timeout race and backoff retries."""

    def __init__(
        self,
        guard: UsageGuard,
        policy: Optional[RetryPolicy] = None,
        markers: Optional[ErrorMarkers] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """Initialize the executor.

        Args:
            guard: Shared usage guard (request counting and cooldown)
            policy: Attempt budget and timing (defaults to RetryPolicy())
            markers: Error classification markers
            sleep: Awaitable sleep used between attempts, in seconds
        """
        self.guard = guard
        self.policy = policy or RetryPolicy()
        self.markers = markers or ErrorMarkers()
        self.sleep = sleep

    def classify(self, error: BaseException, attempt: int, max_attempts: int) -> RetryOutcome:
        """Map a failed attempt to its outcome.

        Args:
            error: The exception raised by the attempt
            attempt: Zero-based attempt index
            max_attempts: Total attempt budget

        Returns:
            RetryOutcome with kind QUOTA_EXHAUSTED, TRANSIENT_FAILURE or FATAL
        """
        signature = error_signature(error)
        if _matches(signature, self.markers.quota):
            return RetryOutcome.quota_exhausted(error, attempt)
        if _matches(signature, self.markers.transient) and attempt + 1 < max_attempts:
            return RetryOutcome.transient_failure(error, attempt)
        return RetryOutcome.fatal(error, attempt)

    async def _race(self, request_fn: RequestFn, timeout_ms: int) -> Any:
        """Run one attempt against a timer.

        A losing request is abandoned; cancelling it is best-effort only.
        """
        task = asyncio.ensure_future(request_fn())
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task not in done:
            task.cancel()
            raise RequestTimeout(timeout_ms)
        return task.result()

    async def _attempt(self, request_fn: RequestFn, attempt: int,
                       max_attempts: int, timeout_ms: int) -> RetryOutcome:
        try:
            value = await self._race(request_fn, timeout_ms)
        except Exception as e:
            return self.classify(e, attempt, max_attempts)
        return RetryOutcome.succeeded(value, attempt)

    async def execute(
        self,
        request_fn: RequestFn,
        max_attempts: Optional[int] = None,
        timeout_ms: Optional[int] = None
    ) -> Any:
        """Execute a logical request with retries.

        The request is counted against the usage guard once, before the
        first attempt; retries do not count again.

        Args:
            request_fn: Zero-argument coroutine function making the call
            max_attempts: Attempt budget (defaults to policy, 4)
            timeout_ms: Per-attempt timeout (defaults to policy, 20000)

        Returns:
            The value returned by ``request_fn`` on success

        Raises:
            QuotaExhausted: Provider reported quota exhaustion
            FatalError: Non-retryable error or retry budget exhausted
        """
        if max_attempts is None:
            max_attempts = self.policy.max_attempts
        if timeout_ms is None:
            timeout_ms = self.policy.timeout_ms
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")

        self.guard.record_request()

        for attempt in range(max_attempts):
            logger.debug(f"Request attempt {attempt + 1}/{max_attempts}")
            outcome = await self._attempt(request_fn, attempt, max_attempts, timeout_ms)

            if outcome.success:
                return outcome.value

            if outcome.kind == ErrorKind.QUOTA_EXHAUSTED:
                logger.warning(f"Quota exhausted: {outcome.cause}")
                self.guard.trigger_cooldown()
                raise QuotaExhausted("QUOTA_EXHAUSTED", outcome.cause)

            if outcome.kind == ErrorKind.TRANSIENT_FAILURE:
                delay = (2 ** attempt) * self.policy.base_delay_seconds
                logger.info(
                    f"Retrying request in {delay:.1f}s "
                    f"(attempt {attempt + 1} failed: {outcome.cause})"
                )
                await self.sleep(delay)
                continue

            logger.error(f"Request failed after {attempt + 1} attempt(s): {outcome.cause}")
            raise FatalError("Request failed", outcome.cause)

        # Unreachable: the last attempt never classifies as transient
        raise FatalError("Retry budget exhausted")
