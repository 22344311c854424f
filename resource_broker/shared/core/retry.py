"""
Bounded Retry with Exponential Backoff

A single retry combinator used for authentication exchanges, pool liveness
replacement and discovery. Call sites never hand-roll their own loops.
"""
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, TypeVar
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from resource_broker.shared.core.config import get_settings
from resource_broker.shared.core.exceptions import (
    AuthenticationCancelled,
    AuthenticationFailed,
    ConnectionUnavailable,
    RefreshRejected,
)

logger = structlog.get_logger()
T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Max attempts, backoff schedule and the exceptions worth retrying."""

    name: str = "default"
    max_attempts: int = 3
    min_wait: float = 0.1
    max_wait: float = 2.0
    multiplier: float = 2.0
    retry_on: tuple[type[BaseException], ...] = field(default=(Exception,))
    give_up_on: tuple[type[BaseException], ...] = field(default=())

    def with_overrides(self, **changes: Any) -> "RetryPolicy":
        return replace(self, **changes)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "operation_failed_will_retry",
            operation_type=self.name,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_seconds=round(delay, 3),
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
        )

    async def run(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute ``operation`` until it succeeds or the attempt budget is spent.

        The last exception is re-raised unchanged once retries are exhausted;
        exceptions outside ``retry_on`` propagate immediately.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.multiplier, min=self.min_wait, max=self.max_wait
            ),
            retry=retry_if_exception_type(self.retry_on)
            & retry_if_not_exception_type(self.give_up_on),
            before_sleep=self._log_retry,
            reraise=True,
        )
        attempt_number = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    result = await operation(*args, **kwargs)
        except self.retry_on as exc:
            if attempt_number >= self.max_attempts:
                logger.error(
                    "operation_failed_all_retries_exhausted",
                    operation_type=self.name,
                    total_attempts=attempt_number,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            raise

        if attempt_number > 1:
            logger.info(
                "operation_succeeded_after_retry",
                operation_type=self.name,
                attempt=attempt_number,
                max_attempts=self.max_attempts,
            )
        return result


# Default retry presets
RETRY_PRESETS: dict[str, dict[str, Any]] = {
    "authentication": {
        "min_wait": 0.5,
        "max_wait": 4.0,
        "multiplier": 2.0,
        "retry_on": (AuthenticationFailed, ConnectionError),
        "give_up_on": (RefreshRejected, AuthenticationCancelled),
    },
    "pool_checkout": {
        "min_wait": 0.05,
        "max_wait": 1.0,
        "multiplier": 2.0,
        "retry_on": (ConnectionUnavailable,),
    },
    "discovery": {
        "min_wait": 0.1,
        "max_wait": 2.0,
        "multiplier": 2.0,
        "retry_on": (ConnectionUnavailable, ConnectionError),
    },
}


def get_retry_policy(operation_type: str, **overrides: Any) -> RetryPolicy:
    """Build the named preset, sized from settings."""
    settings = get_settings()
    preset = RETRY_PRESETS.get(operation_type, {})
    params: dict[str, Any] = {
        "name": operation_type,
        "max_attempts": settings.RETRY_MAX_ATTEMPTS,
        "min_wait": settings.RETRY_MIN_WAIT_SECONDS,
        "max_wait": settings.RETRY_MAX_WAIT_SECONDS,
    }
    params.update(preset)
    params.update(overrides)
    return RetryPolicy(**params)
