"""Retry utilities for InfrastructureProvider calls.

Every provider call runs under a per-call timeout and is retried with bounded
exponential backoff. Sleeps between attempts go through the Clock so that
tests can drive the schedule deterministically.

Example:
    >>> caller = RetryingCaller(RetryConfig(), clock)
    >>> await caller.call("shift_traffic", "dep-1", provider.shift_traffic, "dep-1", 10)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shipgate.clock import Clock
from shipgate.config import RetryConfig
from shipgate.errors import (
    InfrastructureError,
    RetryExhaustedError,
    ShipgateError,
    TransientInfrastructureError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Exceptions that indicate a transient failure worth retrying
RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientInfrastructureError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


def _log_retry_attempt(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "provider_call_retry",
        operation=retry_state.kwargs.get("operation"),
        deployment_id=retry_state.kwargs.get("deployment_id"),
        attempt=retry_state.attempt_number,
        error_type=type(exception).__name__ if exception else "unknown",
        error_message=str(exception) if exception else "unknown",
        next_wait_seconds=(retry_state.next_action.sleep if retry_state.next_action else 0),
    )


class RetryingCaller:
    """Run provider calls under a timeout with tenacity retries.

    Args:
        config: Attempts, backoff and per-call timeout.
        clock: Clock whose sleep is used between attempts.
    """

    def __init__(self, config: RetryConfig, clock: Clock) -> None:
        self._config = config
        self._clock = clock

    async def call(
        self,
        operation: str,
        deployment_id: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        """Call func(*args), retrying transient failures.

        Args:
            operation: Operation name used in logs and errors.
            deployment_id: Deployment the call is made for.
            func: Async callable to invoke.
            *args: Positional arguments for func.

        Returns:
            The value returned by func.

        Raises:
            RetryExhaustedError: If every attempt failed transiently.
            InfrastructureError: Non-transient provider errors, unretried.
                Exceptions outside the shipgate hierarchy are wrapped, with
                the original as __cause__.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(
                multiplier=self._config.base_delay_seconds,
                max=self._config.max_delay_seconds,
            ),
            retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
            before_sleep=_log_retry_attempt,
            sleep=self._clock.sleep,
            reraise=False,
        )

        try:
            return await retrying(
                self._attempt,
                func,
                *args,
                operation=operation,
                deployment_id=deployment_id,
            )
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                "provider_call_exhausted",
                operation=operation,
                deployment_id=deployment_id,
                attempts=e.last_attempt.attempt_number,
                error=str(last_error),
            )
            raise RetryExhaustedError(
                operation,
                deployment_id,
                e.last_attempt.attempt_number,
                last_error,
            ) from last_error
        except ShipgateError:
            raise
        except Exception as e:
            logger.error(
                "provider_call_failed",
                operation=operation,
                deployment_id=deployment_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise InfrastructureError(
                f"{operation} failed for deployment {deployment_id}: {type(e).__name__}: {e}"
            ) from e

    async def _attempt(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str,  # noqa: ARG002
        deployment_id: str,  # noqa: ARG002
    ) -> T:
        return await asyncio.wait_for(func(*args), timeout=self._config.call_timeout_seconds)


__all__ = ["RETRYABLE_EXCEPTIONS", "RetryingCaller"]
