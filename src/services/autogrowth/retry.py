"""
Boundary retry policy

Only PersistenceError is retried, and only around calls that are safe to
repeat. Business rejections and lock conflicts go straight back to the
caller.
"""
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from config.autogrowth_config import RetryConfig
from src.services.autogrowth.exceptions import PersistenceError

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Persistence failure in {getattr(retry_state.fn, '__name__', 'call')}, "
        f"attempt {retry_state.attempt_number}: {error}"
    )


def persistence_retrying(config: RetryConfig) -> AsyncRetrying:
    """tenacity controller for idempotent ledger calls."""
    return AsyncRetrying(
        retry=retry_if_exception_type(PersistenceError),
        stop=stop_after_attempt(config.attempts),
        wait=wait_random_exponential(multiplier=config.initial_wait_sec, max=config.max_wait_sec),
        before_sleep=_log_retry,
        reraise=True,
    )


async def call_with_retry(
    config: RetryConfig,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Await func(*args, **kwargs), retrying PersistenceError

    Raises:
        PersistenceError: After the last attempt failed
    """
    async for attempt in persistence_retrying(config):
        with attempt:
            return await func(*args, **kwargs)
