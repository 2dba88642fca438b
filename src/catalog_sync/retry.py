"""
Retry/backoff combinator used for both listing page fetches and batch
commits.

Only failures classified by :func:`is_transient_error` are retried; any
other exception propagates on the first attempt.  Delays grow
exponentially from ``base_delay`` and are capped at ``max_delay``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple

import asyncpg
from botocore.exceptions import ClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from botocore.exceptions import HTTPClientError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from catalog_sync.errors import TransientError

logger = logging.getLogger("catalog_sync.retry")

_TRANSIENT_S3_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "TooManyRequests",
        "RequestLimitExceeded",
        "RequestTimeout",
        "ServiceUnavailable",
        "InternalError",
    }
)
_TRANSIENT_HTTP_STATUSES = frozenset({429, 500, 502, 503, 504})

_TRANSIENT_DB_ERRORS: Tuple[type, ...] = (
    asyncpg.exceptions.TransactionRollbackError,  # deadlock, serialization
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.QueryCanceledError,  # statement_timeout
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.AdminShutdownError,  # server restart / failover
    asyncpg.exceptions.CrashShutdownError,
    asyncpg.exceptions.PostgresConnectionError,
)


def _is_transient_client_error(exc: ClientError) -> bool:
    response = getattr(exc, "response", None) or {}
    code = str(response.get("Error", {}).get("Code", ""))
    if code in _TRANSIENT_S3_CODES:
        return True
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if status in _TRANSIENT_HTTP_STATUSES:
        return True
    return code.isdigit() and int(code) in _TRANSIENT_HTTP_STATUSES


def is_transient_error(exc: BaseException) -> bool:
    """Return ``True`` if *exc* is worth retrying with backoff."""
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return True
    if isinstance(exc, ClientError):
        return _is_transient_client_error(exc)
    if isinstance(exc, _TRANSIENT_DB_ERRORS):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt and backoff bounds for one class of operation."""

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0


class RetryController:
    """Runs a fallible coroutine under a :class:`RetryPolicy`.

    Args:
        policy: Attempt/backoff bounds.
        is_retryable: Error classifier; defaults to :func:`is_transient_error`.
        sleep: Awaitable sleep used between attempts (overridable in tests).
    """

    def __init__(
        self,
        policy: RetryPolicy,
        is_retryable: Callable[[BaseException], bool] = is_transient_error,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self._is_retryable = is_retryable
        self._sleep = sleep

    def _retrying(self, description: str) -> AsyncRetrying:
        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "%s failed on attempt %d/%d (%s: %s); retrying in %.1fs",
                description,
                state.attempt_number,
                self.policy.max_attempts,
                type(exc).__name__,
                exc,
                delay,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.policy.max_attempts)),
            wait=wait_exponential(
                multiplier=max(0.0, self.policy.base_delay),
                max=max(0.0, self.policy.max_delay),
            ),
            retry=retry_if_exception(self._is_retryable),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

    async def execute_with_attempts(
        self,
        operation: Callable[..., Awaitable[Any]],
        *args: Any,
        description: str = "operation",
        **kwargs: Any,
    ) -> Tuple[Any, int]:
        """Run *operation* and return ``(result, attempts_used)``.

        Raises:
            The last exception raised by *operation* once attempts are
            exhausted, or the first non-transient exception.
        """
        attempts = 0
        result: Any = None
        async for attempt in self._retrying(description):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await operation(*args, **kwargs)

        if attempts > 1:
            logger.warning("%s succeeded after %d attempts", description, attempts)
        return result, attempts

    async def execute(
        self,
        operation: Callable[..., Awaitable[Any]],
        *args: Any,
        description: str = "operation",
        **kwargs: Any,
    ) -> Any:
        result, _ = await self.execute_with_attempts(
            operation, *args, description=description, **kwargs
        )
        return result
