"""Failure classification and bounded retry for pipeline steps."""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import sqlalchemy.exc as sa_exc

from commission_builder.core.exceptions import (
    AppError,
    ConfigurationError,
    IntegrityError,
    PipelineStateError,
    TransientInfrastructureError,
    ValidationError,
)
from commission_builder.models.pipeline import ErrorClass
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)

TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "timed out",
    "deadlock",
    "could not serialize",
    "temporarily unavailable",
    "too many clients",
    "database is locked",
)

FATAL_PATTERNS = (
    "violates",
    "constraint",
    "syntax error",
    "does not exist",
    "no such table",
    "no such column",
    "undefined column",
    "invalid input syntax",
)

FATAL_ERRORS = (IntegrityError, ValidationError, PipelineStateError, ConfigurationError)


def _message_class(message: str) -> Optional[ErrorClass]:
    text = message.lower()
    if any(pattern in text for pattern in FATAL_PATTERNS):
        return ErrorClass.FATAL
    if any(pattern in text for pattern in TRANSIENT_PATTERNS):
        return ErrorClass.TRANSIENT
    return None


def classify_error(error: BaseException) -> ErrorClass:
    """Classify a step failure.

    Transient failures are retried, fatal ones end the run without resume,
    and anything unrecognized ends the run but leaves it resumable.
    """
    if isinstance(error, FATAL_ERRORS):
        return ErrorClass.FATAL
    if isinstance(error, TransientInfrastructureError):
        return ErrorClass.TRANSIENT
    if isinstance(error, AppError) and error.original_error is not None:
        return classify_error(error.original_error)
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT

    if isinstance(error, (sa_exc.IntegrityError, sa_exc.ProgrammingError, sa_exc.DataError)):
        return ErrorClass.FATAL
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return ErrorClass.TRANSIENT
    if isinstance(error, (sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, sa_exc.SQLAlchemyError):
        return _message_class(str(error)) or ErrorClass.UNKNOWN

    return _message_class(str(error)) or ErrorClass.UNKNOWN


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """Exponential delay after the given (1-based) failed attempt, capped, with jitter."""
    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return min(max_delay, delay + jitter(0, delay * 0.1))


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    jitter: Callable[[float, float], float] = random.uniform,
) -> Any:
    """Run an operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument coroutine function
        max_attempts: Total attempts including the first
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for any delay, in seconds
        sleep: Awaitable sleep, injectable for tests
        on_retry: Called with (attempt, error, delay) before each retry
        jitter: Random source for the jitter term

    Returns:
        The operation's result

    Raises:
        The last error when it is not transient or attempts are exhausted.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            error_class = classify_error(e)
            if error_class != ErrorClass.TRANSIENT or attempt >= max_attempts:
                raise

            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            LOGGER.warning(
                f"Transient failure on attempt {attempt}/{max_attempts}, retrying in {delay:.2f}s: {e}",
                extra={"attempt": attempt, "delay": delay},
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)
