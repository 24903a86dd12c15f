"""Retry/Timeout Engine with exponential backoff.

Wraps any no-argument coroutine function:
  - each attempt races the operation against ``timeout``
    (a timeout is itself a retryable failure)
  - failures are classified: 429, 5xx and connection/timeout errors retry,
    everything else surfaces immediately
  - surfaced errors are always StandardizedError (TransientError or
    PermanentError) with an explicit ``retryable`` flag

Backoff strategy:
  delay = min(initial_delay * backoff_multiplier^attempt, max_delay)

After max_retries retries (max_retries + 1 attempts) the last error surfaces.
Operations must be safe to invoke more than once.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import traceback
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TypeVar

import httpx

from genai_gateway.core.encryption import redact_secrets
from genai_gateway.core.exceptions import GatewayError, PermanentError, StandardizedError, TransientError
from genai_gateway.core.metrics import RETRIES
from genai_gateway.gateway.types import RetryContext, RetryOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Network error codes that are worth retrying
_RETRYABLE_ERRNOS = {errno.ETIMEDOUT, errno.ECONNRESET, errno.ECONNREFUSED, errno.ECONNABORTED, errno.EPIPE}
_RETRYABLE_CODES = {"ETIMEDOUT", "ESOCKETTIMEDOUT", "ECONNRESET", "ECONNREFUSED", "TIMEOUT"}


def error_status(error: BaseException) -> int | None:
    """HTTP status carried by an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def _code_of(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(error, OSError) and error.errno in _RETRYABLE_ERRNOS:
        return errno.errorcode.get(error.errno)
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether an error is worth another attempt."""
    if isinstance(error, StandardizedError):
        return error.retryable

    status = error_status(error)
    if status is not None:
        # 429 rate limit and 5xx server errors retry; any other status does not
        return status == 429 or 500 <= status < 600

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(error, (ConnectionResetError, ConnectionRefusedError, ConnectionAbortedError)):
        return True
    if isinstance(error, OSError) and error.errno in _RETRYABLE_ERRNOS:
        return True
    if _code_of(error) in _RETRYABLE_CODES:
        return True

    # Our own errors are classified by type; only foreign errors fall back to the message
    if isinstance(error, GatewayError):
        return False
    return "timeout" in str(error).lower()


def to_standard_error(error: BaseException) -> StandardizedError:
    """Convert any error into a StandardizedError. Already-standard errors pass through."""
    if isinstance(error, StandardizedError):
        return error

    message = redact_secrets(str(error)) or type(error).__name__
    status = error_status(error)
    code = _code_of(error) or (str(status) if status is not None else type(error).__name__)

    if is_retryable_error(error):
        return TransientError(message, code=code, status=status, original=error)
    return PermanentError(message, code=code, status=status, original=error)


def calculate_delay(attempt: int, options: RetryOptions) -> float:
    """Backoff before the retry that follows ``attempt`` (0-based), in seconds."""
    delay = options.initial_delay * (options.backoff_multiplier**attempt)
    return min(delay, options.max_delay)


def _log_failure(context: RetryContext, error: BaseException, attempt: int) -> None:
    message = redact_secrets(str(error))
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": context.service,
        "method": context.method,
        "request_params": context.params,
        "error_type": type(error).__name__,
        "error_message": message,
        "stack_trace": redact_secrets("".join(traceback.format_exception(type(error), error, error.__traceback__))),
        "retry_count": attempt,
    }
    logger.error(
        "%s.%s failed on attempt %d: %s: %s",
        context.service,
        context.method,
        attempt + 1,
        type(error).__name__,
        message,
        extra={"data": entry},
    )


def _raise_standard(error: Exception) -> None:
    standard = to_standard_error(error)
    if standard is error:
        raise error
    raise standard from error


async def _with_timeout(operation: Callable[[], Awaitable[T]], timeout: float) -> T:
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientError(f"Request timed out after {timeout}s", code="TIMEOUT", original=e) from e


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    context: RetryContext | None = None,
) -> T:
    """Run ``operation`` with timeout, classification and exponential backoff.

    Returns the operation's result, or raises a StandardizedError once the
    error is non-retryable or retries are exhausted.
    """
    options = options or RetryOptions()
    context = context or RetryContext()
    attempt = 0

    while True:
        try:
            result = await _with_timeout(operation, options.timeout)
        except Exception as e:
            _log_failure(context, e, attempt)

            if not is_retryable_error(e):
                logger.error("%s.%s hit a non-retryable error, giving up", context.service, context.method)
                _raise_standard(e)

            if attempt >= options.max_retries:
                logger.error(
                    "%s.%s reached max retries (%d), giving up",
                    context.service,
                    context.method,
                    options.max_retries,
                )
                _raise_standard(e)

            delay = calculate_delay(attempt, options)
            logger.info(
                "Retry %d/%d for %s.%s in %.1fs",
                attempt + 1,
                options.max_retries,
                context.service,
                context.method,
                delay,
            )
            RETRIES.labels(service=context.service, method=context.method).inc()
            await asyncio.sleep(delay)
            attempt += 1
            continue

        if attempt > 0:
            logger.info("%s.%s succeeded after %d retries", context.service, context.method, attempt)
        return result
