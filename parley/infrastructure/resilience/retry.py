from typing import Awaitable, Callable, Optional, TypeVar
import asyncio
import structlog

from parley.infrastructure.errors import (
    CircuitOpenError,
    ProviderClientError,
    ProviderRateLimited,
    ProviderUnavailable,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def with_retry(
    call: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    operation: str = "provider_call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Run `call` with linear backoff between attempts.

    Rate limits wait for the provider's retry-after (capped at `max_delay`).
    Client errors and open circuits are raised immediately. Anything else is
    retried and, once attempts run out, raised as ProviderUnavailable; a
    final rate limit is re-raised as is so callers can see retry_after.
    """

    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            return await call()
        except (ProviderClientError, CircuitOpenError):
            raise
        except ProviderRateLimited as e:
            last_error = e
            if attempt == attempts - 1:
                raise
            delay = min(e.retry_after, max_delay)
            logger.warning("provider_rate_limited", operation=operation, attempt=attempt + 1, retry_after=delay)
            await sleep(delay)
        except Exception as e:
            last_error = e
            if attempt == attempts - 1:
                break
            delay = min(base_delay * (attempt + 1), max_delay)
            logger.warning(
                "provider_call_retry",
                operation=operation,
                attempt=attempt + 1,
                delay=delay,
                error=str(e)
            )
            await sleep(delay)

    logger.error("provider_call_failed", operation=operation, attempts=attempts, error=str(last_error))
    raise ProviderUnavailable(f"{operation} failed after {attempts} attempts: {last_error}") from last_error
