"""
Bounded retry with per-attempt timeout for external calls.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog


logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = 3,
    timeout: Optional[float] = 30,
    delay: float = 1.0,
    operation: str = "",
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs: Any,
) -> T:
    """
    Await ``func(*args, **kwargs)`` up to ``attempts`` times.

    Each attempt is bounded by ``timeout`` (``asyncio.TimeoutError`` counts as a
    failed attempt). Waits ``delay * attempt`` seconds between attempts and
    re-raises the last error once attempts are exhausted.
    """
    name = operation or getattr(func, "__name__", "call")
    last_exception: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            if timeout:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
            else:
                result = await func(*args, **kwargs)

            if attempt > 0:
                logger.info("Call succeeded after retries", operation=name, attempt=attempt + 1)
            return result

        except asyncio.CancelledError:
            raise
        except retry_on as e:
            last_exception = e
            logger.warning(
                "Call failed",
                operation=name,
                attempt=attempt + 1,
                attempts=attempts,
                error=str(e) or type(e).__name__,
            )
            if attempt < attempts - 1 and delay > 0:
                await asyncio.sleep(delay * (attempt + 1))

    logger.error("All attempts failed", operation=name, attempts=attempts, last_error=str(last_exception))
    raise last_exception
