import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from invoice_review.config.exception import StoreUnavailableError
from invoice_review.config.logger import setup_logger

logger = setup_logger("Retry", "retry.log")

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    retry_delay: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (StoreUnavailableError,),
    description: str = "operation",
) -> T:
    """
    Await ``operation`` and retry it on transient failures with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else, and the
    last transient failure once ``max_retries`` is exhausted, propagates.

    Args:
        operation: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        retry_delay: Base delay in seconds, doubled on each retry
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                raise
            wait_time = retry_delay * (2 ** attempt)
            logger.warning(
                f"{description} failed, retrying in {wait_time:.2f}s "
                f"(attempt {attempt + 1}/{max_retries}): {e}"
            )
            await asyncio.sleep(wait_time)
            attempt += 1
