import asyncio
import functools
import random
from typing import Type, Tuple, Callable

from riskgate.exceptions import TransientIOError
from riskgate.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Tuple[Type[Exception], ...] = (TransientIOError,),
):
    """
    Decorator to retry async functions on transient errors.

    Implements exponential backoff with jitter. Anything not listed in
    ``transient_errors`` is raised immediately; the last transient error is
    re-raised once ``max_retries`` is exhausted.

    Args:
        max_retries: Maximum number of retry attempts (0 disables retrying)
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types worth another attempt
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except transient_errors as e:
                    if retry_count >= max_retries:
                        if max_retries:
                            logger.warning(
                                f"Max retries ({max_retries}) exhausted for {func.__name__}",
                                error=str(e),
                            )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__}, retrying ({retry_count + 1}/{max_retries})",
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)  # jitter

        return wrapper
    return decorator
