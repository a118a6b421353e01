# SPDX-License-Identifier: MPL-2.0
"""
Bounded retry with exponential backoff for remote calls.
"""

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0


def retry_api_call(
    api_call: Callable[[], T],
    retries: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "API call",
) -> T:
    """
    Call api_call, retrying on failure.

    The delay doubles after each failed attempt (1s, 2s, 4s, ... with the
    default initial delay). There is no delay after the final attempt; the
    last exception is re-raised instead.

    Args:
        api_call: Zero-argument callable performing the remote operation
        retries: Total number of attempts (default: 3)
        initial_delay: Delay in seconds before the second attempt
        exceptions: Exception types that trigger a retry
        sleep: Function used to wait between attempts
        description: Label used in log messages

    Returns:
        Whatever api_call returns

    Raises:
        ValueError: If retries is less than 1
        Exception: The last failure once all attempts are exhausted
    """
    if retries < 1:
        raise ValueError(f"retries must be at least 1, got {retries}")

    for attempt in range(retries):
        try:
            return api_call()
        except exceptions as e:
            if attempt == retries - 1:
                logger.error(f"{description} failed after {retries} attempt(s): {e}")
                raise

            delay = initial_delay * (2 ** attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{retries}): {e}. "
                f"Retrying in {delay:g}s"
            )
            sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{description}: retry loop exited without a result")
