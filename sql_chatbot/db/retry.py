import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError

from sql_chatbot.errors import NotFoundError, UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE_ERRORS = (UnauthorizedError, NotFoundError, ValidationError, IntegrityError)
NON_RETRYABLE_MARKERS = ("unauthorized", "not found", "invalid")


def is_retryable(error: Exception) -> bool:
    if isinstance(error, NON_RETRYABLE_ERRORS):
        return False
    message = str(error).lower()
    return not any(marker in message for marker in NON_RETRYABLE_MARKERS)


def with_retry(
    operation: Callable[[], T],
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `operation`, retrying failures with exponential backoff.

    Retry number `attempt` (0-based) waits `base_delay * 2 ** attempt`
    seconds. Authorization, not-found, validation and constraint failures are raised
    straight away; otherwise the last error is raised once `max_retries`
    retries are used up.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_retries:
                raise
            wait_time = base_delay * 2**attempt
            logger.warning(
                f"Database operation failed ({e}); retry {attempt + 1}/{max_retries} in {wait_time}s"
            )
            sleep(wait_time)
            attempt += 1
