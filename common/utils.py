import logging
import asyncio
import calendar
import httpx
from datetime import datetime, timezone
from functools import wraps
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from common.errors import ConfigurationError, StaleReferenceError

logger = logging.getLogger("Utils")

T = TypeVar("T")

# Errors that retrying cannot fix
NON_RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    ConfigurationError,
    StaleReferenceError,
)


def is_retryable(error: BaseException, non_retryable: Tuple[Type[BaseException], ...] = NON_RETRYABLE_EXCEPTIONS) -> bool:
    if isinstance(error, non_retryable):
        return False
    # Don't retry 4xx client errors (except 429 Too Many Requests)
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429
    return True


class RetryExecutor:
    """
    Runs an async operation with pure exponential backoff.

    Attempt N (1-based) that fails before the last attempt is followed by a
    wait of `base_delay * 2 ** (N - 1)` seconds. The last failure, or any
    non-retryable failure, is raised unchanged.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        non_retryable: Tuple[Type[BaseException], ...] = NON_RETRYABLE_EXCEPTIONS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.non_retryable = non_retryable
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        description: Optional[str] = None,
    ) -> T:
        attempts = max_attempts or self.max_attempts
        delay_base = self.base_delay if base_delay is None else base_delay
        label = description or getattr(operation, "__name__", "operation")

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if attempt == attempts or not is_retryable(e, self.non_retryable):
                    raise
                delay = delay_base * (2 ** (attempt - 1))
                logger.warning(f"Attempt {attempt} of {label} failed ({e}). Retrying in {delay:.2f}s...")
                await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RuntimeError(f"{label} exhausted {attempts} attempts")


def retry_on_error(max_retries: int = 3, base_delay: float = 1.0):
    """Decorator form of RetryExecutor for async functions."""
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            executor = RetryExecutor(max_attempts=max_retries, base_delay=base_delay)
            return await executor.run(lambda: func(*args, **kwargs), description=func.__name__)
        return wrapper
    return decorator


def format_rfc3339(dt: datetime) -> str:
    """Normalize datetime to RFC3339 `YYYY-MM-DDTHH:MM:SSZ` format."""

    if dt.tzinfo is None:
        # Assume naive datetimes are already UTC
        dt_utc = dt.replace(microsecond=0)
    else:
        dt_utc = dt.astimezone(timezone.utc).replace(tzinfo=None, microsecond=0)

    return dt_utc.isoformat(timespec="seconds") + "Z"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 / RFC3339 timestamp into an aware UTC datetime."""
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    """Shift a datetime by whole calendar months, clamping the day."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)
