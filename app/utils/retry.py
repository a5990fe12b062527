"""
Best-effort bounded retry
Runs an operation a fixed number of times with a fixed delay and swallows the
final failure (logged as a warning). Sync callables run in a worker thread.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


async def best_effort_retry(
    func: Callable[..., Any],
    *args: Any,
    attempts: int = 3,
    delay: float = 0.5,
    label: Optional[str] = None,
    default: Any = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs: Any,
) -> Any:
    """
    Call ``func`` up to ``attempts`` times.

    Args:
        func: Sync or async callable
        attempts: Maximum number of calls (at least 1)
        delay: Seconds to wait between calls
        label: Name used in log lines (defaults to the callable name)
        default: Value returned when every attempt failed
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The callable's result, or ``default`` after the last failure
    """
    name = label or getattr(func, "__name__", "operation")
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            if inspect.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return await asyncio.to_thread(func, *args, **kwargs)
        except Exception as e:
            if attempt < attempts:
                logger.debug(f"🔁 {name} failed (attempt {attempt}/{attempts}): {e}")
                await sleep(delay)
            else:
                logger.warning(f"⚠️ {name} gave up after {attempts} attempts: {e}")

    return default
