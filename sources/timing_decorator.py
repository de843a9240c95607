# timing_decorator.py
import inspect
import time
import functools
from typing import Callable, Any, Optional, TypeVar, cast
from app_logger import logger

F = TypeVar("F", bound=Callable[..., Any])


def timed(label: Optional[str] = None) -> Callable[[F], F]:
    """
    Decorator that measures execution time and logs it at DEBUG level.
    Works on plain functions and on coroutine functions; for the latter the
    time is measured across the awaits, not just until the first suspension.
    The message goes to the file handler only (memory handler filters it out).
    """
    def decorator(func: F) -> F:
        tag = label or func.__qualname__

        def _log(start: float) -> None:
            elapsed = time.perf_counter() - start
            logger.debug("[%s] took %.4f s", tag, elapsed)

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _log(start)
            return cast(F, async_wrapper)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _log(start)
        return cast(F, wrapper)
    return decorator
