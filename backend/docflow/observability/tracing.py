"""
Lightweight span timing for async pipeline steps.

``@traced("ocr.textract.poll")`` wraps a coroutine, logs its wall time at
DEBUG on success and at ERROR (with traceback) on failure, then re-raises.
Timing is log-based so it works in every worker without an exporter.
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing and error logging.

    Usage::

        @traced("embedding.generate")
        async def generate(self, text: str) -> EmbeddingOutcome:
            ...

        @traced()   # uses the function's qualified name
        async def execute(self, ctx: JobContext) -> dict:
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
                return result
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.error(
                    "trace | span=%s elapsed_ms=%.1f error=%s",
                    span_name, elapsed_ms, exc, exc_info=True,
                )
                raise

        return wrapper  # type: ignore[return-value]
    return decorator
