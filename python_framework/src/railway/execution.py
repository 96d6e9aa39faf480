"""
Execution contexts — separate WHAT (pure logic) from HOW (side effects).

A workflow stage describes what should happen and returns Result[T]; the
context decides how it runs: timing, outcome logging, and turning a stray
exception into a failure. Both plain callables and coroutine factories are
supported:

    ctx = LoggingExecutionContext(operation="RenewalSubmit")
    result = await ctx.execute_async(lambda: persister.submit(draft, subject))
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result

T = TypeVar("T")
logger = logging.getLogger("railway.execution")


class NoOpExecutionContext:
    """Runs the computation as-is."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        return computation()

    async def execute_async(
        self, computation: Callable[[], Awaitable[Result[T]]]
    ) -> Result[T]:
        return await computation()


class LoggingExecutionContext:
    """
    Logs start, duration and outcome of a computation.

    An exception escaping the computation becomes a TECHNICAL_ERROR failure,
    so callers always get a Result back.
    """

    def __init__(
        self,
        inner: NoOpExecutionContext | None = None,
        operation: str = "unknown",
        log_level: int = logging.INFO,
    ) -> None:
        self._inner = inner or NoOpExecutionContext()
        self._operation = operation
        self._log_level = log_level

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        started = self._started()
        try:
            result = self._inner.execute(computation)
        except Exception as e:
            return self._crashed(e, started)
        return self._finished(result, started)

    async def execute_async(
        self, computation: Callable[[], Awaitable[Result[T]]]
    ) -> Result[T]:
        started = self._started()
        try:
            result = await self._inner.execute_async(computation)
        except Exception as e:
            return self._crashed(e, started)
        return self._finished(result, started)

    def _started(self) -> float:
        logger.log(self._log_level, "[%s] Starting execution", self._operation)
        return time.monotonic()

    def _finished(self, result: Result[T], started: float) -> Result[T]:
        logger.log(
            self._log_level,
            "[%s] Completed in %.3fs — %s",
            self._operation,
            time.monotonic() - started,
            "SUCCESS" if result.is_success() else "FAILURE",
        )
        return result

    def _crashed(self, exc: Exception, started: float) -> Result[T]:
        logger.error(
            "[%s] Execution failed after %.3fs: %s",
            self._operation,
            time.monotonic() - started,
            exc,
        )
        return Failure(
            FailureDescription(ErrorCode.TECHNICAL_ERROR, f"Execution failed: {exc}", exc)
        )
