"""
Railway-Oriented Programming (ROP) Framework for Python.

Explicit, composable error handling — no exceptions in business logic.

    from railway import Result, ErrorCode

    def validate_hours(hours: int) -> Result[int]:
        if hours < 10:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "At least 10 hours")
        return Result.success(hours)

    result = (
        Result.success({"cpe_hours": 12})
        .flat_map(lambda form: validate_hours(form["cpe_hours"]))
        .map(lambda hours: f"{hours} hours accepted")
    )
"""

from railway.result import Result, Success, Failure
from railway.failure import ErrorCode, FailureDescription
from railway.execution import (
    NoOpExecutionContext,
    LoggingExecutionContext,
)
from railway.result_failures import ResultFailures
from railway.assertions import ResultAssertions

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultFailures",
    "ResultAssertions",
]

__version__ = "1.1.0"
