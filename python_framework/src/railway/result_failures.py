"""
Shorthand factories for the failures the renewal engine raises most.

    ResultFailures.validation_error("Renewal form is invalid", {"phone": "Required"})
"""

from __future__ import annotations

from collections.abc import Mapping

from railway.failure import ErrorCode
from railway.result import Result


class ResultFailures:
    @staticmethod
    def validation_error(message: str, details: Mapping[str, str] | None = None) -> Result:
        """Bad input: missing fields, wrong format, rejected files."""
        return Result.failure(ErrorCode.VALIDATION_ERROR, message, details=details)

    @staticmethod
    def business_rule_error(message: str) -> Result:
        """The request is well-formed but not allowed in the current state."""
        return Result.failure(ErrorCode.BUSINESS_RULE_ERROR, message)

    @staticmethod
    def authentication_error(message: str) -> Result:
        return Result.failure(ErrorCode.AUTHENTICATION_ERROR, message)

    @staticmethod
    def timeout_error(message: str) -> Result:
        return Result.failure(ErrorCode.TIMEOUT_ERROR, message)
