"""
Failure description — structured error information for the failure track.

An ErrorCode classifies the failure; FailureDescription carries the code, a
human-readable message, the originating exception (if any), and a
``details`` mapping for per-field or per-item problems such as form
validation or a rejected upload batch.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from types import MappingProxyType
from typing import Optional

_NO_DETAILS: Mapping[str, str] = MappingProxyType({})


@unique
class ErrorCode(Enum):
    """
    Failure classification, grouped by the HTTP status it maps to in
    ``railway.http_support``.
    """

    # Caller mistakes (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    BUSINESS_RULE_ERROR = "BUSINESS_RULE_ERROR"

    # Our side or a collaborator's (5xx)
    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor.

    >>> desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "Phone is required")
    >>> str(desc)
    'VALIDATION_ERROR: Phone is required'
    >>> dict(desc.details)
    {}
    """

    code: ErrorCode
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False)
    details: Mapping[str, str] = field(default=_NO_DETAILS)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def create(
        code: ErrorCode,
        message: str,
        exception: Optional[BaseException] = None,
        details: Mapping[str, str] | None = None,
    ) -> FailureDescription:
        """Build a description; ``details`` is copied into a read-only mapping."""
        frozen = MappingProxyType(dict(details)) if details else _NO_DETAILS
        return FailureDescription(code=code, message=message, exception=exception, details=frozen)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"
