"""
HTTP integration — ErrorCode → HTTP status and JSON error bodies.

    return build_fastapi_response(result, success_status=201, serializer=_receipt)
"""

from __future__ import annotations

from collections.abc import Callable
from types import MappingProxyType
from typing import Any, TypeVar

from railway.failure import ErrorCode, FailureDescription
from railway.result import Result

T = TypeVar("T")

STATUS_BY_CODE = MappingProxyType(
    {
        ErrorCode.VALIDATION_ERROR: 400,
        ErrorCode.AUTHENTICATION_ERROR: 401,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.BUSINESS_RULE_ERROR: 409,
        ErrorCode.TECHNICAL_ERROR: 500,
        ErrorCode.DATABASE_ERROR: 500,
        ErrorCode.CONFIGURATION_ERROR: 500,
        ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
        ErrorCode.TIMEOUT_ERROR: 504,
    }
)


def status_for(failure: FailureDescription) -> int:
    return STATUS_BY_CODE.get(failure.code, 500)


def error_body(failure: FailureDescription) -> dict[str, Any]:
    """
    Standardized error response body.

        {
            "error_code": "VALIDATION_ERROR",
            "message": "Renewal form is invalid",
            "details": {"phone": "Use the format 010-1234-5678"},
            "timestamp": "2026-02-17T10:30:00+00:00"
        }
    """
    return {
        "error_code": failure.code.value,
        "message": failure.message,
        "details": dict(failure.details),
        "timestamp": failure.timestamp.isoformat(),
    }


def build_response(
    result: Result[T],
    success_status: int = 200,
    serializer: Callable[[T], Any] | None = None,
) -> tuple[Any, int]:
    """Framework-agnostic ``(body, status_code)`` for a Result."""
    return result.either(
        on_success=lambda value: (
            serializer(value) if serializer is not None else value,
            success_status,
        ),
        on_failure=lambda error: (error_body(error), status_for(error)),
    )


def build_fastapi_response(
    result: Result[T],
    success_status: int = 200,
    serializer: Callable[[T], Any] | None = None,
) -> Any:
    """A FastAPI JSONResponse for a Result. Requires fastapi."""
    from fastapi.responses import JSONResponse

    body, status = build_response(result, success_status, serializer)
    return JSONResponse(content=body, status_code=status)
