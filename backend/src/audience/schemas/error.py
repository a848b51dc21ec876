"""Structured error response schemas."""
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Parameter that caused the error")
    value: Any | None = Field(default=None, description="Rejected value")


class ErrorResponse(BaseModel):
    """Standard error body returned by every exception handler.

    Carries the error type, a machine-readable code per detail, a remediation
    hint and the request id bound by the logging middleware.
    """

    error: str = Field(..., description="Error type (e.g. 'ValidationError', 'Unauthorized')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(default=None, description="Per-parameter error information")
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=_utcnow, description="Error timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "InvalidInput",
                "message": "start must not be after end",
                "details": [
                    {
                        "code": "invalid_range",
                        "message": "start must not be after end",
                        "field": "start",
                        "value": "2025-02-10",
                    }
                ],
                "remediation": "Provide ISO dates with start <= end",
                "request_id": "req_1234567890",
                "timestamp": "2025-02-17T02:00:00Z",
            }
        }
    )


class ErrorCode:
    """Error codes used across the API."""

    # 400
    INVALID_DATE = "invalid_date"
    INVALID_RANGE = "invalid_range"
    INVALID_SEGMENT = "invalid_segment"
    VALIDATION_ERROR = "validation_error"

    # 401
    UNAUTHORIZED = "unauthorized"

    # 503
    DATABASE_ERROR = "database_error"

    # 500
    INTERNAL_ERROR = "internal_error"


REMEDIATION_HINTS = {
    ErrorCode.INVALID_DATE: "Use ISO 8601 calendar dates, e.g. 2025-02-10",
    ErrorCode.INVALID_RANGE: "Provide ISO dates with start <= end",
    ErrorCode.INVALID_SEGMENT: "Use one of: all, product, app_opened, reach, grimoire",
    ErrorCode.UNAUTHORIZED: "Send the platform cron header or 'Authorization: Bearer <CRON_SECRET>'",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}
