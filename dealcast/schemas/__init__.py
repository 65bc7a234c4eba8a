"""Pydantic schemas for API request/response validation."""

from dealcast.schemas.common import ErrorDetail, ErrorResponse

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
]
