"""Error schemas shared by every endpoint."""

from typing import Any

from pydantic import BaseModel

ERROR_INTERNAL = "INTERNAL_ERROR"
ERROR_SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Body of every unhandled-error response.

    Format: { "error": { "code": str, "message": str, "detail": object } }
    """

    error: ErrorDetail

    @classmethod
    def build(cls, code: str, message: str, detail: dict[str, Any] | None = None) -> dict[str, Any]:
        return cls(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump()
