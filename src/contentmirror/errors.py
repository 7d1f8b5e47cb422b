from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_FETCH_FAILED = "UPSTREAM_FETCH_FAILED"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    MISSING_CONFIGURATION = "MISSING_CONFIGURATION"


class ContentMirrorError(Exception):
    """Raised for all expected upstream and configuration failures.

    The fetch cache never catches this: an upstream failure reaches the caller
    unchanged, and the cache is left exactly as it was before the call.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
                "recoverable": self.recoverable,
            }
        }
