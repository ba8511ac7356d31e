"""Structured error codes and exception class for the break-glass core."""

from __future__ import annotations

__all__ = ["ErrorCode", "BreakGlassError", "ERROR_STATUS_MAP"]

from enum import Enum


class ErrorCode(str, Enum):
    CONFIG_ERROR = "CONFIG_ERROR"
    INDEX_DISABLED = "INDEX_DISABLED"
    INDEX_UNAUTHORIZED = "INDEX_UNAUTHORIZED"
    INDEX_ERROR = "INDEX_ERROR"
    ENCRYPTION_ERROR = "ENCRYPTION_ERROR"
    DECRYPTION_ERROR = "DECRYPTION_ERROR"
    KEY_MISMATCH = "KEY_MISMATCH"
    INVALID_IDENTITY = "INVALID_IDENTITY"
    POLICY_ERROR = "POLICY_ERROR"
    IAM_ERROR = "IAM_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


# Map ErrorCode → default HTTP status code
ERROR_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.CONFIG_ERROR: 500,
    ErrorCode.INDEX_DISABLED: 503,
    ErrorCode.INDEX_UNAUTHORIZED: 401,
    ErrorCode.INDEX_ERROR: 502,
    ErrorCode.ENCRYPTION_ERROR: 500,
    ErrorCode.DECRYPTION_ERROR: 500,
    ErrorCode.KEY_MISMATCH: 500,
    ErrorCode.INVALID_IDENTITY: 422,
    ErrorCode.POLICY_ERROR: 502,
    ErrorCode.IAM_ERROR: 502,
    ErrorCode.VALIDATION_ERROR: 422,
}


class BreakGlassError(Exception):
    """Structured error raised by the index, crypto, policy and IAM layers.

    ``status_code`` holds the upstream HTTP status when the failure came from
    a remote call, so callers can tell an authentication failure (401) apart
    from everything else.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: dict = details or {}
        self.status_code: int = status_code if status_code is not None else ERROR_STATUS_MAP.get(code, 500)

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message, "details": self.details}
