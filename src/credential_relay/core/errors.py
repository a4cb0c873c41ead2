# PUBLIC_INTERFACE
"""
Error types for credential resolution and executor connection management.

Source- and refresh-level errors are absorbed inside the registry and store;
only NoTokenFound and EncryptionError reach the executor as explicit answers.
"""
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

from .response import error_payload


class ErrorCode:
    VALIDATION = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    NO_TOKEN_FOUND = "NO_TOKEN_FOUND"
    REFRESH_FAILED = "REFRESH_FAILED"
    ENCRYPTION_FAILED = "ENCRYPTION_FAILED"
    CONNECTION_LOST = "CONNECTION_LOST"
    RECONNECT_EXHAUSTED = "RECONNECT_EXHAUSTED"
    INTERNAL = "INTERNAL"


class CredentialRelayError(Exception):
    """Base class carrying a stable error code and the underlying cause, if any."""

    code = ErrorCode.INTERNAL

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class SourceUnavailable(CredentialRelayError):
    """A single token source could not answer; the registry falls through."""

    code = ErrorCode.SOURCE_UNAVAILABLE


class NoTokenFound(CredentialRelayError):
    """Every registered source was exhausted without producing a token."""

    code = ErrorCode.NO_TOKEN_FOUND


class RefreshFailed(CredentialRelayError):
    """An expired token could not be refreshed."""

    code = ErrorCode.REFRESH_FAILED


class EncryptionError(CredentialRelayError):
    """Public-key fetch or cipher operation failed; fatal for a single delivery."""

    code = ErrorCode.ENCRYPTION_FAILED


class ConnectionLost(CredentialRelayError):
    """The duplex transport closed or could not be opened."""

    code = ErrorCode.CONNECTION_LOST


class ReconnectExhausted(CredentialRelayError):
    """Automatic reconnect attempts ran out; a manual trigger is needed."""

    code = ErrorCode.RECONNECT_EXHAUSTED


# PUBLIC_INTERFACE
def http_error(status_code: int, code: str, message: str) -> HTTPException:
    """Create HTTPException with a unified error response body."""
    return HTTPException(
        status_code=status_code,
        detail=error_payload(code, message),
    )
