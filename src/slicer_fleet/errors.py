"""Error types raised by the fleet client.

Every failure is reported as one of these kinds so that the caller can decide
whether a retry is safe. Nothing in this package retries on its own.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

import httpx


class SlicerError(Exception):
    """Base exception for fleet client errors."""

    def __init__(self, message: str, status_code: int = None, response: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response


class ConfigurationError(SlicerError):
    """Raised when the client cannot be built from the given settings."""


class SlicerAPIError(SlicerError):
    """Raised when the fleet manager answers with an unexpected status."""


class AuthenticationError(SlicerAPIError):
    """Raised when the fleet manager rejects the bearer token."""


class ValidationError(SlicerAPIError):
    """Raised for a malformed request, locally or by the fleet manager."""


class ConflictError(SlicerAPIError):
    """Raised on duplicate names or exhausted capacity."""


class NotFoundError(SlicerAPIError):
    """Raised when a VM, secret or path does not exist."""


class TransportError(SlicerError):
    """Raised on connectivity failures below the application layer.

    Carries any output that was collected before the connection broke.
    """

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


class ExecTimeoutError(TransportError):
    """Raised when an exec stream stays silent past its idle timeout."""


class CancellationError(SlicerError):
    """Raised when the caller's cancel signal or deadline fires."""

    def __init__(self, message: str = "Operation cancelled", stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class ExecutionError(SlicerError):
    """Raised when the remote reports an execution problem in the stream.

    This is not a connection failure: the fleet manager answered, but the
    command could not run (or reported an error while running).
    """

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


class PermissionApplyError(ExecutionError):
    """Raised when bytes were uploaded but ownership/permissions were not applied."""


_STATUS_ERRORS: Dict[int, Type[SlicerAPIError]] = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthenticationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    507: ConflictError,
}


def _error_message(response: httpx.Response) -> str:
    """Pull a human readable message out of an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])

    text = response.text.strip()
    return text or response.reason_phrase or f"HTTP {response.status_code}"


def error_from_response(response: httpx.Response, action: str) -> SlicerAPIError:
    """Build the error matching an unsuccessful response.

    The response body must already be read.

    Args:
        response: The non-2xx response.
        action: Short description used as message prefix, e.g. "delete VM".
    """
    error_cls = _STATUS_ERRORS.get(response.status_code, SlicerAPIError)
    detail = _error_message(response)
    return error_cls(
        f"Unable to {action}: {detail} (HTTP {response.status_code})",
        status_code=response.status_code,
        response=detail,
    )
