"""
Exceptions raised by the falrt client SDK.

Every error derives from FalError so callers can catch the whole family at
once. Realtime errors are delivered through the connection's error callback
instead of being raised.
"""

from __future__ import annotations

from typing import Optional


class FalError(Exception):
    """Base class for all client errors."""


class ServerError(FalError):
    """Exception raised when server returns an error."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Server error {status_code}: {message}")


class InvalidUrlError(FalError):
    """A request URL could not be built or parsed."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Invalid URL: {url}")


class InvalidResultFormatError(FalError):
    """The server answered with a payload of an unexpected shape."""


class UnauthorizedError(FalError):
    """A realtime auth token could not be obtained."""


class QueueTimeoutError(FalError):
    """Polling a queued request exceeded its deadline."""

    def __init__(self, request_id: str, timeout: float):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(
            f"Request {request_id} did not complete within {timeout:.3f}s"
        )


class InvalidAppIdError(FalError):
    """The endpoint identifier is not in a supported format."""

    def __init__(self, app_id: str):
        self.app_id = app_id
        super().__init__(
            f"Invalid app id: {app_id}. Must be in the format <appOwner>/<appId>"
        )


class RealtimeConnectionError(FalError):
    """The realtime transport failed to open or closed abnormally."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message if code is None else f"{message} (code {code})")


class InvalidInputError(FalError):
    """A value could not be encoded for the wire."""


class InvalidResultError(FalError):
    """An inbound frame could not be decoded into the expected result."""


class ServiceError(FalError):
    """Application-level error reported by the remote endpoint."""

    def __init__(self, error_type: str, reason: str = ""):
        self.error_type = error_type
        self.reason = reason or ""
        message = error_type if not self.reason else f"{error_type}: {self.reason}"
        super().__init__(message)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ServiceError):
            return NotImplemented
        return (self.error_type, self.reason) == (other.error_type, other.reason)

    def __hash__(self) -> int:
        return hash((self.error_type, self.reason))
