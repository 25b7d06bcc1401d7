"""Error taxonomy for Merkle Sync."""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all Merkle Sync errors."""

    status_code: int = 500
    error: str = "Internal Server Error"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize to an error response body."""
        body: dict[str, Any] = {"error": self.error, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class InvalidRequestError(SyncError):
    """Malformed request body or missing required fields."""

    status_code = 400
    error = "Bad Request"


class UnauthorizedError(SyncError):
    """Missing or rejected caller credential."""

    status_code = 401
    error = "Unauthorized"


class EmptyInputError(SyncError):
    """A hash tree was built from an empty leaf set."""


class UpstreamError(SyncError):
    """The AI processing backend failed."""

    status_code = 502
    error = "Bad Gateway"


class UpstreamTimeoutError(UpstreamError):
    """The AI processing backend did not answer in time."""

    status_code = 504
    error = "Upstream Timeout"


class StorageUnavailableError(SyncError):
    """The key-value backend could not serve a request."""

    status_code = 503
    error = "Storage Unavailable"


class SearchUnavailableError(SyncError):
    """Search was requested but no embedding provider is configured."""

    status_code = 503
    error = "Service Unavailable"
