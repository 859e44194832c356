"""Error taxonomy for the install pipeline."""
from typing import Optional


class InstallServiceError(Exception):
    """Base class for every failure the request handler knows how to map."""


class ValidationError(InstallServiceError):
    """Malformed, missing or oversized request input."""


class ResourceError(InstallServiceError):
    """The workspace could not be allocated."""


class InstallError(InstallServiceError):
    """The installer failed, timed out, or broke its output contract."""

    def __init__(self, message: str, reason: str = "tool_failed", diagnostic: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.diagnostic = diagnostic or ""


class ArchiveError(InstallServiceError):
    """Archiving failed before the first byte was sent."""


class StreamingFailure(InstallServiceError):
    """Archiving failed after the response started; only the connection can be cut."""
