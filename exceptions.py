"""
Errors raised by the SCIM directory sync
"""

from typing import Optional


class ScimSyncError(Exception):
    """Base class for all sync errors."""


class ConfigError(ScimSyncError):
    """The connector configuration is missing or invalid."""


class ScimTransportError(ScimSyncError):
    """
    The request never produced an HTTP response (connection refused,
    timeout, TLS failure, ...). This is the only error the retry policy retries.
    """

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ScimRequestError(ScimSyncError):
    """A non-success response that cannot be handled by a fallback rule."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class MappingNotFound(ScimSyncError):
    """No mapping row matches the lookup."""


class MappingLookupError(ScimSyncError):
    """The mapping table could not be queried."""


class MappingConflictError(ScimSyncError):
    """A mapping write would break the uniqueness of the mapping table."""
