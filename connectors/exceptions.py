"""
Exception types for connector operations.
"""

from typing import Optional


class ConnectorException(Exception):
    """Base exception for all connector errors."""

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitException(ConnectorException):
    """Raised when API rate limit is exceeded."""

    pass


class AuthenticationException(ConnectorException):
    """Raised when the provider rejects the credential (HTTP 401 or 403)."""

    pass


class NotFoundException(ConnectorException):
    """Raised when a resource is not found."""

    pass


class APIException(ConnectorException):
    """Raised when API returns a server error, times out or cannot be reached."""

    pass
