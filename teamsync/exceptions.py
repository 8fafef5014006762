"""
Domain exception types.

Connector code raises the transport exceptions from ``connectors.exceptions``;
everything above the connectors speaks in these terms instead.
"""


class TeamSyncError(Exception):
    """Base exception for all domain errors."""

    pass


class ValidationError(TeamSyncError):
    """Raised when an identifier or input is rejected before any external call."""

    pass


class NotFoundError(TeamSyncError):
    """Raised when a team, member or user does not exist."""

    pass


class ConfigurationError(TeamSyncError):
    """Raised when a team or the process lacks required configuration."""

    pass


class NotConnectedError(TeamSyncError):
    """Raised when a user has no usable credential for a provider."""

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(message or f"{provider} is not connected, connect it first")


class ReauthorizationRequiredError(TeamSyncError):
    """Raised when stored authorization is no longer usable and the user must reconnect."""

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(message or f"{provider} authorization expired, reconnect required")


class RefreshTokenMissingError(ReauthorizationRequiredError):
    """Raised when an access token expired and no refresh token is stored."""

    def __init__(self, provider: str):
        super().__init__(provider, f"{provider} refresh token missing, reconnect required")


class RefreshTokenRejectedError(ReauthorizationRequiredError):
    """Raised when the provider rejected the refresh token (expired or revoked)."""

    def __init__(self, provider: str, detail: str = ""):
        message = f"{provider} refresh token rejected, reconnect required"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(provider, message)


class VaultIntegrityError(TeamSyncError):
    """Raised when a sealed value is malformed or fails authentication."""

    pass
