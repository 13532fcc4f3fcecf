from typing import Optional


class PollerError(Exception):
    """Root of the poller exception hierarchy."""


class ConfigurationError(PollerError):
    """Malformed or incomplete node/group/client configuration."""


class CommunicationError(PollerError):
    """Transport level failure talking to the server."""


class AuthenticationError(CommunicationError):
    """Credentials missing, unreadable or rejected by the server."""


class SecurityNegotiationError(CommunicationError):
    """Requested security policy/mode is not offered by the server."""


class SessionTimeoutError(CommunicationError, TimeoutError):
    """Connect or request exceeded its configured timeout."""


class TotalReadFailure(CommunicationError):
    """A read cycle failed as a whole; no values were taken from it."""


class PerNodeReadError(PollerError):
    """A single node could not be read or decoded."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id
