"""
Error types for the OpenPond SDK.
"""

from typing import Optional


class OpenPondError(Exception):
    """Base class for every error raised by the SDK."""
    pass


class ConfigError(OpenPondError):
    """Raised when a configuration is invalid. Fatal, surfaced at construction."""
    pass


class AuthError(OpenPondError):
    """Raised when a credential cannot be resolved."""
    pass


class MissingCredentialError(AuthError):
    """No credential was supplied and the network does not allow anonymous access."""

    def __init__(self, message: str = "No private key or API key configured"):
        super().__init__(message)


class InvalidCredentialError(AuthError):
    """A private key was supplied but could not be decoded."""
    pass


class TransportError(OpenPondError):
    """
    Connection-level failure: refused, timeout, TLS or DNS error.
    Recoverable; drives reconnect and backoff in the delivery engine.
    """
    pass


class ApiError(OpenPondError):
    """The backend rejected a request with a non-2xx status."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"API error: {status} - {message}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ApiError):
            return NotImplemented
        return (self.status, self.message) == (other.status, other.message)

    def __hash__(self) -> int:
        return hash((self.status, self.message))


class AgentNotFoundError(ApiError):
    """Raised by get_agent when the backend answers 404."""

    def __init__(self, agent_id: str, message: Optional[str] = None):
        self.agent_id = agent_id
        super().__init__(404, message or f"Agent not found: {agent_id}")


class SerializationError(OpenPondError):
    """A payload from the backend was malformed or failed schema validation."""

    def __init__(self, message: str, payload: Optional[str] = None):
        self.payload = payload
        super().__init__(message)
