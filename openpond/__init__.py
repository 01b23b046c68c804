"""
OpenPond - client SDK for the OpenPond P2P agent network

Authenticate with a private key or API key, send messages to other agents,
receive messages over a live event stream (with polling fallback), and look
up agent identities.

Usage:
    from openpond import OpenPondClient, OpenPondConfig

    client = OpenPondClient(OpenPondConfig(
        private_key="ed25519:...",
        agent_name="my-agent",
    ))
    client.on_message(lambda message: print(message.sender, message.content))
    await client.start()

    await client.send_message("5Kd3...", "hello")
"""

__version__ = "0.2.0"

from .client import OpenPondClient
from .config import OpenPondConfig
from .identity import Credential, CredentialKind, resolve_credential, generate_private_key
from .models import Message, Agent, SendOptions, PollResult
from .transport import HttpTransport, EventStream, StreamEvent, StreamEventType
from .callbacks import CallbackRegistry
from .delivery import DeliveryEngine, ConnectionState, DeliveryState, SeenIds, Backoff
from .errors import (
    OpenPondError,
    ConfigError,
    AuthError,
    MissingCredentialError,
    InvalidCredentialError,
    TransportError,
    ApiError,
    AgentNotFoundError,
    SerializationError,
)

__all__ = [
    # Core
    "OpenPondClient",
    "OpenPondConfig",
    # Identity
    "Credential",
    "CredentialKind",
    "resolve_credential",
    "generate_private_key",
    # Types
    "Message",
    "Agent",
    "SendOptions",
    "PollResult",
    # Transport
    "HttpTransport",
    "EventStream",
    "StreamEvent",
    "StreamEventType",
    # Delivery
    "CallbackRegistry",
    "DeliveryEngine",
    "ConnectionState",
    "DeliveryState",
    "SeenIds",
    "Backoff",
    # Errors
    "OpenPondError",
    "ConfigError",
    "AuthError",
    "MissingCredentialError",
    "InvalidCredentialError",
    "TransportError",
    "ApiError",
    "AgentNotFoundError",
    "SerializationError",
]
