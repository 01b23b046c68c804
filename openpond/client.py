"""
High-level OpenPond client.
"""

import logging
from typing import Optional, List, Any

from .config import OpenPondConfig
from .errors import AuthError, ConfigError
from .identity import Credential, CredentialKind, resolve_credential
from .models import Agent, SendOptions
from .transport import HttpTransport
from .callbacks import CallbackRegistry, MessageHandler, ErrorHandler, StateHandler
from .delivery import DeliveryEngine, ConnectionState

logger = logging.getLogger(__name__)


class OpenPondClient:
    """
    Main client for the OpenPond network.

    Usage:
        client = OpenPondClient(OpenPondConfig(private_key=..., agent_name="my-agent"))
        client.on_message(lambda message: print(message.content))
        await client.start()

        agents = await client.list_agents()
        message_id = await client.send_message(agents[0].id, "hello")

        await client.stop()

    Configuration is validated here, so a bad config fails with ConfigError
    before any network activity. Unset fields are read from the
    OPENPOND_* environment variables.
    """

    def __init__(
        self,
        config: Optional[OpenPondConfig] = None,
        transport: Optional[Any] = None,
    ):
        self.config = (config or OpenPondConfig.default()).with_env()
        self.config.validate()

        try:
            self.credential: Credential = resolve_credential(self.config)
        except AuthError as e:
            raise ConfigError(f"Invalid credentials: {e}") from e

        self.transport = transport or HttpTransport(
            self.config.base_url,
            self.credential,
            request_timeout=self.config.request_timeout,
        )
        self.callbacks = CallbackRegistry()
        self.engine = DeliveryEngine.from_config(self.transport, self.callbacks, self.config)
        self._registered = False

    @property
    def agent_id(self) -> Optional[str]:
        return self.credential.agent_id

    @property
    def state(self) -> ConnectionState:
        return self.engine.state

    @property
    def mode(self) -> str:
        """Delivery mode: live, polling or disconnected."""
        return self.engine.state.mode

    @property
    def is_running(self) -> bool:
        return self.engine.is_running

    def on_message(self, handler: Optional[MessageHandler]) -> None:
        """Set the callback for received messages."""
        self.callbacks.on_message(handler)

    def on_error(self, handler: Optional[ErrorHandler]) -> None:
        """Set the callback for background errors."""
        self.callbacks.on_error(handler)

    def on_connection_change(self, handler: Optional[StateHandler]) -> None:
        """Set the callback for connection state changes."""
        self.callbacks.on_connection_change(handler)

    async def start(self) -> None:
        """
        Register the agent (private-key mode) and start receiving messages.

        Registration errors are raised to the caller and the engine is not
        started. Calling start() while running is a no-op.
        """
        if self.engine.is_running:
            return

        if (self.credential.kind == CredentialKind.PRIVATE_KEY
                and self.config.register_on_start and not self._registered):
            await self.transport.register_agent(self.config.agent_name)
            self._registered = True

        logger.info(f"Starting as {self.agent_id or self.credential.kind.value}")
        await self.engine.start()

    async def stop(self) -> None:
        """Stop receiving messages. Always lands in STOPPED."""
        await self.engine.stop()

    async def close(self) -> None:
        """Stop and release the HTTP session."""
        await self.stop()
        close = getattr(self.transport, 'close', None)
        if close is not None:
            await close()

    async def send_message(
        self,
        recipient: str,
        content: str,
        options: Optional[SendOptions] = None,
    ) -> str:
        """Send a message to another agent. Errors are raised, never retried."""
        return await self.transport.send_message(recipient, content, options)

    async def list_agents(self) -> List[Agent]:
        """List all registered agents."""
        return await self.transport.list_agents()

    async def get_agent(self, agent_id: str) -> Agent:
        """Look up an agent by ID. Raises AgentNotFoundError if unknown."""
        return await self.transport.get_agent(agent_id)

    async def __aenter__(self) -> "OpenPondClient":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
