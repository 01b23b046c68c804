"""
HTTP transport for OpenPond.
Issues authenticated REST calls and opens the server-sent event stream.
"""

import json
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Iterable
from urllib.parse import quote

import aiohttp

from .identity import Credential
from .models import Message, Agent, SendOptions, PollResult, parse_messages, parse_agents
from .errors import ApiError, AgentNotFoundError, TransportError, SerializationError

logger = logging.getLogger(__name__)

STREAM_PATH = "/messages/stream"


class StreamEventType(Enum):
    MESSAGE = "message"
    HEARTBEAT = "heartbeat"
    CLOSED = "closed"


@dataclass
class StreamEvent:
    """One event read from the live stream."""
    type: StreamEventType
    message: Optional[Message] = None

    @classmethod
    def received(cls, message: Message) -> "StreamEvent":
        return cls(type=StreamEventType.MESSAGE, message=message)

    @classmethod
    def heartbeat(cls) -> "StreamEvent":
        return cls(type=StreamEventType.HEARTBEAT)

    @classmethod
    def closed(cls) -> "StreamEvent":
        return cls(type=StreamEventType.CLOSED)


class EventStream:
    """
    Reader for a text/event-stream response.

    receive() returns the next message, heartbeat or closure. A malformed
    message payload raises SerializationError; the stream stays usable.
    Comment lines (':') count as heartbeats.
    """

    def __init__(self, response: aiohttp.ClientResponse):
        self._response = response
        self._event_type: Optional[str] = None
        self._data: List[str] = []
        self._closed = False
        self.last_event_id: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def receive(self) -> StreamEvent:
        """Read until the next complete event."""
        if self._closed:
            return StreamEvent.closed()

        while True:
            try:
                line = await self._response.content.readline()
            except aiohttp.ClientError as e:
                self._closed = True
                raise TransportError(f"Stream read failed: {e}") from e
            except ValueError as e:
                # Line exceeded the reader limit
                self._closed = True
                raise TransportError(f"Stream framing error: {e}") from e

            if not line:
                self._closed = True
                return StreamEvent.closed()

            text = line.decode('utf-8', errors='replace').rstrip('\r\n')

            if text == "":
                event = self._dispatch()
                if event is not None:
                    return event
                continue

            if text.startswith(':'):
                return StreamEvent.heartbeat()

            name, _, value = text.partition(':')
            if value.startswith(' '):
                value = value[1:]

            if name == 'event':
                self._event_type = value
            elif name == 'data':
                self._data.append(value)
            elif name == 'id':
                self.last_event_id = value
            elif name != 'retry':
                logger.debug(f"Ignoring unknown SSE field: {name}")

    def _dispatch(self) -> Optional[StreamEvent]:
        """Turn the buffered fields into an event and reset the buffer."""
        event_type = self._event_type or 'message'
        data = '\n'.join(self._data)
        had_data = bool(self._data)
        self._event_type = None
        self._data = []

        if event_type == 'heartbeat':
            return StreamEvent.heartbeat()
        if event_type in ('close', 'closed'):
            self._closed = True
            return StreamEvent.closed()
        if event_type == 'message':
            if not had_data:
                return None
            return StreamEvent.received(Message.from_json(data))

        logger.debug(f"Ignoring unhandled stream event: {event_type}")
        return None

    async def close(self) -> None:
        self._closed = True
        self._response.close()


class HttpTransport:
    """
    Client for the OpenPond REST API.

    Every call attaches the credential's headers and is bounded by
    request_timeout. Nothing is retried here; retry policy belongs to the
    delivery engine.
    """

    def __init__(
        self,
        base_url: str,
        credential: Credential,
        request_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.credential = credential
        self.request_timeout = request_timeout
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        headers.update(self.credential.headers())
        if extra:
            headers.update(extra)
        return headers

    @staticmethod
    def _api_error(status: int, body: str) -> ApiError:
        """Map a non-2xx response body ({status, message}) to ApiError."""
        message = body
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            message = data.get('message') or data.get('error') or body
        return ApiError(status, str(message))

    @staticmethod
    def _decode(body: str) -> Any:
        if not body:
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Response is not valid JSON: {e}", payload=body[:500]) from e

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
        allow_status: Iterable[int] = (),
    ) -> tuple[int, Any]:
        """Perform one request; return (status, decoded body)."""
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(
                method,
                url,
                json=json_body,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            ) as response:
                body = await response.text()
                if response.status in allow_status:
                    return response.status, None
                if not 200 <= response.status < 300:
                    raise self._api_error(response.status, body)
                return response.status, self._decode(body)

        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{method} {path} timed out after {self.request_timeout}s"
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

    async def send_message(
        self,
        recipient: str,
        content: str,
        options: Optional[SendOptions] = None,
    ) -> str:
        """Send a message; return the ID assigned by the backend."""
        payload = {'recipient': recipient, 'content': content}
        if options is not None:
            payload.update(options.to_dict())

        _, data = await self._request('POST', '/messages', json_body=payload)

        message_id = None
        if isinstance(data, dict):
            message_id = data.get('id') or data.get('messageId')
        if not isinstance(message_id, str) or not message_id:
            raise SerializationError("Send response has no message id", payload=str(data)[:500])

        logger.debug(f"Sent message {message_id} to {recipient}")
        return message_id

    async def list_agents(self) -> List[Agent]:
        """List all registered agents."""
        _, data = await self._request('GET', '/agents')
        return parse_agents(data)

    async def get_agent(self, agent_id: str) -> Agent:
        """Get information about an agent. Raises AgentNotFoundError on 404."""
        try:
            _, data = await self._request('GET', f"/agents/{quote(agent_id, safe='')}")
        except ApiError as e:
            if e.status == 404:
                raise AgentNotFoundError(agent_id, e.message) from e
            raise
        return Agent.from_dict(data)

    async def poll(self, since: Optional[str] = None) -> PollResult:
        """Fetch messages newer than the given message ID."""
        params = {'since': since} if since else None
        _, data = await self._request('GET', '/messages', params=params)
        return parse_messages(data if data is not None else [])

    async def register_agent(self, name: Optional[str]) -> bool:
        """
        Register the private-key identity with the network.
        Returns False if it was already registered (409).
        """
        payload = {
            'agentId': self.credential.agent_id,
            'publicKey': self.credential.public_key_b64,
            'name': name,
        }
        status, _ = await self._request(
            'POST', '/agents/register', json_body=payload, allow_status=(409,),
        )
        if status == 409:
            logger.info(f"Already registered: {self.credential.agent_id}")
            return False

        logger.info(f"Registered successfully: {self.credential.agent_id}")
        return True

    async def open_stream(self) -> EventStream:
        """Open the live event stream."""
        url = f"{self.base_url}{STREAM_PATH}"
        # No total timeout: the stream is long-lived; inactivity is policed by the engine
        stream_timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.request_timeout,
        )

        async def connect() -> aiohttp.ClientResponse:
            return await self._get_session().get(
                url,
                headers=self._headers({'Accept': 'text/event-stream'}),
                timeout=stream_timeout,
            )

        try:
            response = await asyncio.wait_for(connect(), timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Opening stream timed out after {self.request_timeout}s"
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Failed to open stream: {e}") from e

        if response.status != 200:
            try:
                body = await response.text()
            except aiohttp.ClientError:
                body = ""
            finally:
                response.release()
            raise self._api_error(response.status, body)

        logger.debug(f"Stream opened: {url}")
        return EventStream(response)

    async def close(self) -> None:
        """Release the HTTP session if this transport created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
