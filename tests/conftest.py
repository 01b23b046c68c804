"""
Shared fixtures: fake transport/stream for engine tests and an in-process
aiohttp backend for transport and client tests.
"""

import asyncio
import json
from typing import Any, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from openpond.errors import TransportError
from openpond.models import Message, PollResult
from openpond.transport import StreamEvent


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the caller's OPENPOND_* variables out of the tests."""
    for name in ("OPENPOND_API_URL", "OPENPOND_PRIVATE_KEY",
                 "OPENPOND_API_KEY", "OPENPOND_AGENT_NAME"):
        monkeypatch.delenv(name, raising=False)


def make_message(message_id: str, ts: int = 1, content: str = "hi", **extra) -> Message:
    data = {
        'id': message_id,
        'sender': 'alice',
        'recipient': 'bob',
        'content': content,
        'ts': ts,
    }
    data.update(extra)
    return Message.from_dict(data)


def message_json(message_id: str, ts: int = 1, content: str = "hi") -> str:
    return json.dumps({
        'id': message_id,
        'sender': 'alice',
        'recipient': 'bob',
        'content': content,
        'timestamp': ts,
    })


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll predicate until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(interval)


class FakeStream:
    """Stream whose events are pushed by the test. Exceptions are raised by receive()."""

    def __init__(self, *items: Any):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        for item in items:
            self.push(item)

    def push(self, item: Any) -> None:
        self.queue.put_nowait(item)

    async def receive(self) -> StreamEvent:
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    """
    Scripted transport for the delivery engine.

    streams: successive open_stream() results (FakeStream or exception);
    when exhausted open_stream() raises TransportError.
    polls: successive poll() results (list of messages, PollResult or
    exception); when exhausted poll() returns an empty PollResult.
    """

    def __init__(self, streams: Optional[List[Any]] = None, polls: Optional[List[Any]] = None):
        self.streams = list(streams or [])
        self.polls = list(polls or [])
        self.open_calls = 0
        self.poll_calls: List[Optional[str]] = []
        self.block_open = False

    async def open_stream(self):
        self.open_calls += 1
        if self.block_open:
            await asyncio.Event().wait()
        if not self.streams:
            raise TransportError("stream unavailable")
        item = self.streams.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def poll(self, since: Optional[str] = None):
        self.poll_calls.append(since)
        if not self.polls:
            return PollResult()
        item = self.polls.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, PollResult):
            return item
        return PollResult(messages=list(item))


class Recorder:
    """Collects everything the callback registry dispatches."""

    def __init__(self):
        self.messages: List[Message] = []
        self.errors: List[Exception] = []
        self.states: List[Any] = []

    def attach(self, registry) -> "Recorder":
        registry.on_message(self.messages.append)
        registry.on_error(self.errors.append)
        registry.on_connection_change(self.states.append)
        return self

    @property
    def ids(self) -> List[str]:
        return [m.id for m in self.messages]


class FakeBackend:
    """In-process OpenPond API."""

    def __init__(self):
        self.url = ""
        self.requests: List[dict] = []
        self.sent: List[dict] = []
        self.send_response = (200, {'id': 'msg-1'})
        self.poll_response: Any = []
        self.agents: List[dict] = [{'id': 'agent-1', 'name': 'alpha'}]
        self.agents_wrapped = True
        self.register_status = 201
        self.stream_status = 200
        self.stream_chunks: List[bytes] = []
        self.hold_stream = False
        self.release = asyncio.Event()
        self.delay = 0.0

        self.app = web.Application()
        self.app.router.add_post('/messages', self.handle_send)
        self.app.router.add_get('/messages', self.handle_poll)
        self.app.router.add_get('/messages/stream', self.handle_stream)
        self.app.router.add_get('/agents', self.handle_agents)
        self.app.router.add_get('/agents/{agent_id}', self.handle_agent)
        self.app.router.add_post('/agents/register', self.handle_register)

    def _record(self, request: web.Request, body: Any = None) -> None:
        self.requests.append({
            'method': request.method,
            'path': request.path,
            'query': dict(request.query),
            'headers': dict(request.headers),
            'body': body,
        })

    async def handle_send(self, request: web.Request) -> web.Response:
        body = await request.json()
        self._record(request, body)
        self.sent.append(body)
        if self.delay:
            await asyncio.sleep(self.delay)
        status, payload = self.send_response
        if isinstance(payload, str):
            return web.Response(status=status, text=payload)
        return web.json_response(payload, status=status)

    async def handle_poll(self, request: web.Request) -> web.Response:
        self._record(request)
        if isinstance(self.poll_response, str):
            return web.Response(text=self.poll_response)
        return web.json_response(self.poll_response)

    async def handle_agents(self, request: web.Request) -> web.Response:
        self._record(request)
        if self.agents_wrapped:
            return web.json_response({'agents': self.agents})
        return web.json_response(self.agents)

    async def handle_agent(self, request: web.Request) -> web.Response:
        self._record(request)
        agent_id = request.match_info['agent_id']
        for agent in self.agents:
            if agent['id'] == agent_id:
                return web.json_response(agent)
        return web.json_response({'status': 404, 'message': 'agent not found'}, status=404)

    async def handle_register(self, request: web.Request) -> web.Response:
        body = await request.json()
        self._record(request, body)
        if self.register_status >= 400 and self.register_status != 409:
            return web.json_response(
                {'status': self.register_status, 'message': 'registration failed'},
                status=self.register_status,
            )
        return web.json_response({'ok': True}, status=self.register_status)

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        self._record(request)
        if self.stream_status != 200:
            return web.json_response(
                {'status': self.stream_status, 'message': 'stream unavailable'},
                status=self.stream_status,
            )
        response = web.StreamResponse(headers={'Content-Type': 'text/event-stream'})
        await response.prepare(request)
        for chunk in self.stream_chunks:
            await response.write(chunk)
        if self.hold_stream:
            await self.release.wait()
        return response


@pytest_asyncio.fixture
async def backend():
    fake = FakeBackend()
    server = TestServer(fake.app)
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    try:
        yield fake
    finally:
        fake.release.set()
        await server.close()
