"""
Message delivery engine for OpenPond.

One background task owns the connection lifecycle: it prefers the live
event stream, falls back to polling, reconnects with capped exponential
backoff, drops duplicate messages and hands each message to the callback
registry exactly once.

    STOPPED -> CONNECTING -> LIVE | POLLING
    LIVE -> RECONNECTING -> CONNECTING
    POLLING -> CONNECTING (periodic stream upgrade)
    any -> STOPPED (stop())
"""

import asyncio
import logging
import random
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Iterable, Callable, Awaitable, Dict, Any

from .callbacks import CallbackRegistry
from .config import OpenPondConfig, DEFAULT_RECONNECT_ATTEMPTS
from .errors import ApiError, TransportError, SerializationError
from .models import Message
from .transport import StreamEventType

logger = logging.getLogger(__name__)

# Errors a background request may raise; anything else is a bug and is
# still contained by the run loop.
BACKGROUND_ERRORS = (TransportError, ApiError, SerializationError)


class ConnectionState(Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    LIVE = "live"
    POLLING = "polling"
    RECONNECTING = "reconnecting"

    @property
    def mode(self) -> str:
        """Delivery mode as seen by the application: live, polling or disconnected."""
        if self is ConnectionState.LIVE:
            return "live"
        if self is ConnectionState.POLLING:
            return "polling"
        return "disconnected"


class SeenIds:
    """
    Insertion-ordered set of recently delivered message IDs.

    Past capacity the oldest ID is evicted, so a very old message could be
    delivered again in an extremely long session.
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def add(self, message_id: str) -> bool:
        """Record an ID. Returns False if it was already present."""
        if message_id in self._ids:
            return False
        self._ids[message_id] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)
        return True

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class Backoff:
    """
    Exponential backoff with upward jitter, capped at maximum.

    Successive delays never decrease until reset().
    """

    def __init__(
        self,
        minimum: float = 1.0,
        maximum: float = 60.0,
        factor: float = 2.0,
        jitter: float = 0.25,
        rng: Callable[[], float] = random.random,
    ):
        self.minimum = minimum
        self.maximum = maximum
        self.factor = factor
        self.jitter = jitter
        self._rng = rng
        self.attempts = 0
        self._base: Optional[float] = None
        self._last = 0.0

    def next_delay(self) -> float:
        if self._base is None:
            self._base = self.minimum
        else:
            self._base = min(self.maximum, self._base * self.factor)

        delay = min(self.maximum, self._base * (1 + self.jitter * self._rng()))
        delay = max(delay, self._last)

        self._last = delay
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
        self._base = None
        self._last = 0.0


@dataclass
class DeliveryState:
    """Mutable state of one engine lifetime; touched only by the delivery task."""
    seen_ids: SeenIds
    backoff: Backoff
    state: ConnectionState = ConnectionState.CONNECTING
    last_seen_message_id: Optional[str] = None
    last_seen_key: Optional[tuple] = None
    polling_since: Optional[float] = None
    stream: Optional[Any] = field(default=None, repr=False)


class DeliveryEngine:
    """
    Drives message delivery from a transport into a callback registry.

    The transport must provide open_stream() and poll(since), the latter
    returning a PollResult. Only the background task mutates delivery state;
    callers observe it through the connection-change callback or the
    read-only state property.
    """

    def __init__(
        self,
        transport: Any,
        callbacks: CallbackRegistry,
        use_stream: bool = True,
        poll_interval: float = 5.0,
        inactivity_timeout: float = 90.0,
        stream_retry_interval: Optional[float] = 300.0,
        reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS,
        dedup_window: int = 1000,
        backoff: Optional[Backoff] = None,
    ):
        self._transport = transport
        self._callbacks = callbacks
        self.use_stream = use_stream
        self.poll_interval = poll_interval
        self.inactivity_timeout = inactivity_timeout
        self.stream_retry_interval = stream_retry_interval
        self.reconnect_attempts = reconnect_attempts
        self.dedup_window = dedup_window
        self._backoff = backoff or Backoff()

        self._delivery: Optional[DeliveryState] = None
        self._task: Optional[asyncio.Task] = None
        self._lifecycle_lock = asyncio.Lock()

        self._handlers: Dict[ConnectionState, Callable[[], Awaitable[ConnectionState]]] = {
            ConnectionState.CONNECTING: self._connecting,
            ConnectionState.LIVE: self._live,
            ConnectionState.POLLING: self._polling,
            ConnectionState.RECONNECTING: self._reconnecting,
        }

    @classmethod
    def from_config(
        cls,
        transport: Any,
        callbacks: CallbackRegistry,
        config: OpenPondConfig,
    ) -> "DeliveryEngine":
        return cls(
            transport,
            callbacks,
            use_stream=config.use_stream,
            poll_interval=config.poll_interval,
            inactivity_timeout=config.inactivity_timeout,
            stream_retry_interval=config.stream_retry_interval,
            reconnect_attempts=config.reconnect_attempts,
            dedup_window=config.dedup_window,
            backoff=Backoff(
                minimum=config.backoff_min,
                maximum=config.backoff_max,
                factor=config.backoff_factor,
                jitter=config.backoff_jitter,
            ),
        )

    @property
    def state(self) -> ConnectionState:
        if self._delivery is None:
            return ConnectionState.STOPPED
        return self._delivery.state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """
        Start the background task. A no-op if it is already running.
        Waits for a stop() in progress to finish first.
        """
        async with self._lifecycle_lock:
            if self.is_running:
                return

            self._backoff.reset()
            self._delivery = DeliveryState(
                seen_ids=SeenIds(self.dedup_window),
                backoff=self._backoff,
                state=ConnectionState.STOPPED,
            )
            self._set_state(ConnectionState.CONNECTING)
            self._task = asyncio.create_task(self._run())
            logger.info("Delivery engine started")

    async def stop(self) -> None:
        """
        Cancel whatever the task is waiting on (stream read, poll, backoff
        timer), close the stream and land in STOPPED before returning.
        """
        async with self._lifecycle_lock:
            task, self._task = self._task, None
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

            if self._delivery is not None:
                await self._close_stream()
                self._set_state(ConnectionState.STOPPED)
                self._delivery = None
                logger.info("Delivery engine stopped")

    async def _run(self) -> None:
        try:
            while self.state is not ConnectionState.STOPPED:
                handler = self._handlers[self.state]
                try:
                    next_state = await handler()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Unexpected failure: contain it and recover through reconnect
                    logger.error(f"Delivery loop error in {self.state.value}: {e}")
                    self._callbacks.dispatch_error(e)
                    await self._close_stream()
                    next_state = ConnectionState.RECONNECTING
                self._set_state(next_state)
        finally:
            await self._close_stream()

    def _set_state(self, new_state: ConnectionState) -> None:
        delivery = self._delivery
        if delivery is None or delivery.state is new_state:
            return

        old_state = delivery.state
        delivery.state = new_state
        if new_state is ConnectionState.POLLING:
            delivery.polling_since = asyncio.get_running_loop().time()
        else:
            delivery.polling_since = None

        logger.info(f"Delivery state: {old_state.value} -> {new_state.value}")
        self._callbacks.dispatch_state(new_state)

    async def _close_stream(self) -> None:
        delivery = self._delivery
        if delivery is None or delivery.stream is None:
            return
        stream, delivery.stream = delivery.stream, None
        try:
            await stream.close()
        except Exception as e:
            logger.debug(f"Error closing stream: {e}")

    def _report(self, error: Exception, context: str) -> None:
        logger.warning(f"{context}: {error}")
        self._callbacks.dispatch_error(error)

    async def _connecting(self) -> ConnectionState:
        delivery = self._delivery
        if not self.use_stream:
            return ConnectionState.POLLING

        try:
            delivery.stream = await self._transport.open_stream()
        except BACKGROUND_ERRORS as e:
            self._report(e, "Live stream unavailable")
            reconnecting = delivery.backoff.attempts > 0
            if (isinstance(e, TransportError) and reconnecting
                    and delivery.backoff.attempts < self.reconnect_attempts):
                return ConnectionState.RECONNECTING
            logger.info("Falling back to polling")
            return ConnectionState.POLLING

        return ConnectionState.LIVE

    async def _live(self) -> ConnectionState:
        delivery = self._delivery
        delivery.backoff.reset()

        # Fetch whatever arrived while disconnected before reading the stream
        if delivery.last_seen_message_id is not None:
            await self._poll_once()

        while True:
            try:
                event = await asyncio.wait_for(
                    delivery.stream.receive(),
                    timeout=self.inactivity_timeout,
                )
            except asyncio.TimeoutError:
                self._report(
                    TransportError(f"No stream activity for {self.inactivity_timeout}s"),
                    "Live stream stalled",
                )
                break
            except SerializationError as e:
                self._report(e, "Dropping malformed stream payload")
                continue
            except (TransportError, ApiError) as e:
                self._report(e, "Live stream failed")
                break

            if event.type is StreamEventType.HEARTBEAT:
                continue
            if event.type is StreamEventType.CLOSED:
                self._report(TransportError("Stream closed by server"), "Live stream closed")
                break
            self._deliver([event.message])

        await self._close_stream()
        return ConnectionState.RECONNECTING

    async def _polling(self) -> ConnectionState:
        delivery = self._delivery
        if await self._poll_once():
            delivery.backoff.reset()

        await asyncio.sleep(self.poll_interval)

        if self.use_stream and self.stream_retry_interval is not None:
            elapsed = asyncio.get_running_loop().time() - delivery.polling_since
            if elapsed >= self.stream_retry_interval:
                logger.info("Retrying live stream")
                return ConnectionState.CONNECTING
        return ConnectionState.POLLING

    async def _reconnecting(self) -> ConnectionState:
        delay = self._delivery.backoff.next_delay()
        logger.info(f"Reconnecting in {delay:.2f}s (attempt {self._delivery.backoff.attempts})")
        await asyncio.sleep(delay)
        return ConnectionState.CONNECTING

    async def _poll_once(self) -> bool:
        """Poll since the last seen message and deliver. Returns False on failure."""
        try:
            result = await self._transport.poll(since=self._delivery.last_seen_message_id)
        except BACKGROUND_ERRORS as e:
            self._report(e, "Poll failed")
            return False
        for error in result.dropped:
            self._callbacks.dispatch_error(error)
        self._deliver(result.messages)
        return True

    def _deliver(self, messages: Iterable[Message]) -> None:
        """Deliver in (timestamp, id) order, skipping IDs already seen."""
        delivery = self._delivery
        for message in sorted(messages, key=lambda m: m.sort_key):
            if not delivery.seen_ids.add(message.id):
                logger.debug(f"Skipping duplicate message {message.id}")
                continue

            if delivery.last_seen_key is None or message.sort_key > delivery.last_seen_key:
                delivery.last_seen_key = message.sort_key
                delivery.last_seen_message_id = message.id

            logger.debug(f"Delivering message {message.id} from {message.sender}")
            self._callbacks.dispatch_message(message)
