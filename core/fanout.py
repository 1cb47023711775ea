"""
Realtime Fan-out for the PopThread core

Publishes state-change events to connected subscribers. Delivery is best
effort: the entity store is the source of truth and a client that misses an
event recovers with a full re-fetch. Publishing never blocks and never
raises into the write path.

Push channel framing (TCP):
- 4 bytes: frame length (big-endian)
- N bytes: CBOR-encoded map {"type": str, "payload": map}
"""

import asyncio
import itertools
import logging
import struct
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import cbor2


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types pushed to subscribers."""
    REFRESH_THREADS = "refresh-threads"
    NEW_MESSAGE = "new-message"
    REFRESH_GOSSIPS = "refresh-gossips"


class FanoutError(Exception):
    """Base exception for fan-out errors."""
    pass


class FrameError(FanoutError):
    """Raised when a push-channel frame is malformed or too large."""
    pass


class SubscriptionClosed(FanoutError):
    """Raised by Subscription.get once the subscription has been closed."""
    pass


# Queued after the last event of a closed subscription to wake its readers
_CLOSED = object()


@dataclass
class Event:
    """
    A state-change notification.

    ``thread_id`` scopes an event to one thread so subscribers that watch
    specific threads can skip the rest; None means every subscriber gets it.
    """
    event_type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    thread_id: Optional[str] = None

    def to_frame(self) -> bytes:
        return encode_frame(self.event_type.value, self.payload)


def encode_frame(msg_type: str, payload: Dict[str, Any]) -> bytes:
    body = cbor2.dumps({"type": msg_type, "payload": payload})
    return struct.pack('!I', len(body)) + body


async def read_frame(reader: asyncio.StreamReader, max_frame_size: int) -> Dict[str, Any]:
    """
    Read one frame from the push channel.

    Raises:
        FrameError: If the frame is too large or not a {type, payload} map
        asyncio.IncompleteReadError: If the connection is closed
    """
    length_bytes = await reader.readexactly(4)
    length = struct.unpack('!I', length_bytes)[0]
    if length > max_frame_size:
        raise FrameError(f"Frame too large: {length} bytes")

    body = await reader.readexactly(length)
    try:
        message = cbor2.loads(body)
    except Exception as e:
        raise FrameError(f"Undecodable frame: {e}")

    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise FrameError("Frame is not a {type, payload} map")
    message.setdefault("payload", {})
    return message


class Subscription:
    """
    One subscriber's bounded event queue.

    A subscription that falls ``queue_size`` events behind is pruned by the
    publisher; the owner notices through ``closed`` and ``on_close``.
    """

    def __init__(self, subscriber_id: int, queue_size: int, thread_ids: Optional[Set[str]] = None):
        self.subscriber_id = subscriber_id
        self.thread_ids = set(thread_ids) if thread_ids is not None else None
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.on_close: Optional[Callable[[], None]] = None

    def wants(self, event: Event) -> bool:
        if event.thread_id is None or self.thread_ids is None:
            return True
        return event.thread_id in self.thread_ids

    def watch(self, thread_id: str) -> None:
        if self.thread_ids is None:
            self.thread_ids = set()
        self.thread_ids.add(thread_id)

    def unwatch(self, thread_id: str) -> None:
        if self.thread_ids is not None:
            self.thread_ids.discard(thread_id)

    def drain(self) -> List[Event]:
        """Return every queued event without waiting."""
        events = []
        closed_marker = False
        while True:
            try:
                item = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                closed_marker = True
            else:
                events.append(item)
        if closed_marker:
            self.queue.put_nowait(_CLOSED)
        return events

    async def get(self) -> Event:
        """
        Wait for the next event.

        Raises:
            SubscriptionClosed: Once the subscription is closed and every
                                event queued before that has been read
        """
        if self.closed and self.queue.empty():
            raise SubscriptionClosed(f"Subscriber {self.subscriber_id} is closed")
        item = await self.queue.get()
        if item is _CLOSED:
            # Leave the marker for any other reader still waiting
            self.queue.put_nowait(_CLOSED)
            raise SubscriptionClosed(f"Subscriber {self.subscriber_id} is closed")
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.on_close:
            try:
                self.on_close()
            except Exception as e:
                logger.debug(f"on_close for subscriber {self.subscriber_id} failed: {e}")

    def _wake(self) -> None:
        """Queue the close marker, making room by dropping the oldest event."""
        if self.queue.full():
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(_CLOSED)


class RealtimeFanout:
    """
    Fans state-change events out to subscribers.

    Responsibilities:
    - In-process subscriptions with bounded queues
    - Thread-safe, non-blocking publish (publish-after-commit)
    - Pruning of slow or dropped subscribers
    - TCP push server speaking length-prefixed CBOR frames
    """

    def __init__(self, queue_size: int = 256, max_frame_size: int = 1024 * 1024):
        """
        Args:
            queue_size: Events buffered per subscriber before it is pruned
            max_frame_size: Largest inbound frame accepted from clients
        """
        self.queue_size = queue_size
        self.max_frame_size = max_frame_size
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.server: Optional[asyncio.Server] = None
        self.running = False
        self.published_count = 0
        self.pruned_count = 0

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, thread_ids: Optional[Set[str]] = None) -> Subscription:
        """
        Register a new subscriber.

        Args:
            thread_ids: Threads whose new-message events to receive;
                        None receives every event

        Returns:
            Subscription
        """
        with self._lock:
            subscription = Subscription(next(self._ids), self.queue_size, thread_ids)
            self._subscribers[subscription.subscriber_id] = subscription
        logger.debug(f"Subscriber {subscription.subscriber_id} registered")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber and end any iteration waiting on it."""
        with self._lock:
            self._subscribers.pop(subscription.subscriber_id, None)
        if subscription.closed:
            return
        subscription._close()
        self._call_on_loop(subscription._wake)
        logger.debug(f"Subscriber {subscription.subscriber_id} removed")

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Deliver events on ``loop``; publishes from other threads hop onto it."""
        self._loop = loop

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, event: Event) -> None:
        """
        Publish an event to all interested subscribers.

        Never blocks and never raises; call it only after the write that
        produced the event has committed.
        """
        try:
            self._call_on_loop(self._dispatch, event)
        except Exception as e:
            logger.error(f"Failed to publish {event.event_type.value}: {e}")

    def publish_refresh_threads(self) -> None:
        self.publish(Event(EventType.REFRESH_THREADS))

    def publish_refresh_gossips(self) -> None:
        self.publish(Event(EventType.REFRESH_GOSSIPS))

    def publish_new_message(self, message_payload: Dict[str, Any]) -> None:
        self.publish(Event(
            EventType.NEW_MESSAGE,
            payload=message_payload,
            thread_id=message_payload.get("threadId"),
        ))

    def _call_on_loop(self, callback: Callable, *args) -> None:
        """Run ``callback`` on the bound loop, hopping threads if needed."""
        loop = self._loop
        if loop is not None and loop.is_running() and not self._on_loop_thread(loop):
            loop.call_soon_threadsafe(callback, *args)
        else:
            callback(*args)

    @staticmethod
    def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def _dispatch(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())

        delivered = 0
        for subscription in subscribers:
            if subscription.closed or not subscription.wants(event):
                continue
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    f"Subscriber {subscription.subscriber_id} fell behind; pruning"
                )
                self.pruned_count += 1
                self.unsubscribe(subscription)

        self.published_count += 1
        logger.debug(f"Published {event.event_type.value} to {delivered} subscribers")

    # ------------------------------------------------------------------
    # Push server
    # ------------------------------------------------------------------

    async def start(self, port: int, host: str = '127.0.0.1') -> None:
        """
        Start the TCP push server.

        Args:
            port: Port to listen on (0 picks a free port)
            host: Host address to bind to

        Raises:
            FanoutError: If the server fails to start
        """
        self.bind_loop(asyncio.get_running_loop())
        try:
            self.server = await asyncio.start_server(self._handle_client, host, port)
        except Exception as e:
            raise FanoutError(f"Failed to start push server: {e}")
        self.running = True
        addr = self.server.sockets[0].getsockname()
        logger.info(f"Push server started on {addr[0]}:{addr[1]}")

    @property
    def port(self) -> Optional[int]:
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        """Stop the server and drop every subscriber."""
        self.running = False
        with self._lock:
            subscribers = list(self._subscribers.values())
        for subscription in subscribers:
            self.unsubscribe(subscription)
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("Push server stopped")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ) -> None:
        """
        Serve one push-channel client until it disconnects or is pruned.
        """
        peer = writer.get_extra_info('peername')
        subscription = self.subscribe()
        pump = asyncio.create_task(self._pump(subscription, writer))

        def close_connection():
            pump.cancel()
            writer.close()

        subscription.on_close = close_connection
        logger.info(f"Push client {peer} connected as subscriber {subscription.subscriber_id}")

        try:
            writer.write(encode_frame("hello", {"subscriberId": subscription.subscriber_id}))
            await writer.drain()

            while self.running and not subscription.closed:
                try:
                    message = await read_frame(reader, self.max_frame_size)
                except asyncio.IncompleteReadError:
                    break
                except FrameError as e:
                    logger.warning(f"Bad frame from {peer}: {e}")
                    break
                self._handle_client_message(subscription, message)
        except ConnectionError as e:
            logger.debug(f"Push client {peer} connection error: {e}")
        finally:
            self.unsubscribe(subscription)
            pump.cancel()
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass
            logger.info(f"Push client {peer} disconnected")

    def _handle_client_message(self, subscription: Subscription, message: Dict[str, Any]) -> None:
        msg_type = message["type"]
        payload = message["payload"] if isinstance(message["payload"], dict) else {}
        thread_id = payload.get("thread_id")

        if msg_type == "watch" and isinstance(thread_id, str):
            subscription.watch(thread_id)
        elif msg_type == "unwatch" and isinstance(thread_id, str):
            subscription.unwatch(thread_id)
        else:
            logger.debug(f"Ignoring {msg_type} frame from subscriber {subscription.subscriber_id}")

    async def _pump(self, subscription: Subscription, writer: asyncio.StreamWriter) -> None:
        """Write queued events to the socket in order."""
        try:
            while True:
                event = await subscription.get()
                writer.write(event.to_frame())
                await writer.drain()
        except (asyncio.CancelledError, SubscriptionClosed):
            pass
        except Exception as e:
            logger.info(f"Dropping subscriber {subscription.subscriber_id}: {e}")
            self.unsubscribe(subscription)
