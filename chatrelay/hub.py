"""
Connection hub: live connections, channel subscriptions and fan-out.

Each connection owns a bounded outbound queue drained by exactly one send
loop (``run_sender``). Publishing never waits on a consumer: frames are
enqueued with ``put_nowait`` and a connection whose queue is full is
marked overflowed and disconnected, leaving the other subscribers of the
channel untouched. Catch-up is the exception: it runs before the
connection takes live traffic, so it waits a bounded time for the send
loop to make room instead of overflowing at once.

Ordering relies on one ``asyncio.Lock`` per channel. Publishing a message
(append + deliver in the dispatcher) and subscribing (catch-up snapshot +
registration) both run under it, so a subscriber sees the replayed
messages followed by live ones without a gap or a repeat.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from chatrelay.errors import NotFound
from chatrelay.metrics import active_connections, record_delivery, record_delivery_failure
from chatrelay.schemas import Message
from chatrelay.storage import MessageStore


logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    OPEN = "open"
    OVERFLOWED = "overflowed"
    CLOSED = "closed"


@dataclass
class Subscription:
    """
    A connection's interest in a channel.

    last_queued_seq is the highest seq put on the outbound queue and
    filters duplicates; last_delivered_seq is the highest seq the send
    loop has written to the transport.
    """
    connection_id: str
    channel_id: str
    last_delivered_seq: int
    last_queued_seq: int
    created_at: float = field(default_factory=time.time)


@dataclass
class Outbound:
    """A frame waiting in a connection's queue."""
    frame: Dict[str, Any]
    channel_id: Optional[str] = None
    seq: Optional[int] = None


# Wakes the send loop so it exits after a disconnect
_CLOSE = object()

# Seconds between queue checks while a catch-up waits for the send loop
_DRAIN_POLL_INTERVAL = 0.005


@dataclass
class Connection:
    connection_id: str
    user_id: str
    queue: asyncio.Queue
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    state: ConnectionState = ConnectionState.OPEN
    connected_at: float = field(default_factory=time.time)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN


def message_frame(message: Message) -> Dict[str, Any]:
    frame = {"type": "message"}
    frame.update(message.model_dump())
    return frame


class ConnectionHub:
    """Manages live connections and delivers channel messages to them."""

    def __init__(
        self,
        store: MessageStore,
        queue_capacity: int = 256,
        catchup_page_size: int = 100,
        catchup_drain_timeout: float = 5.0,
    ):
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be at least 1")
        self.store = store
        self.queue_capacity = queue_capacity
        self.catchup_page_size = max(1, catchup_page_size)
        self.catchup_drain_timeout = catchup_drain_timeout

        self._connections: Dict[str, Connection] = {}
        self._channel_subscribers: Dict[str, Set[str]] = {}  # channel_id -> connection_ids
        self._channel_locks: Dict[str, asyncio.Lock] = {}

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def connect(self, user_id: str) -> str:
        """Register a new connection with an empty bounded queue."""
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = Connection(
            connection_id=connection_id,
            user_id=user_id,
            queue=asyncio.Queue(maxsize=self.queue_capacity),
        )
        active_connections.inc()
        logger.info(f"Connection {connection_id} opened for user {user_id}")
        return connection_id

    def get_connection(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise NotFound(f"connection {connection_id} not found")
        return connection

    def disconnect(self, connection_id: str, state: ConnectionState = ConnectionState.CLOSED) -> Optional[Connection]:
        """
        Drop a connection: unregister its subscriptions, discard pending
        frames and stop its send loop. Safe to call more than once.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        for channel_id in list(connection.subscriptions):
            self._remove_from_channel(channel_id, connection_id)
        connection.subscriptions.clear()
        connection.state = state

        dropped = 0
        while True:
            try:
                connection.queue.get_nowait()
                dropped += 1
            except asyncio.QueueEmpty:
                break
        connection.queue.put_nowait(_CLOSE)

        active_connections.dec()
        logger.info(f"Connection {connection_id} {state.value}, {dropped} pending frames discarded")
        return connection

    def disconnect_all(self) -> int:
        connection_ids = list(self._connections)
        for connection_id in connection_ids:
            self.disconnect(connection_id)
        return len(connection_ids)

    def _remove_from_channel(self, channel_id: str, connection_id: str) -> None:
        subscriber_ids = self._channel_subscribers.get(channel_id)
        if subscriber_ids is None:
            return
        subscriber_ids.discard(connection_id)
        if not subscriber_ids:
            del self._channel_subscribers[channel_id]

    # -------------------------------------------------------------------------
    # Queueing
    # -------------------------------------------------------------------------

    def _enqueue(self, connection: Connection, item: Outbound) -> bool:
        if not connection.is_open:
            return False
        try:
            connection.queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            logger.warning(
                f"Connection {connection.connection_id} overflowed "
                f"({self.queue_capacity} pending frames), disconnecting"
            )
            record_delivery_failure("overflow")
            self.disconnect(connection.connection_id, ConnectionState.OVERFLOWED)
            return False

    def send_control(self, connection_id: str, frame: Dict[str, Any]) -> bool:
        """Queue a non-message frame (ack, pong, error) behind pending messages."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return self._enqueue(connection, Outbound(frame=frame))

    # -------------------------------------------------------------------------
    # Subscriptions and fan-out
    # -------------------------------------------------------------------------

    def channel_lock(self, channel_id: str) -> asyncio.Lock:
        lock = self._channel_locks.get(channel_id)
        if lock is None:
            lock = self._channel_locks[channel_id] = asyncio.Lock()
        return lock

    async def subscribe(self, connection_id: str, channel_id: str, last_seen_seq: int = 0) -> int:
        """
        Replay messages with seq > last_seen_seq, then register for live
        delivery. Subscribing twice to the same channel replays nothing.

        The replay is read page by page. When the queue fills up the hub
        yields to the send loop for up to catchup_drain_timeout seconds,
        so a consumer that keeps reading catches up on any backlog and
        only a stalled one overflows.

        Returns the number of replayed messages.
        """
        connection = self.get_connection(connection_id)

        async with self.channel_lock(channel_id):
            if not connection.is_open:
                return 0

            existing = connection.subscriptions.get(channel_id)
            if existing is not None:
                self._send_subscribed(connection, channel_id, 0, existing.last_queued_seq)
                return 0

            # Live fan-out starts once the connection joins the subscriber set below
            subscription = connection.subscriptions[channel_id] = Subscription(
                connection_id=connection_id,
                channel_id=channel_id,
                last_delivered_seq=last_seen_seq,
                last_queued_seq=last_seen_seq,
            )

            replayed = 0
            while True:
                page = self.store.read_from(channel_id, subscription.last_queued_seq, self.catchup_page_size)
                for message in page:
                    if connection.queue.full():
                        await self._wait_for_room(connection)
                    item = Outbound(frame=message_frame(message), channel_id=channel_id, seq=message.seq)
                    if not self._enqueue(connection, item):
                        record_delivery(replayed, catchup=True)
                        return replayed
                    subscription.last_queued_seq = message.seq
                    replayed += 1
                if len(page) < self.catchup_page_size:
                    break

            if connection.queue.full():
                await self._wait_for_room(connection)
            if not connection.is_open:
                record_delivery(replayed, catchup=True)
                return replayed

            self._channel_subscribers.setdefault(channel_id, set()).add(connection_id)
            self._send_subscribed(connection, channel_id, replayed, subscription.last_queued_seq)

        record_delivery(replayed, catchup=True)
        logger.info(
            f"Connection {connection_id} subscribed to {channel_id} "
            f"after seq {last_seen_seq}, replayed {replayed}"
        )
        return replayed

    async def _wait_for_room(self, connection: Connection) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.catchup_drain_timeout
        while connection.is_open and connection.queue.full() and loop.time() < deadline:
            await asyncio.sleep(_DRAIN_POLL_INTERVAL)

    def _send_subscribed(self, connection: Connection, channel_id: str, replayed: int, caught_up_to: int) -> None:
        self._enqueue(connection, Outbound(frame={
            "type": "subscribed",
            "channel_id": channel_id,
            "replayed": replayed,
            "caught_up_to": caught_up_to,
        }))

    def unsubscribe(self, connection_id: str, channel_id: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or connection.subscriptions.pop(channel_id, None) is None:
            return False
        self._remove_from_channel(channel_id, connection_id)
        logger.info(f"Connection {connection_id} unsubscribed from {channel_id}")
        return True

    async def publish(self, channel_id: str, message: Message) -> int:
        """Deliver message to every subscriber of channel_id under the channel lock."""
        async with self.channel_lock(channel_id):
            return self.deliver(channel_id, message)

    def deliver(self, channel_id: str, message: Message) -> int:
        """
        Enqueue message for every current subscriber. Caller holds the
        channel lock. Overflowing subscribers are disconnected; the rest
        are unaffected.

        Returns the number of connections the message was queued for.
        """
        subscriber_ids = self._channel_subscribers.get(channel_id)
        if not subscriber_ids:
            return 0

        frame = message_frame(message)
        delivered = 0
        for connection_id in list(subscriber_ids):
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            subscription = connection.subscriptions.get(channel_id)
            if subscription is None or message.seq <= subscription.last_queued_seq:
                continue
            if self._enqueue(connection, Outbound(frame=frame, channel_id=channel_id, seq=message.seq)):
                subscription.last_queued_seq = message.seq
                delivered += 1

        record_delivery(delivered)
        logger.debug(f"Message seq {message.seq} on {channel_id} queued for {delivered} connections")
        return delivered

    def subscribers(self, channel_id: str) -> Set[str]:
        return set(self._channel_subscribers.get(channel_id, ()))

    # -------------------------------------------------------------------------
    # Send loop
    # -------------------------------------------------------------------------

    async def run_sender(self, connection_id: str, send: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        """
        Drain the connection's queue in FIFO order into send until the
        connection is disconnected. A failing send disconnects it.
        """
        connection = self.get_connection(connection_id)
        queue = connection.queue

        while True:
            item = await queue.get()
            if item is _CLOSE:
                break

            try:
                await send(item.frame)
            except Exception as e:
                logger.warning(f"Send to connection {connection_id} failed: {e}")
                record_delivery_failure("send_error")
                self.disconnect(connection_id)
                break

            if item.seq is not None:
                subscription = connection.subscriptions.get(item.channel_id)
                if subscription is not None and item.seq > subscription.last_delivered_seq:
                    subscription.last_delivered_seq = item.seq

        logger.debug(f"Send loop for connection {connection_id} stopped")

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self._connections),
            "subscriptions": sum(len(c.subscriptions) for c in self._connections.values()),
            "channels_with_subscribers": len(self._channel_subscribers),
            "pending_frames": sum(c.queue.qsize() for c in self._connections.values()),
        }
