"""
Upstream event subscription.

An EventSubscriber turns a named event source into a RecordStream, an async
iterator of AuditRecord. Two sources are provided:

- PostgresEventSubscriber: PostgreSQL LISTEN/NOTIFY, the channel name being
  the topic name. Publishers use NOTIFY or pg_notify().
- InMemoryEventBus: in-process bus with explicitly registered topics, for
  local runs and tests.

A missing source raises SubscriptionError; callers are expected to log it and
keep serving queries.
"""

import asyncio
import functools
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

import asyncpg

from audit_service.errors import SubscriptionError
from audit_service.models import AuditRecord

_CLOSED = object()


def parse_message(message: Union[str, bytes, Dict[str, Any]]) -> AuditRecord:
    """
    Build a record from a raw upstream message.

    Raises:
        ValueError: If the message is not a JSON object
    """
    if isinstance(message, (str, bytes)):
        message = json.loads(message)
    if not isinstance(message, dict):
        raise ValueError(f"expected a JSON object, got {type(message).__name__}")
    return AuditRecord(payload=message)


class RecordStream:
    """
    Async iterator over records delivered for one subscription.

    Records delivered before close() are still yielded; iteration ends after
    them.
    """

    def __init__(self, topic: str):
        self.topic = topic
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, record: AuditRecord) -> bool:
        """Queue a record; returns False if the stream is already closed."""
        if self._closed:
            return False
        self._queue.put_nowait(record)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "RecordStream":
        return self

    async def __anext__(self) -> AuditRecord:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker so later calls also stop
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class EventSubscriber(ABC):
    """Connection to an upstream event bus."""

    @abstractmethod
    async def subscribe(self, topic: str) -> RecordStream:
        """
        Subscribe to a named event source.

        Raises:
            SubscriptionError: If the source is unavailable
        """

    @abstractmethod
    async def close(self) -> None:
        """Close every stream and release the bus connection."""


class PostgresEventSubscriber(EventSubscriber):
    """
    PostgreSQL LISTEN/NOTIFY subscriber.

    Uses one dedicated connection, outside the store's pool, for all of its
    listeners.
    """

    def __init__(
        self,
        dsn: Optional[str],
        connect_timeout: float = 10.0,
        connect: Optional[Callable] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self._connect = connect or asyncpg.connect
        self._connection: Optional[asyncpg.Connection] = None
        self._streams: List[RecordStream] = []
        self._log = logger or logging.getLogger(__name__)

    async def subscribe(self, topic: str) -> RecordStream:
        if not self.dsn:
            raise SubscriptionError(f"No event bus configured for {topic}")

        stream = RecordStream(topic)
        try:
            if self._connection is None:
                self._connection = await self._connect(self.dsn, timeout=self.connect_timeout)
                self._connection.add_termination_listener(self._on_termination)
                self._log.info("Event subscriber connected to PostgreSQL")
            await self._connection.add_listener(
                topic, functools.partial(self._on_notification, stream)
            )
        except Exception as e:
            raise SubscriptionError(f"Cannot subscribe to {topic}: {e}") from e

        self._streams.append(stream)
        self._log.info(f"Listening on channel: {topic}")
        return stream

    def _on_notification(
        self,
        stream: RecordStream,
        connection: asyncpg.Connection,
        pid: int,
        channel: str,
        payload: str
    ) -> None:
        """
        Handle an incoming notification.

        Args:
            stream: Stream bound to the channel
            connection: The listening connection
            pid: Process ID of the notifying backend
            channel: Notification channel name
            payload: Notification payload (JSON string)
        """
        try:
            record = parse_message(payload)
        except ValueError as e:
            self._log.error(f"Dropping malformed message on {channel} from pid {pid}: {e}")
            return
        stream.deliver(record)

    def _on_termination(self, connection: asyncpg.Connection) -> None:
        self._log.error("Event bus connection lost, ingestion is now idle")
        self._connection = None
        self._close_streams()

    def _close_streams(self) -> None:
        for stream in self._streams:
            stream.close()
        self._streams.clear()

    async def close(self) -> None:
        self._close_streams()
        if self._connection is not None:
            connection, self._connection = self._connection, None
            connection.remove_termination_listener(self._on_termination)
            await connection.close()
            self._log.info("Event subscriber disconnected")


class InMemoryEventBus(EventSubscriber):
    """
    In-process event bus.

    A topic exists once a publisher registers it; subscribing to anything
    else fails the same way an absent upstream service does.
    """

    def __init__(self, topics: tuple = (), logger: Optional[logging.Logger] = None):
        self._subscribers: Dict[str, List[RecordStream]] = {}
        self._log = logger or logging.getLogger(__name__)
        for topic in topics:
            self.register(topic)

    @property
    def topics(self) -> List[str]:
        return sorted(self._subscribers)

    def subscriber_count(self, topic: str) -> int:
        return sum(1 for stream in self._subscribers.get(topic, []) if not stream.closed)

    def register(self, topic: str) -> None:
        self._subscribers.setdefault(topic, [])

    def unregister(self, topic: str) -> None:
        for stream in self._subscribers.pop(topic, []):
            stream.close()

    async def subscribe(self, topic: str) -> RecordStream:
        if topic not in self._subscribers:
            raise SubscriptionError(f"No {topic} event source registered")
        stream = RecordStream(topic)
        self._subscribers[topic].append(stream)
        self._log.info(f"Subscribed to {topic}")
        return stream

    def publish(self, topic: str, message: Union[str, bytes, Dict[str, Any]]) -> int:
        """
        Deliver a message to every open stream of a topic.

        Returns:
            Number of streams the record was delivered to

        Raises:
            SubscriptionError: If the topic is not registered
            ValueError: If the message is not a JSON object
        """
        if topic not in self._subscribers:
            raise SubscriptionError(f"No {topic} event source registered")
        record = parse_message(message)
        return sum(1 for stream in self._subscribers[topic] if stream.deliver(record))

    async def close(self) -> None:
        for streams in self._subscribers.values():
            for stream in streams:
                stream.close()
            streams.clear()
