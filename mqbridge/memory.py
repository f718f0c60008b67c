"""In-memory topics shared between publishers and consumers in one process."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Iterable
from contextlib import suppress
from typing import Optional

from mqbridge.config import MemoryConfig
from mqbridge.message import CanonicalMessage
from mqbridge.publishing import (
    ConsumerError,
    MessageConsumer,
    MessagePublisher,
    NonRetryablePublisherError,
    ReceivedBatch,
    SentBatch,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100


class _Closed(Exception):
    """Raised inside the channel when it has been closed."""


def _wake_one(waiters: deque[asyncio.Future[None]]) -> None:
    while waiters:
        waiter = waiters.popleft()
        if waiter.done():
            continue
        try:
            waiter.set_result(None)
        except RuntimeError:
            # The waiter belongs to an event loop that is gone.
            continue
        return


def _wake_all(waiters: deque[asyncio.Future[None]]) -> None:
    while waiters:
        _wake_one(waiters)


class MemoryChannel:
    """A bounded queue of message batches; its length counts batches."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("memory channel capacity must be at least 1")
        self.capacity = capacity
        self._batches: deque[list[CanonicalMessage]] = deque()
        self._closed = False
        self._getters: deque[asyncio.Future[None]] = deque()
        self._putters: deque[asyncio.Future[None]] = deque()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"MemoryChannel(capacity={self.capacity}, batches={len(self)}, {state})"

    def __len__(self) -> int:
        return len(self._batches)

    @property
    def closed(self) -> bool:
        return self._closed

    async def _put(self, batch: list[CanonicalMessage]) -> None:
        loop = asyncio.get_running_loop()
        while True:
            if self._closed:
                raise _Closed
            if len(self._batches) < self.capacity:
                break
            waiter: asyncio.Future[None] = loop.create_future()
            self._putters.append(waiter)
            try:
                await waiter
            except BaseException:
                with suppress(ValueError):
                    self._putters.remove(waiter)
                if len(self._batches) < self.capacity:
                    _wake_one(self._putters)
                raise
        self._batches.append(batch)
        _wake_one(self._getters)

    async def _get(self) -> list[CanonicalMessage]:
        loop = asyncio.get_running_loop()
        while not self._batches:
            if self._closed:
                raise _Closed
            waiter: asyncio.Future[None] = loop.create_future()
            self._getters.append(waiter)
            try:
                await waiter
            except BaseException:
                with suppress(ValueError):
                    self._getters.remove(waiter)
                if self._batches:
                    _wake_one(self._getters)
                raise
        batch = self._batches.popleft()
        _wake_one(self._putters)
        return batch

    async def send_message(self, message: CanonicalMessage) -> None:
        """Put a single message into the channel as a batch of one."""
        await self.fill_messages([message])
        logger.debug("Message sent to memory channel, %d batches queued", len(self))

    async def fill_messages(self, messages: Iterable[CanonicalMessage]) -> None:
        """Put all ``messages`` into the channel as one batch."""
        try:
            await self._put(list(messages))
        except _Closed:
            raise NonRetryablePublisherError(
                "Memory channel was closed while filling messages"
            ) from None

    def close(self) -> None:
        """Close the channel; queued batches can still be received."""
        self._closed = True
        _wake_all(self._getters)
        _wake_all(self._putters)

    def drain_messages(self) -> list[CanonicalMessage]:
        """Remove every queued batch and return their messages in order."""
        messages: list[CanonicalMessage] = []
        while self._batches:
            messages.extend(self._batches.popleft())
            _wake_one(self._putters)
        return messages

    def is_empty(self) -> bool:
        return not self._batches


_channels: dict[str, MemoryChannel] = {}
_channels_lock = threading.Lock()


def get_or_create_channel(config: MemoryConfig) -> MemoryChannel:
    """Return the channel for ``config.topic``, creating it if needed."""
    with _channels_lock:
        channel = _channels.get(config.topic)
        if channel is None:
            logger.info("Creating new runtime memory channel for topic %s", config.topic)
            channel = MemoryChannel(
                DEFAULT_CAPACITY if config.capacity is None else config.capacity
            )
            _channels[config.topic] = channel
        return channel


class MemoryPublisher(MessagePublisher):
    """Sends message batches to an in-memory topic."""

    def __init__(self, config: MemoryConfig) -> None:
        self.topic = config.topic
        self._channel = get_or_create_channel(config)

    @classmethod
    def local(cls, topic: str, capacity: Optional[int] = None) -> MemoryPublisher:
        return cls(MemoryConfig(topic, capacity))

    def channel(self) -> MemoryChannel:
        return get_or_create_channel(MemoryConfig(self.topic))

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        try:
            await self._channel._put(list(messages))
        except _Closed:
            raise NonRetryablePublisherError(
                f"Failed to send to memory channel {self.topic!r}: channel closed"
            ) from None
        logger.debug(
            "Batch sent to memory channel %s, %d batches queued",
            self.topic,
            len(self._channel),
        )
        return SentBatch()


class MemoryConsumer(MessageConsumer):
    """Receives messages from an in-memory topic, splitting batches as asked."""

    def __init__(self, config: MemoryConfig) -> None:
        self.topic = config.topic
        self._channel = get_or_create_channel(config)
        self._buffer: list[CanonicalMessage] = []

    @classmethod
    def local(cls, topic: str, capacity: Optional[int] = None) -> MemoryConsumer:
        return cls(MemoryConfig(topic, capacity))

    def channel(self) -> MemoryChannel:
        return get_or_create_channel(MemoryConfig(self.topic))

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        if not self._buffer:
            try:
                self._buffer = await self._channel._get()
            except _Closed:
                raise ConsumerError("Memory channel closed.") from None
        count = max(0, min(len(self._buffer), max_messages))
        messages, self._buffer = self._buffer[:count], self._buffer[count:]
        return ReceivedBatch(messages)