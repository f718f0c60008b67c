"""Publisher and consumer interfaces, outcomes, and publisher middlewares."""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from mqbridge.message import CanonicalMessage

logger = logging.getLogger(__name__)

Commit = Callable[[Optional[CanonicalMessage]], Awaitable[None]]
BatchCommit = Callable[[Optional[list[CanonicalMessage]]], Awaitable[None]]


async def _noop_commit(_response: Any = None) -> None:
    return None


@dataclass(frozen=True)
class Sent:
    """Outcome of sending one message: an acknowledgement or a response message."""

    response: Optional[CanonicalMessage] = None

    @property
    def is_ack(self) -> bool:
        return self.response is None


@dataclass(frozen=True)
class SentBatch:
    """Outcome of sending a batch: responses gathered and messages that failed."""

    responses: Optional[list[CanonicalMessage]] = None
    failed: list[CanonicalMessage] = field(default_factory=list)

    @property
    def is_ack(self) -> bool:
        return self.responses is None and not self.failed


@dataclass(frozen=True)
class Handled:
    """Outcome of a command handler: acknowledge, or publish a message onward."""

    publish: Optional[CanonicalMessage] = None

    @property
    def is_ack(self) -> bool:
        return self.publish is None


@dataclass
class Received:
    """A received message and the callback that acknowledges it."""

    message: CanonicalMessage
    commit: Commit = _noop_commit


@dataclass
class ReceivedBatch:
    """Received messages and the callback that acknowledges all of them."""

    messages: list[CanonicalMessage]
    commit: BatchCommit = _noop_commit


class HandlerError(Exception):
    """A command handler failed."""


class RetryableHandlerError(HandlerError):
    """A handler failure that may succeed when retried."""


class NonRetryableHandlerError(HandlerError):
    """A handler failure that will not succeed when retried."""


class PublisherError(Exception):
    """A publisher failed to deliver."""


class RetryablePublisherError(PublisherError):
    """A delivery failure that may succeed when retried."""


class NonRetryablePublisherError(PublisherError):
    """A delivery failure that will not succeed when retried."""


class ConsumerError(Exception):
    """A consumer failed to receive."""


class EndOfStream(ConsumerError):
    """The source has no more messages."""


async def send_batch_helper(
    publisher: MessagePublisher, messages: Iterable[CanonicalMessage]
) -> SentBatch:
    """Send messages one at a time, collecting responses and retryable failures."""
    responses: list[CanonicalMessage] = []
    failed: list[CanonicalMessage] = []
    for message in messages:
        try:
            sent = await publisher.send(message)
        except RetryablePublisherError as exc:
            logger.warning("Failed to send message %#x: %s", message.message_id, exc)
            failed.append(message)
            continue
        if sent.response is not None:
            responses.append(sent.response)
    if not responses and not failed:
        return SentBatch()
    return SentBatch(responses or None, failed)


class MessagePublisher:
    """Base for sinks; a subclass overrides ``send``, ``send_batch`` or both."""

    def __new__(cls, *args: Any, **kwargs: Any) -> MessagePublisher:
        if cls is MessagePublisher:
            raise TypeError("MessagePublisher cannot be instantiated directly")
        return super().__new__(cls)

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if (
            cls.send is MessagePublisher.send
            and cls.send_batch is MessagePublisher.send_batch
        ):
            raise TypeError(f"{cls.__name__} must override send or send_batch")

    async def send(self, message: CanonicalMessage) -> Sent:
        """Send one message by way of ``send_batch``."""
        batch = await self.send_batch([message])
        if batch.failed:
            raise RetryablePublisherError(
                f"message {message.message_id:#x} was not delivered"
            )
        if batch.responses:
            return Sent(batch.responses[0])
        return Sent()

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        """Send messages by way of ``send``, one after another."""
        return await send_batch_helper(self, messages)

    async def flush(self) -> None:
        """Push out anything buffered; nothing to do by default."""
        return None


class MessageConsumer(abc.ABC):
    """Base for sources; a subclass implements ``receive_batch``."""

    @abc.abstractmethod
    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        """Wait for and return up to ``max_messages`` messages."""

    async def receive(self) -> Received:
        """Wait for and return a single message."""
        while True:
            batch = await self.receive_batch(1)
            if batch.messages:
                break
            await asyncio.sleep(0)
        batch_commit = batch.commit

        async def commit(response: Optional[CanonicalMessage] = None) -> None:
            await batch_commit(None if response is None else [response])

        return Received(batch.messages[0], commit)


class FanoutPublisher(MessagePublisher):
    """Sends every message to each of several publishers in turn."""

    def __init__(self, publishers: Iterable[MessagePublisher]) -> None:
        self.publishers = list(publishers)

    async def send(self, message: CanonicalMessage) -> Sent:
        for publisher in self.publishers:
            await publisher.send(
                dataclasses.replace(message, metadata=dict(message.metadata))
            )
        return Sent()

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        return await send_batch_helper(self, messages)


Handler = Callable[[CanonicalMessage], Union[Handled, Awaitable[Handled]]]


class CommandHandlerPublisher(MessagePublisher):
    """Passes messages to a handler and publishes whatever it returns to ``inner``."""

    def __init__(self, inner: MessagePublisher, handler: Any) -> None:
        self.inner = inner
        self._handler: Handler = getattr(handler, "handle", handler)

    async def send(self, message: CanonicalMessage) -> Sent:
        try:
            outcome = self._handler(message)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except RetryableHandlerError as exc:
            raise RetryablePublisherError(str(exc)) from exc
        except HandlerError as exc:
            raise NonRetryablePublisherError(str(exc)) from exc
        if outcome.publish is not None:
            return await self.inner.send(outcome.publish)
        return Sent()

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        return await send_batch_helper(self, messages)

    async def flush(self) -> None:
        await self.inner.flush()