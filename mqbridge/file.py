"""Endpoints that append messages to a file and read them back, one per line."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Union

from mqbridge.message import CanonicalMessage
from mqbridge.publishing import (
    ConsumerError,
    EndOfStream,
    MessageConsumer,
    MessagePublisher,
    NonRetryablePublisherError,
    ReceivedBatch,
    SentBatch,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _encode(message: CanonicalMessage) -> bytes:
    return json.dumps(
        message.to_dict(), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


class FilePublisher(MessagePublisher):
    """Appends each message to a file as one line of JSON."""

    def __init__(self, path: PathLike) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "ab")
        self._lock = asyncio.Lock()
        logger.info("File sink opened for appending: %s", self.path)

    def __enter__(self) -> FilePublisher:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        if not messages:
            return SentBatch()
        failed: list[CanonicalMessage] = []
        async with self._lock:
            for message in messages:
                try:
                    line = _encode(message)
                except (TypeError, ValueError) as exc:
                    logger.error("Failed to serialize message for file sink: %s", exc)
                    failed.append(message)
                    continue
                try:
                    self._file.write(line + b"\n")
                except OSError as exc:
                    logger.error("Failed to write message to file: %s", exc)
                    failed.append(message)
            try:
                self._file.flush()
            except OSError as exc:
                raise NonRetryablePublisherError(
                    f"Failed to flush file writer: {exc}"
                ) from exc
        return SentBatch(None, failed) if failed else SentBatch()

    async def flush(self) -> None:
        async with self._lock:
            self._file.flush()

    def close(self) -> None:
        """Flush and close the underlying file."""
        if not self._file.closed:
            self._file.close()


class FileConsumer(MessageConsumer):
    """Reads messages from a file written by :class:`FilePublisher`, one per call."""

    def __init__(self, path: PathLike) -> None:
        self.path = Path(path)
        self._file = open(self.path, "rb")
        logger.info("File source opened for reading: %s", self.path)

    def __enter__(self) -> FileConsumer:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        try:
            line = self._file.readline()
        except OSError as exc:
            raise ConsumerError(f"Failed to read from file source: {exc}") from exc
        if not line:
            logger.debug("End of file reached for %s", self.path)
            raise EndOfStream(f"end of file {self.path}")
        try:
            message = CanonicalMessage.from_dict(json.loads(line))
        except ValueError as exc:
            text = line.decode("utf-8", errors="replace")
            raise ConsumerError(
                f"Failed to deserialize message from file: {text}"
            ) from exc
        return ReceivedBatch([message])

    def close(self) -> None:
        """Close the underlying file."""
        if not self._file.closed:
            self._file.close()