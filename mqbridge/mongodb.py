"""MongoDB endpoints: a collection used as a queue with lock-and-delete semantics."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping
from typing import Any, Callable, Optional

import pymongo
from bson.binary import Binary
from pymongo.errors import OperationFailure, PyMongoError

from mqbridge.config import MongoDbConfig
from mqbridge.message import CanonicalMessage
from mqbridge.publishing import (
    ConsumerError,
    MessageConsumer,
    MessagePublisher,
    Received,
    ReceivedBatch,
    RetryablePublisherError,
    Sent,
    SentBatch,
    send_batch_helper,
)

logger = logging.getLogger(__name__)

UUID_SUBTYPE = 4
GENERIC_SUBTYPE = 0
LOCK_DURATION_SECS = 60
DEFAULT_POLLING_INTERVAL_MS = 100
CHANGE_STREAM_UNSUPPORTED = 40573
CLAIM_ATTEMPTS = 3
CLAIM_RETRY_DELAY = 0.01

_MESSAGE_PROJECTION = {"_id": 1, "payload": 1, "metadata": 1}
_END = object()


async def _run(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await asyncio.to_thread(func, *args, **kwargs)


def message_to_document(message: CanonicalMessage) -> dict[str, Any]:
    """Build the stored document: UUID id, binary payload, metadata and no lock."""
    return {
        "_id": Binary(message.message_id.to_bytes(16, "big"), UUID_SUBTYPE),
        "payload": Binary(message.payload, GENERIC_SUBTYPE),
        "metadata": dict(message.metadata),
        "locked_until": None,
    }


def _id_to_int(raw: Any) -> int:
    if isinstance(raw, uuid.UUID):
        return raw.int
    if isinstance(raw, Binary) and raw.subtype == UUID_SUBTYPE and len(raw) == 16:
        return int.from_bytes(bytes(raw), "big")
    raise ValueError(f"document _id is not a UUID: {raw!r}")


def _is_uuid_id(raw: Any) -> bool:
    try:
        _id_to_int(raw)
    except ValueError:
        return False
    return True


def document_to_message(document: Mapping[str, Any]) -> CanonicalMessage:
    """Turn a stored document back into a message."""
    if "_id" not in document:
        raise ValueError("Document missing _id")
    message_id = _id_to_int(document["_id"])
    payload = document.get("payload")
    if not isinstance(payload, (bytes, bytearray)):
        raise ValueError("document payload is not binary")
    metadata = document.get("metadata") or {}
    if not isinstance(metadata, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()
    ):
        raise ValueError("Failed to deserialize metadata from BSON document")
    return CanonicalMessage(bytes(payload), message_id, dict(metadata))


def available_message_filter(now: int) -> dict[str, Any]:
    """Filter for documents that are not locked, or whose lock has expired."""
    return {
        "$or": [
            {"locked_until": {"$exists": False}},
            {"locked_until": None},
            {"locked_until": {"$lt": now}},
        ]
    }


class MongoDbPublisher(MessagePublisher):
    """Inserts each message as a document into a collection."""

    def __init__(self, collection: Any, client: Any = None) -> None:
        self._collection = collection
        self._client = client

    @classmethod
    async def connect(cls, config: MongoDbConfig, collection_name: str) -> MongoDbPublisher:
        """Connect to ``config.url`` and publish into ``collection_name``."""
        client: pymongo.MongoClient = pymongo.MongoClient(config.url)
        collection = client[config.database][collection_name]
        logger.info(
            "MongoDB publisher connected to %s.%s", config.database, collection_name
        )
        return cls(collection, client)

    async def send(self, message: CanonicalMessage) -> Sent:
        document = message_to_document(message)
        try:
            await _run(self._collection.insert_one, document)
        except PyMongoError as exc:
            raise RetryablePublisherError(
                f"Failed to insert document into MongoDB: {exc}"
            ) from exc
        return Sent()

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        return await send_batch_helper(self, messages)


def _next_event(stream: Any) -> Any:
    try:
        return stream.next()
    except StopIteration:
        return _END


class MongoDbConsumer(MessageConsumer):
    """Claims documents by setting a lock time and deletes them on commit."""

    def __init__(
        self,
        collection: Any,
        change_stream: Any = None,
        polling_interval: float = DEFAULT_POLLING_INTERVAL_MS / 1000,
        client: Any = None,
    ) -> None:
        self._collection = collection
        self._change_stream = change_stream
        self._stream_lock = asyncio.Lock()
        self.polling_interval = polling_interval
        self._client = client

    @classmethod
    async def connect(cls, config: MongoDbConfig, collection_name: str) -> MongoDbConsumer:
        """Connect, ensure the lock index, and watch inserts if the server allows."""
        client: pymongo.MongoClient = pymongo.MongoClient(config.url)
        await _run(client.list_database_names)
        collection = client[config.database][collection_name]
        logger.info("Ensuring 'locked_until' index exists on %s", collection_name)
        await _run(collection.create_index, [("locked_until", pymongo.ASCENDING)])

        pipeline = [{"$match": {"operationType": "insert"}}]
        try:
            change_stream = await _run(collection.watch, pipeline)
            logger.info("MongoDB is a replica set/sharded cluster. Using change stream.")
        except OperationFailure as exc:
            if exc.code != CHANGE_STREAM_UNSUPPORTED:
                raise
            logger.warning(
                "MongoDB is a single instance (ChangeStream support check failed). "
                "Falling back to polling for consumer."
            )
            change_stream = None

        interval_ms = (
            DEFAULT_POLLING_INTERVAL_MS
            if config.polling_interval_ms is None
            else config.polling_interval_ms
        )
        logger.info(
            "MongoDB consumer connected to %s.%s", config.database, collection_name
        )
        return cls(collection, change_stream, interval_ms / 1000, client)

    async def receive(self) -> Received:
        try:
            while True:
                if self._change_stream is not None:
                    claimed = await self._receive_from_stream()
                    if claimed is not None:
                        return claimed
                    continue
                claimed = await self._try_claim_document({})
                if claimed is not None:
                    return claimed
                await asyncio.sleep(self.polling_interval)
        except PyMongoError as exc:
            raise ConsumerError(f"MongoDB receive failed: {exc}") from exc

    async def _receive_from_stream(self) -> Optional[Received]:
        async with self._stream_lock:
            event = await _run(_next_event, self._change_stream)
        if event is _END:
            raise ConsumerError("MongoDB change stream ended unexpectedly")
        full_document = event.get("fullDocument") if isinstance(event, Mapping) else None
        if not full_document or "_id" not in full_document:
            return None
        id_val = full_document["_id"]
        for _ in range(CLAIM_ATTEMPTS):
            claimed = await self._try_claim_document({"_id": id_val})
            if claimed is not None:
                return claimed
            await asyncio.sleep(CLAIM_RETRY_DELAY)
        logger.warning(
            "Failed to claim document %r from change stream event after retries. "
            "Another consumer may have claimed it.",
            id_val,
        )
        return None

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        if self._change_stream is not None:
            received = await self.receive()
            single_commit = received.commit

            async def commit(responses: Optional[list[CanonicalMessage]] = None) -> None:
                await single_commit(responses[0] if responses else None)

            return ReceivedBatch([received.message], commit)

        while True:
            now = int(time.time())
            try:
                documents = await self._find_and_claim_documents(
                    max_messages, now, now + LOCK_DURATION_SECS
                )
            except PyMongoError as exc:
                raise ConsumerError(f"MongoDB receive failed: {exc}") from exc
            if documents:
                return self._process_claimed_documents(documents)
            await asyncio.sleep(self.polling_interval)

    async def _find_and_claim_documents(
        self, limit: int, now: int, locked_until: int
    ) -> list[Mapping[str, Any]]:
        if limit <= 0:
            return []
        base_filter = available_message_filter(now)

        def find_ids() -> list[Any]:
            cursor = (
                self._collection.find(base_filter, {"_id": 1})
                .sort("_id", pymongo.ASCENDING)
                .limit(limit)
            )
            return [doc["_id"] for doc in cursor if _is_uuid_id(doc.get("_id"))]

        ids = await _run(find_ids)
        if not ids:
            return []

        update_filter = {"_id": {"$in": ids}, **base_filter}
        update = {"$set": {"locked_until": locked_until}}
        result = await _run(self._collection.update_many, update_filter, update)
        if result.modified_count <= 0:
            return []

        def fetch() -> list[Mapping[str, Any]]:
            return list(self._collection.find({"_id": {"$in": ids}}, _MESSAGE_PROJECTION))

        return await _run(fetch)

    async def _try_claim_document(self, extra_filter: Mapping[str, Any]) -> Optional[Received]:
        now = int(time.time())
        query = {**available_message_filter(now), **extra_filter}
        update = {"$set": {"locked_until": now + LOCK_DURATION_SECS}}
        document = await _run(
            self._collection.find_one_and_update,
            query,
            update,
            projection=_MESSAGE_PROJECTION,
            sort=[("_id", pymongo.ASCENDING)],
        )
        if document is None:
            return None
        try:
            message = document_to_message(document)
        except ValueError as exc:
            raise ConsumerError(f"Failed to deserialize MongoDB document: {exc}") from exc
        id_val = document["_id"]
        collection = self._collection

        async def commit(response: Optional[CanonicalMessage] = None) -> None:
            try:
                result = await _run(collection.delete_one, {"_id": id_val})
            except PyMongoError as exc:
                logger.error("Failed to ack/delete MongoDB message %r: %s", id_val, exc)
                return
            if result.deleted_count == 1:
                logger.debug("MongoDB message %r acknowledged and deleted", id_val)
            else:
                logger.warning(
                    "Attempted to ack/delete MongoDB message %r, but it was not found",
                    id_val,
                )

        return Received(message, commit)

    def _process_claimed_documents(
        self, documents: list[Mapping[str, Any]]
    ) -> ReceivedBatch:
        messages: list[CanonicalMessage] = []
        ids: list[Any] = []
        for document in documents:
            try:
                messages.append(document_to_message(document))
            except ValueError as exc:
                raise ConsumerError(
                    f"Failed to deserialize MongoDB document: {exc}"
                ) from exc
            ids.append(document["_id"])
        collection = self._collection

        async def commit(responses: Optional[list[CanonicalMessage]] = None) -> None:
            if not ids:
                return
            try:
                await _run(collection.delete_many, {"_id": {"$in": ids}})
            except PyMongoError as exc:
                logger.error("Failed to bulk-ack/delete MongoDB messages: %s", exc)
                return
            logger.debug("%d MongoDB messages acknowledged and deleted", len(ids))

        return ReceivedBatch(messages, commit)