import copy
import time
from types import SimpleNamespace

import pytest
from bson.binary import Binary
from pymongo.errors import PyMongoError

from mqbridge.message import CanonicalMessage
from mqbridge.mongodb import (
    MongoDbConsumer,
    MongoDbPublisher,
    available_message_filter,
    document_to_message,
    message_to_document,
)
from mqbridge.publishing import ConsumerError, RetryablePublisherError


def _matches(doc, flt):
    for key, cond in flt.items():
        if key == "$or":
            if not any(_matches(doc, c) for c in cond):
                return False
            continue
        present = key in doc
        value = doc.get(key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$exists" and present != arg:
                    return False
                if op == "$lt" and (value is None or not value < arg):
                    return False
                if op == "$in" and value not in arg:
                    return False
        elif value != cond:
            return False
    return True


def _project(doc, projection):
    if not projection:
        return copy.deepcopy(doc)
    return {k: copy.deepcopy(v) for k, v in doc.items() if k in projection or k == "_id"}


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction):
        self._docs = sorted(self._docs, key=lambda d: d[key], reverse=direction < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    def __iter__(self):
        return iter(self._docs)


class FakeCollection:
    def __init__(self):
        self.docs = []
        self.fail_insert = False

    def insert_one(self, doc):
        if self.fail_insert:
            raise PyMongoError("insert refused")
        self.docs.append(copy.deepcopy(doc))

    def find(self, flt, projection=None):
        return _Cursor([_project(d, projection) for d in self.docs if _matches(d, flt)])

    def update_many(self, flt, update):
        count = 0
        for d in self.docs:
            if _matches(d, flt):
                d.update(update["$set"])
                count += 1
        return SimpleNamespace(modified_count=count)

    def find_one_and_update(self, flt, update, projection=None, sort=None):
        candidates = sorted((d for d in self.docs if _matches(d, flt)), key=lambda d: d["_id"])
        if not candidates:
            return None
        doc = candidates[0]
        before = _project(doc, projection)
        doc.update(update["$set"])
        return before

    def delete_one(self, flt):
        for d in self.docs:
            if _matches(d, flt):
                self.docs.remove(d)
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    def delete_many(self, flt):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, flt)]
        return SimpleNamespace(deleted_count=before - len(self.docs))


class FakeStream:
    def __init__(self, events):
        self._events = list(events)

    def next(self):
        if not self._events:
            raise StopIteration
        return self._events.pop(0)


def test_message_to_document_layout():
    msg = CanonicalMessage(b"payload", 42, {"k": "v"})
    doc = message_to_document(msg)
    assert doc["_id"].subtype == 4
    assert bytes(doc["_id"]) == (42).to_bytes(16, "big")
    assert bytes(doc["payload"]) == b"payload"
    assert doc["metadata"] == {"k": "v"}
    assert doc["locked_until"] is None


def test_document_round_trip():
    msg = CanonicalMessage.from_str("hello")
    msg = msg.with_metadata({"a": "b"})
    back = document_to_message(message_to_document(msg))
    assert back == msg


def test_document_without_metadata():
    msg = CanonicalMessage(b"x", 7)
    doc = message_to_document(msg)
    del doc["metadata"]
    assert document_to_message(doc).metadata == {}


def test_document_missing_id_raises():
    with pytest.raises(ValueError):
        document_to_message({"payload": b"x"})


def test_document_bad_metadata_raises():
    doc = message_to_document(CanonicalMessage(b"x", 1))
    doc["metadata"] = {"n": 5}
    with pytest.raises(ValueError):
        document_to_message(doc)


def test_document_non_uuid_id_raises():
    with pytest.raises(ValueError):
        document_to_message({"_id": Binary(b"abc", 0), "payload": b"x"})


def test_available_message_filter():
    assert available_message_filter(100) == {
        "$or": [
            {"locked_until": {"$exists": False}},
            {"locked_until": None},
            {"locked_until": {"$lt": 100}},
        ]
    }


@pytest.mark.asyncio
async def test_publisher_inserts_document():
    collection = FakeCollection()
    publisher = MongoDbPublisher(collection)
    msg = CanonicalMessage(b"data", 9)
    sent = await publisher.send(msg)
    assert sent.is_ack
    assert len(collection.docs) == 1
    assert document_to_message(collection.docs[0]) == msg


@pytest.mark.asyncio
async def test_publisher_error_is_retryable():
    collection = FakeCollection()
    collection.fail_insert = True
    publisher = MongoDbPublisher(collection)
    with pytest.raises(RetryablePublisherError):
        await publisher.send(CanonicalMessage(b"data"))


@pytest.mark.asyncio
async def test_batch_receive_and_commit_deletes():
    collection = FakeCollection()
    publisher = MongoDbPublisher(collection)
    messages = [CanonicalMessage.from_str(f"m{i}") for i in range(3)]
    result = await publisher.send_batch(messages)
    assert result.is_ack

    consumer = MongoDbConsumer(collection, polling_interval=0.001)
    batch = await consumer.receive_batch(10)
    assert [m.payload for m in batch.messages] == [m.payload for m in messages]
    assert all(d["locked_until"] > time.time() for d in collection.docs)
    await batch.commit(None)
    assert collection.docs == []


@pytest.mark.asyncio
async def test_batch_respects_limit():
    collection = FakeCollection()
    publisher = MongoDbPublisher(collection)
    messages = [CanonicalMessage.from_str(f"m{i}") for i in range(3)]
    await publisher.send_batch(messages)
    consumer = MongoDbConsumer(collection, polling_interval=0.001)
    batch = await consumer.receive_batch(2)
    assert [m.message_id for m in batch.messages] == [m.message_id for m in messages[:2]]
    unlocked = [d for d in collection.docs if d["locked_until"] is None]
    assert len(unlocked) == 1


@pytest.mark.asyncio
async def test_single_receive_locks_and_commit_deletes():
    collection = FakeCollection()
    publisher = MongoDbPublisher(collection)
    first = CanonicalMessage.from_str("first")
    second = CanonicalMessage.from_str("second")
    await publisher.send(first)
    await publisher.send(second)

    consumer = MongoDbConsumer(collection, polling_interval=0.001)
    received = await consumer.receive()
    assert received.message == first
    again = await consumer.receive()
    assert again.message == second
    await received.commit(None)
    assert [document_to_message(d).message_id for d in collection.docs] == [
        second.message_id
    ]


@pytest.mark.asyncio
async def test_change_stream_path():
    collection = FakeCollection()
    publisher = MongoDbPublisher(collection)
    msg = CanonicalMessage.from_str("streamed")
    await publisher.send(msg)
    doc_id = collection.docs[0]["_id"]
    stream = FakeStream([{"operationType": "insert"}, {"fullDocument": {"_id": doc_id}}])
    consumer = MongoDbConsumer(collection, change_stream=stream)
    batch = await consumer.receive_batch(5)
    assert batch.messages == [msg]
    await batch.commit(None)
    assert collection.docs == []
    with pytest.raises(ConsumerError):
        await consumer.receive()


@pytest.mark.asyncio
async def test_bad_document_raises_consumer_error():
    collection = FakeCollection()
    doc = message_to_document(CanonicalMessage(b"x", 3))
    doc["metadata"] = {"n": 1}
    collection.docs.append(doc)
    consumer = MongoDbConsumer(collection, polling_interval=0.001)
    with pytest.raises(ConsumerError):
        await consumer.receive_batch(1)