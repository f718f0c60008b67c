import asyncio
import socket
import uuid

import aiohttp
import pytest

from mqbridge.config import HttpConfig
from mqbridge.http import HttpConsumer, HttpPublisher
from mqbridge.memory import MemoryPublisher
from mqbridge.message import CanonicalMessage
from mqbridge.publishing import (
    ConsumerError,
    MessagePublisher,
    RetryablePublisherError,
    Sent,
)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def local_address() -> str:
    return f"127.0.0.1:{free_port()}"


class StaticReplyPublisher(MessagePublisher):
    def __init__(self, reply: CanonicalMessage) -> None:
        self.reply = reply
        self.seen = []

    async def send(self, message):
        self.seen.append(message)
        return Sent(self.reply)


class FailingPublisher(MessagePublisher):
    async def send(self, message):
        raise RuntimeError("boom")


async def responder(consumer, make_reply):
    while True:
        received = await consumer.receive()
        await received.commit(make_reply(received.message))


@pytest.mark.asyncio
async def test_http_consumer_publisher_integration():
    addr = local_address()
    consumer = await HttpConsumer.start(HttpConfig(url=addr))
    publisher = HttpPublisher(HttpConfig(url=f"http://{addr}"))
    try:

        async def receive_one():
            received = await consumer.receive()
            await received.commit(CanonicalMessage(b"response_payload"))
            return received.message

        task = asyncio.create_task(receive_one())
        msg = CanonicalMessage(b"test_payload")
        sent = await publisher.send(msg)
        received_msg = await task

        assert received_msg.payload == b"test_payload"
        assert sent.response is not None
        assert sent.response.payload == b"response_payload"
        assert sent.response.message_id == msg.message_id
        assert sent.response.metadata["content-type"] == "application/json"
    finally:
        await publisher.close()
        await consumer.close()


@pytest.mark.asyncio
async def test_http_request_reply_with_sink():
    addr = local_address()
    consumer = await HttpConsumer.start(HttpConfig(url=addr))
    topic = f"reply_sink_{uuid.uuid4().hex}"
    sink = MemoryPublisher.local(topic, 10)
    publisher = HttpPublisher(HttpConfig(url=f"http://{addr}"), response_out=sink)
    task = asyncio.create_task(
        responder(consumer, lambda _m: CanonicalMessage(b"server_reply"))
    )
    try:
        msg = CanonicalMessage(b"request")
        sent = await publisher.send(msg)
        assert sent.is_ack
        responses = sink.channel().drain_messages()
        assert len(responses) == 1
        assert responses[0].payload == b"server_reply"
        assert responses[0].message_id == msg.message_id
    finally:
        task.cancel()
        await publisher.close()
        await consumer.close()


@pytest.mark.asyncio
async def test_http_server_shutdown_on_close():
    addr = local_address()
    host, port = addr.split(":")
    consumer = await HttpConsumer.start(HttpConfig(url=addr))

    async def post_once():
        async with aiohttp.ClientSession() as session:
            async with session.post(f"http://{addr}/", data=b"alive") as response:
                return response.status

    request = asyncio.create_task(post_once())
    batch = await consumer.receive_batch(1)
    assert [m.payload for m in batch.messages] == [b"alive"]
    await batch.commit(None)
    assert await request == 202

    await consumer.close()
    await asyncio.sleep(0.1)
    with pytest.raises(OSError):
        await asyncio.open_connection(host, int(port))


@pytest.mark.asyncio
async def test_http_response_sink_on_consumer_builds_reply():
    addr = local_address()
    reply = CanonicalMessage(
        b"This is a static response", metadata={"content-type": "text/plain"}
    )
    sink = StaticReplyPublisher(reply)
    consumer = await HttpConsumer.start(HttpConfig(url=addr), sink)
    task = asyncio.create_task(responder(consumer, lambda _m: None))
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"http://{addr}/", data=b"ping") as response:
                status = response.status
                content_type = response.headers["Content-Type"]
                body = await response.read()
        assert status == 200
        assert content_type.startswith("text/plain")
        assert body == b"This is a static response"
        assert [m.payload for m in sink.seen] == [b"ping"]
    finally:
        task.cancel()
        await consumer.close()


@pytest.mark.asyncio
async def test_commit_without_response_gives_accepted():
    addr = local_address()
    consumer = await HttpConsumer.start(HttpConfig(url=addr))
    task = asyncio.create_task(responder(consumer, lambda _m: None))
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"http://{addr}/", data=b"x") as response:
                status = response.status
                text = await response.text()
        assert status == 202
        assert text == "Message processed"
    finally:
        task.cancel()
        await consumer.close()


@pytest.mark.asyncio
async def test_metadata_travels_as_headers():
    addr = local_address()
    consumer = await HttpConsumer.start(HttpConfig(url=addr))
    publisher = HttpPublisher(HttpConfig(url=f"http://{addr}"))
    try:

        async def receive_one():
            received = await consumer.receive()
            await received.commit(None)
            return received.message

        task = asyncio.create_task(receive_one())
        msg = CanonicalMessage(b"body", metadata={"X-Trace": "abc123"})
        sent = await publisher.send(msg)
        received_msg = await task
        assert received_msg.metadata["x-trace"] == "abc123"
        assert sent.response is not None
        assert sent.response.payload == b"Message processed"
    finally:
        await publisher.close()
        await consumer.close()


@pytest.mark.asyncio
async def test_failing_response_sink_makes_publisher_raise():
    addr = local_address()
    consumer = await HttpConsumer.start(HttpConfig(url=addr), FailingPublisher())
    publisher = HttpPublisher(HttpConfig(url=f"http://{addr}"))
    task = asyncio.create_task(responder(consumer, lambda _m: None))
    try:
        with pytest.raises(RetryablePublisherError, match="500"):
            await publisher.send(CanonicalMessage(b"x"))
    finally:
        task.cancel()
        await publisher.close()
        await consumer.close()


@pytest.mark.asyncio
async def test_uncommitted_request_times_out():
    addr = local_address()
    consumer = await HttpConsumer.start(HttpConfig(url=addr))
    consumer.request_timeout = 0.2
    publisher = HttpPublisher(HttpConfig(url=f"http://{addr}"))
    try:
        with pytest.raises(RetryablePublisherError, match="504"):
            await publisher.send(CanonicalMessage(b"nobody listens"))
        batch = await consumer.receive_batch(1)
        assert batch.messages[0].payload == b"nobody listens"
    finally:
        await publisher.close()
        await consumer.close()


@pytest.mark.asyncio
async def test_send_batch_collects_responses():
    addr = local_address()
    consumer = await HttpConsumer.start(HttpConfig(url=addr))
    publisher = HttpPublisher(HttpConfig(url=f"http://{addr}"))
    task = asyncio.create_task(
        responder(consumer, lambda m: CanonicalMessage(b"echo:" + m.payload))
    )
    try:
        batch = await publisher.send_batch(
            [CanonicalMessage(b"one"), CanonicalMessage(b"two")]
        )
        assert batch.failed == []
        assert [m.payload for m in batch.responses] == [b"echo:one", b"echo:two"]
    finally:
        task.cancel()
        await publisher.close()
        await consumer.close()


@pytest.mark.asyncio
async def test_with_url_targets_other_server():
    addr = local_address()
    consumer = await HttpConsumer.start(HttpConfig(url=addr))
    base = HttpPublisher(HttpConfig(url="http://127.0.0.1:1"))
    publisher = base.with_url(f"http://{addr}")
    task = asyncio.create_task(
        responder(consumer, lambda _m: CanonicalMessage(b"redirected"))
    )
    try:
        assert base.url == "http://127.0.0.1:1"
        sent = await publisher.send(CanonicalMessage(b"x"))
        assert sent.response.payload == b"redirected"
    finally:
        task.cancel()
        await publisher.close()
        await consumer.close()


@pytest.mark.asyncio
async def test_missing_url_is_rejected():
    with pytest.raises(ValueError, match="'url' is required"):
        await HttpConsumer.start(HttpConfig())


@pytest.mark.asyncio
async def test_invalid_listen_address_is_rejected():
    with pytest.raises(ValueError, match="Invalid listen address"):
        await HttpConsumer.start(HttpConfig(url="localhost-no-port"))


@pytest.mark.asyncio
async def test_receive_after_close_raises():
    consumer = await HttpConsumer.start(HttpConfig(url=local_address()))
    await consumer.close()
    with pytest.raises(ConsumerError, match="closed"):
        await consumer.receive_batch(1)


@pytest.mark.asyncio
async def test_close_wakes_waiting_receiver():
    consumer = await HttpConsumer.start(HttpConfig(url=local_address()))
    waiter = asyncio.create_task(consumer.receive_batch(1))
    await asyncio.sleep(0.05)
    assert not waiter.done()
    await consumer.close()
    done, _pending = await asyncio.wait({waiter}, timeout=2)
    assert waiter in done
    assert isinstance(waiter.exception(), ConsumerError)


@pytest.mark.asyncio
async def test_publisher_without_url_fails():
    publisher = HttpPublisher(HttpConfig())
    try:
        with pytest.raises(RetryablePublisherError, match="Failed to send HTTP request"):
            await publisher.send(CanonicalMessage(b"x"))
    finally:
        await publisher.close()