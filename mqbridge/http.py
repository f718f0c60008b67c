"""HTTP endpoints: a server that turns POST requests into messages, and a client sink."""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import ipaddress
import logging
import ssl
from typing import Any, Optional

import aiohttp
from aiohttp import web

from mqbridge.config import HttpConfig
from mqbridge.message import CanonicalMessage
from mqbridge.publishing import (
    Commit,
    ConsumerError,
    MessageConsumer,
    MessagePublisher,
    ReceivedBatch,
    RetryablePublisherError,
    Sent,
    SentBatch,
    send_batch_helper,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0
QUEUE_CAPACITY = 100
DEFAULT_CONTENT_TYPE = "application/json"

_PIPELINE_CLOSED = object()


def _parse_listen_address(address: str) -> tuple[str, int]:
    host, sep, port_text = address.rpartition(":")
    if not sep or not host or not port_text.isdigit():
        raise ValueError(f"Invalid listen address: {address}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    port = int(port_text)
    if port > 65535:
        raise ValueError(f"Invalid listen address: {address}")
    try:
        ipaddress.ip_address(host)
    except ValueError:
        raise ValueError(f"Invalid listen address: {address}") from None
    return host, port


def _header_metadata(headers: Any) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items() if value.isascii()}


def _make_response(message: Optional[CanonicalMessage]) -> web.Response:
    if message is None:
        return web.Response(status=202, text="Message processed")
    content_type = message.metadata.get("content-type", DEFAULT_CONTENT_TYPE)
    return web.Response(
        status=200, body=message.payload, headers={"Content-Type": content_type}
    )


class HttpConsumer(MessageConsumer):
    """Listens for POST requests on ``/`` and hands each body on as a message.

    The HTTP reply waits until the message is committed: a committed response
    message becomes the reply body, otherwise the reply is 202.
    """

    request_timeout: float = REQUEST_TIMEOUT

    def __init__(self, response_sink: Optional[MessagePublisher] = None) -> None:
        self._response_sink = response_sink
        self._queue: asyncio.Queue[tuple[CanonicalMessage, Commit]] = asyncio.Queue(
            QUEUE_CAPACITY
        )
        self._closed = False
        self._closed_event = asyncio.Event()
        self._pending: set[asyncio.Future[Any]] = set()
        self._runner: Optional[web.AppRunner] = None

    @classmethod
    async def start(
        cls, config: HttpConfig, response_sink: Optional[MessagePublisher] = None
    ) -> HttpConsumer:
        """Start serving on ``config.url`` (``host:port``) and return the consumer."""
        if not config.url:
            raise ValueError("'url' is required for http source connection")
        host, port = _parse_listen_address(config.url)
        ssl_context = None
        if config.tls.is_tls_server_configured():
            ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
            ssl_context.load_cert_chain(config.tls.cert_file, config.tls.key_file)

        consumer = cls(response_sink)
        app = web.Application()
        app.router.add_post("/", consumer._handle)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host, port, ssl_context=ssl_context)
        try:
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise
        consumer._runner = runner
        scheme = "HTTPS" if ssl_context else "HTTP"
        logger.info("Starting %s source on %s:%d", scheme, host, port)
        return consumer

    @property
    def addresses(self) -> list[Any]:
        """The socket addresses the server listens on."""
        return list(self._runner.addresses) if self._runner else []

    async def __aenter__(self) -> HttpConsumer:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        message = CanonicalMessage(body, metadata=_header_metadata(request.headers))
        sink_message = None
        if self._response_sink is not None:
            sink_message = dataclasses.replace(message, metadata=dict(message.metadata))

        if self._closed:
            return web.Response(status=500, text="Failed to send request to bridge")

        reply: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending.add(reply)

        async def commit(response: Optional[CanonicalMessage] = None) -> None:
            if not reply.done():
                reply.set_result(response)

        try:
            await self._queue.put((message, commit))
            try:
                return await asyncio.wait_for(
                    self._respond(reply, sink_message), self.request_timeout
                )
            except asyncio.TimeoutError:
                return web.Response(status=504, text="Request timed out")
        finally:
            self._pending.discard(reply)

    async def _respond(
        self, reply: asyncio.Future[Any], sink_message: Optional[CanonicalMessage]
    ) -> web.Response:
        pipeline_response = await reply
        if pipeline_response is _PIPELINE_CLOSED:
            return web.Response(status=500, text="Pipeline closed")
        if self._response_sink is not None and sink_message is not None:
            try:
                sent = await self._response_sink.send(sink_message)
            except Exception as exc:
                return web.Response(status=500, text=f"Response sink error: {exc}")
            return _make_response(sent.response)
        return _make_response(pipeline_response)

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        if self._closed and self._queue.empty():
            raise ConsumerError("HTTP source channel closed")
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if not getter.done() or getter.cancelled():
            raise ConsumerError("HTTP source channel closed")
        message, commit = getter.result()

        async def batch_commit(
            responses: Optional[list[CanonicalMessage]] = None,
        ) -> None:
            await commit(responses[0] if responses else None)

        return ReceivedBatch([message], batch_commit)

    async def close(self) -> None:
        """Stop the server; requests still waiting are answered with an error."""
        if self._closed:
            return
        self._closed = True
        self._closed_event.set()
        for reply in list(self._pending):
            if not reply.done():
                reply.set_result(_PIPELINE_CLOSED)
        if self._runner is not None:
            await self._runner.cleanup()


class _SharedClient:
    """One lazily created client session, shared between publisher copies."""

    def __init__(self, ssl_context: Optional[ssl.SSLContext]) -> None:
        self._ssl_context = ssl_context
        self._session: Optional[aiohttp.ClientSession] = None

    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = (
                aiohttp.TCPConnector(ssl=self._ssl_context)
                if self._ssl_context is not None
                else None
            )
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class HttpPublisher(MessagePublisher):
    """POSTs each message to a URL; the reply becomes a response message."""

    def __init__(
        self, config: HttpConfig, response_out: Optional[MessagePublisher] = None
    ) -> None:
        self.url = config.url or ""
        self.response_out = response_out
        ssl_context = None
        if config.tls.is_mtls_client_configured():
            ssl_context = ssl.create_default_context()
            ssl_context.load_cert_chain(config.tls.cert_file, config.tls.key_file)
        self._client = _SharedClient(ssl_context)

    def with_url(self, url: str) -> HttpPublisher:
        """Return a publisher that shares this one's client but posts to ``url``."""
        clone = copy.copy(self)
        clone.url = url
        return clone

    async def __aenter__(self) -> HttpPublisher:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def send(self, message: CanonicalMessage) -> Sent:
        session = self._client.session()
        try:
            async with session.post(
                self.url, data=message.payload, headers=dict(message.metadata)
            ) as response:
                status = response.status
                reason = response.reason or ""
                response_metadata = _header_metadata(response.headers)
                body = await response.read()
        except aiohttp.ClientError as exc:
            raise RetryablePublisherError(
                f"Failed to send HTTP request to {self.url}: {exc}"
            ) from exc

        if not 200 <= status < 300:
            text = body.decode("utf-8", errors="replace")
            raise RetryablePublisherError(
                f"HTTP sink request failed with status {status} {reason}: {text!r}"
            )

        response_message = CanonicalMessage(
            body, message.message_id, response_metadata
        )
        if self.response_out is not None:
            await self.response_out.send(response_message)
            return Sent()
        return Sent(response_message)

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        return await send_batch_helper(self, messages)

    async def close(self) -> None:
        """Close the client session shared by this publisher and its copies."""
        await self._client.close()