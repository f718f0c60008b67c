"""MQTT endpoints: a publisher and a subscribing consumer on top of paho-mqtt."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import ssl
from collections.abc import Callable
from typing import Any, Optional
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from mqbridge.config import MqttConfig
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

APP_NAME = "mqbridge"
CONNECT_TIMEOUT = 10.0
DEFAULT_QOS = 1
DEFAULT_KEEP_ALIVE = 20
DEFAULT_QUEUE_CAPACITY = 100
DEFAULT_PORT = 1883
DEFAULT_TLS_PORT = 8883
_TLS_SCHEMES = ("mqtts", "ssl")


def sanitize_for_client_id(text: str) -> str:
    """Replace every character that is not alphanumeric with a hyphen."""
    return "".join(ch if ch.isalnum() else "-" for ch in text)


def parse_url(url: str) -> tuple[str, int]:
    """Return ``(host, port)`` for a broker URL such as ``mqtt://host:1883``.

    ``localhost`` becomes ``127.0.0.1``; the port defaults to 8883 for the
    ``mqtts`` and ``ssl`` schemes and to 1883 otherwise.
    """
    parts = urlsplit(url)
    if not parts.scheme:
        raise ValueError(f"relative URL without a base: {url!r}")
    host = parts.hostname
    if not host:
        raise ValueError("No host in URL")
    port = parts.port
    if host == "localhost":
        host = "127.0.0.1"
    if port is None:
        port = DEFAULT_TLS_PORT if parts.scheme in _TLS_SCHEMES else DEFAULT_PORT
    return host, port


def parse_qos(qos: int) -> int:
    """Map a configured QoS level to 0, 1 or 2; anything else means 1."""
    return qos if qos in (0, 1, 2) else 1


def _new_client(client_id: str, clean_session: bool) -> mqtt.Client:
    api_version = getattr(mqtt, "CallbackAPIVersion", None)
    if api_version is not None:
        return mqtt.Client(
            api_version.VERSION2, client_id=client_id, clean_session=clean_session
        )
    return mqtt.Client(client_id=client_id, clean_session=clean_session)


def _tls_context(config: MqttConfig) -> ssl.SSLContext:
    tls = config.tls
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    if tls.ca_file:
        context.load_verify_locations(tls.ca_file)
    if tls.is_mtls_client_configured():
        context.load_cert_chain(tls.cert_file, tls.key_file)
    if tls.accept_invalid_certs:
        logger.warning(
            "MQTT TLS is configured to accept invalid certificates. This is insecure "
            "and should not be used in production."
        )
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class _Link:
    """A paho client running its network loop in a background thread."""

    def __init__(
        self,
        config: MqttConfig,
        bridge_id: str,
        role: str,
        subscription: Optional[tuple[str, int]] = None,
        on_payload: Optional[Callable[[str, bytes], None]] = None,
        on_halt: Optional[Callable[[], None]] = None,
    ) -> None:
        self.host, self.port = parse_url(config.url)
        self.role = role
        self._subscription = subscription
        self._on_payload = on_payload
        self._on_halt = on_halt
        self._keep_alive = (
            DEFAULT_KEEP_ALIVE
            if config.keep_alive_seconds is None
            else config.keep_alive_seconds
        )
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready: Optional[asyncio.Future[None]] = None
        self._closed = False

        client_id = sanitize_for_client_id(f"{APP_NAME}-{bridge_id}")
        client = _new_client(client_id, config.clean_session)
        if config.username is not None and config.password is not None:
            client.username_pw_set(config.username, config.password)
        if config.tls.required:
            client.tls_set_context(_tls_context(config))
            if config.tls.accept_invalid_certs:
                client.tls_insecure_set(True)
        client.reconnect_delay_set(1, 1)
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        self.client = client
        logger.info("MQTT client created for %s. Eventloop will connect.", config.url)

    async def open(self, timeout: float = CONNECT_TIMEOUT) -> None:
        """Connect and wait until the broker accepted us (and we subscribed)."""
        self.loop = asyncio.get_running_loop()
        self._ready = self.loop.create_future()
        try:
            self.client.connect_async(self.host, self.port, self._keep_alive)
            self.client.loop_start()
            await asyncio.wait_for(self._ready, timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TimeoutError(
                f"MQTT {self.role} did not connect within {timeout} seconds"
            ) from None
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        """Disconnect and stop the background network loop."""
        if self._closed:
            return
        self._closed = True
        self.client.disconnect()
        await asyncio.to_thread(self.client.loop_stop)
        logger.debug("MQTT %s eventloop finished.", self.role)

    def _signal(self, error: Optional[BaseException], fatal: bool) -> None:
        loop = self.loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._settle, error, fatal)
        except RuntimeError:
            pass

    def _settle(self, error: Optional[BaseException], fatal: bool) -> None:
        ready = self._ready
        if ready is not None and not ready.done():
            if error is None:
                ready.set_result(None)
            else:
                ready.set_exception(error)
        elif fatal and self._on_halt is not None:
            self._on_halt()

    def _on_connect(self, client: Any, userdata: Any, flags: Any, rc: Any, *rest: Any) -> None:
        code = getattr(rc, "value", rc)
        failed = rc.is_failure if hasattr(rc, "is_failure") else code != 0
        if failed:
            logger.error("MQTT %s connection refused: %s. Halting.", self.role, rc)
            client.disconnect()
            self._signal(ConnectionError(f"Connection refused: {rc}"), fatal=True)
            return
        logger.info("MQTT %s connected.", self.role)
        if self._subscription is not None:
            topic, qos = self._subscription
            result, _mid = client.subscribe(topic, qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                reason = mqtt.error_string(result)
                logger.error("MQTT %s failed to subscribe: %s. Halting.", self.role, reason)
                client.disconnect()
                self._signal(
                    ConnectionError(f"MQTT {self.role} failed to subscribe: {reason}"),
                    fatal=True,
                )
                return
            logger.info("MQTT %s subscribed to topic '%s'", self.role, topic)
        self._signal(None, fatal=False)

    def _on_connect_fail(self, client: Any, userdata: Any) -> None:
        logger.error("MQTT %s eventloop error. Reconnecting...", self.role)
        self._signal(
            ConnectionError(
                f"MQTT {self.role} could not connect to {self.host}:{self.port}"
            ),
            fatal=False,
        )

    def _on_disconnect(self, client: Any, userdata: Any, *args: Any) -> None:
        logger.debug("MQTT %s disconnected: %s", self.role, args)

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        if self._on_payload is not None:
            self._on_payload(msg.topic, bytes(msg.payload))


class MqttPublisher(MessagePublisher):
    """Publishes each message's payload to one MQTT topic."""

    def __init__(self, link: _Link, topic: str, qos: int) -> None:
        self._link = link
        self.topic = topic
        self.qos = qos

    @classmethod
    async def connect(cls, config: MqttConfig, topic: str, bridge_id: str) -> MqttPublisher:
        """Connect to the broker in ``config.url`` and return a publisher for ``topic``."""
        link = _Link(config, bridge_id, "Publisher")
        await link.open()
        qos = parse_qos(DEFAULT_QOS if config.qos is None else config.qos)
        return cls(link, topic, qos)

    def with_topic(self, topic: str) -> MqttPublisher:
        """Return a publisher sharing this connection but sending to ``topic``."""
        return MqttPublisher(self._link, topic, self.qos)

    async def __aenter__(self) -> MqttPublisher:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    async def send(self, message: CanonicalMessage) -> Sent:
        logger.debug("Publishing MQTT message: %s", message.payload_str())
        info = self._link.client.publish(
            self.topic, message.payload, qos=self.qos, retain=False
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise RetryablePublisherError(
                f"Failed to publish MQTT message: {mqtt.error_string(info.rc)}"
            )
        return Sent()

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        return await send_batch_helper(self, messages)

    async def disconnect(self) -> None:
        """Disconnect the connection shared by this publisher and its copies."""
        await self._link.close()


class MqttConsumer(MessageConsumer):
    """Subscribes to one MQTT topic and yields each incoming payload as a message."""

    def __init__(self, config: MqttConfig, topic: str, bridge_id: str) -> None:
        capacity = (
            DEFAULT_QUEUE_CAPACITY
            if config.queue_capacity is None
            else config.queue_capacity
        )
        self.topic = topic
        self._queue: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue(capacity)
        self._stopped = asyncio.Event()
        self._closed = False
        qos = parse_qos(DEFAULT_QOS if config.qos is None else config.qos)
        self._link = _Link(
            config,
            bridge_id,
            "Consumer",
            subscription=(topic, qos),
            on_payload=self._deliver,
            on_halt=self._stopped.set,
        )

    @classmethod
    async def connect(cls, config: MqttConfig, topic: str, bridge_id: str) -> MqttConsumer:
        """Connect, subscribe to ``topic`` and return the consumer."""
        consumer = cls(config, topic, bridge_id)
        await consumer._link.open()
        return consumer

    async def __aenter__(self) -> MqttConsumer:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _deliver(self, topic: str, payload: bytes) -> None:
        # Runs on the network thread; blocks it while the queue is full.
        loop = self._link.loop
        if self._closed or loop is None:
            return
        coro = self._queue.put((topic, payload))
        try:
            future = asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError:
            coro.close()
            return
        while True:
            try:
                future.result(timeout=0.25)
                return
            except concurrent.futures.TimeoutError:
                if self._closed:
                    future.cancel()
                    return
            except (concurrent.futures.CancelledError, RuntimeError):
                return

    async def _next(self) -> tuple[str, bytes]:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._stopped.is_set():
            raise ConsumerError("MQTT source channel closed")
        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        raise ConsumerError("MQTT source channel closed")

    async def receive(self) -> Received:
        topic, payload = await self._next()
        # Packet ids are reused by the broker, so every message gets a fresh id.
        message = CanonicalMessage(payload)

        async def commit(response: Optional[CanonicalMessage] = None) -> None:
            logger.debug("MQTT message processed on topic %s", topic)

        return Received(message, commit)

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        received = await self.receive()
        single_commit = received.commit

        async def commit(responses: Optional[list[CanonicalMessage]] = None) -> None:
            await single_commit(responses[0] if responses else None)

        return ReceivedBatch([received.message], commit)

    async def close(self) -> None:
        """Stop receiving and disconnect from the broker."""
        if self._closed:
            return
        self._closed = True
        self._stopped.set()
        await self._link.close()