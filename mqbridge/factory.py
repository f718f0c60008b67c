"""Build publishers and consumers from endpoint configurations."""

from __future__ import annotations

import logging
from typing import Optional

from mqbridge.config import Endpoint, EndpointKind
from mqbridge.file import FileConsumer, FilePublisher
from mqbridge.memory import MemoryConsumer, MemoryPublisher
from mqbridge.publishing import (
    CommandHandlerPublisher,
    FanoutPublisher,
    MessageConsumer,
    MessagePublisher,
)

logger = logging.getLogger(__name__)

MAX_FANOUT_DEPTH = 16
RESPONSE_SINK_ROUTE = "http_response_sink"


async def _response_sink(endpoint: Optional[Endpoint]) -> Optional[MessagePublisher]:
    if endpoint is None:
        return None
    return await create_publisher_from_route(RESPONSE_SINK_ROUTE, endpoint)


async def create_consumer_from_route(
    route_name: str, endpoint: Endpoint
) -> MessageConsumer:
    """Create the consumer for a route's input endpoint.

    Endpoints without their own topic, queue or collection use ``route_name``.
    """
    kind = endpoint.kind
    config = endpoint.config
    if kind is EndpointKind.MEMORY:
        return MemoryConsumer(config)
    if kind is EndpointKind.FILE:
        return FileConsumer(config)
    if kind is EndpointKind.HTTP:
        from mqbridge.http import HttpConsumer

        sink = await _response_sink(config.response_out)
        return await HttpConsumer.start(config, sink)
    if kind is EndpointKind.MQTT:
        from mqbridge.mqtt import MqttConsumer

        return await MqttConsumer.connect(config, config.topic or route_name, route_name)
    if kind is EndpointKind.MONGODB:
        from mqbridge.mongodb import MongoDbConsumer

        return await MongoDbConsumer.connect(config, config.collection or route_name)
    raise ValueError(f"[route:{route_name}] Unsupported consumer endpoint type")


async def create_publisher_from_route(
    route_name: str, endpoint: Endpoint
) -> MessagePublisher:
    """Create the publisher for a route's output endpoint, applying its handler."""
    return await _create_publisher(route_name, endpoint, 0)


async def _create_publisher(
    route_name: str, endpoint: Endpoint, depth: int
) -> MessagePublisher:
    if depth > MAX_FANOUT_DEPTH:
        raise ValueError(
            f"Fanout recursion depth exceeded limit of {MAX_FANOUT_DEPTH}"
        )
    publisher = await _create_base_publisher(route_name, endpoint, depth)
    if endpoint.handler is not None:
        publisher = CommandHandlerPublisher(publisher, endpoint.handler)
    return publisher


async def _create_base_publisher(
    route_name: str, endpoint: Endpoint, depth: int
) -> MessagePublisher:
    kind = endpoint.kind
    config = endpoint.config
    if kind is EndpointKind.MEMORY:
        return MemoryPublisher(config)
    if kind is EndpointKind.FILE:
        return FilePublisher(config)
    if kind is EndpointKind.HTTP:
        from mqbridge.http import HttpPublisher

        sink = await _response_sink(config.response_out)
        publisher = HttpPublisher(config, sink)
        if config.url:
            publisher = publisher.with_url(config.url)
        return publisher
    if kind is EndpointKind.MQTT:
        from mqbridge.mqtt import MqttPublisher

        return await MqttPublisher.connect(config, config.topic or route_name, route_name)
    if kind is EndpointKind.MONGODB:
        from mqbridge.mongodb import MongoDbPublisher

        return await MongoDbPublisher.connect(config, config.collection or route_name)
    if kind is EndpointKind.FANOUT:
        publishers = [
            await _create_publisher(route_name, inner, depth + 1) for inner in config
        ]
        return FanoutPublisher(publishers)
    raise ValueError(f"[route:{route_name}] Unsupported publisher endpoint type")