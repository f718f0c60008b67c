"""Endpoint configuration and parsing from plain mappings."""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from typing import Any, Optional, TypeVar

_T = TypeVar("_T")


class EndpointKind(enum.Enum):
    MEMORY = "memory"
    FILE = "file"
    HTTP = "http"
    MQTT = "mqtt"
    MONGODB = "mongodb"
    FANOUT = "fanout"


def _build(
    cls: type[_T],
    data: Any,
    converters: Optional[Mapping[str, Callable[[Any], Any]]] = None,
) -> _T:
    if not isinstance(data, Mapping):
        raise ValueError(f"{cls.__name__} expects a mapping, got {type(data).__name__}")
    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    converters = converters or {}
    kwargs = {}
    for key, value in data.items():
        if key not in names:
            continue
        convert = converters.get(key)
        kwargs[key] = convert(value) if convert and value is not None else value
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ValueError(f"invalid {cls.__name__}: {exc}") from None


@dataclass
class TlsConfig:
    required: bool = False
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    cert_password: Optional[str] = None
    accept_invalid_certs: bool = False

    def is_tls_server_configured(self) -> bool:
        """True when a certificate and key are available to serve TLS."""
        return bool(self.cert_file and self.key_file)

    def is_mtls_client_configured(self) -> bool:
        """True when TLS is required and a client certificate and key are set."""
        return self.required and self.is_tls_server_configured()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TlsConfig:
        return _build(cls, data)


@dataclass
class MemoryConfig:
    topic: str
    capacity: Optional[int] = None


@dataclass
class HttpConfig:
    url: Optional[str] = None
    tls: TlsConfig = field(default_factory=TlsConfig)
    response_out: Optional[Endpoint] = None


@dataclass
class MqttConfig:
    url: str = ""
    topic: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    tls: TlsConfig = field(default_factory=TlsConfig)
    qos: Optional[int] = None
    keep_alive_seconds: Optional[int] = None
    clean_session: bool = False
    queue_capacity: Optional[int] = None


@dataclass
class MongoDbConfig:
    url: str = ""
    database: str = ""
    collection: Optional[str] = None
    polling_interval_ms: Optional[int] = None


_CONFIG_TYPES: dict[EndpointKind, type] = {
    EndpointKind.MEMORY: MemoryConfig,
    EndpointKind.FILE: str,
    EndpointKind.HTTP: HttpConfig,
    EndpointKind.MQTT: MqttConfig,
    EndpointKind.MONGODB: MongoDbConfig,
    EndpointKind.FANOUT: list,
}


@dataclass
class Endpoint:
    """An endpoint: its kind, the matching configuration and an optional handler."""

    kind: EndpointKind
    config: Any
    handler: Any = None

    def __post_init__(self) -> None:
        self.kind = EndpointKind(self.kind)
        if self.kind is EndpointKind.FANOUT:
            self.config = list(self.config)
            if not all(isinstance(e, Endpoint) for e in self.config):
                raise TypeError("fanout endpoints must all be Endpoint instances")
            return
        expected = _CONFIG_TYPES[self.kind]
        if not isinstance(self.config, expected):
            raise TypeError(
                f"{self.kind.value} endpoint needs {expected.__name__}, "
                f"got {type(self.config).__name__}"
            )

    @classmethod
    def memory(cls, topic: str, capacity: Optional[int] = None) -> Endpoint:
        return cls(EndpointKind.MEMORY, MemoryConfig(topic, capacity))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Endpoint:
        """Parse a mapping with a single key naming the endpoint type."""
        if not isinstance(data, Mapping) or len(data) != 1:
            raise ValueError("an endpoint is a mapping with exactly one endpoint type")
        ((key, value),) = data.items()
        try:
            kind = EndpointKind(key)
        except ValueError:
            raise ValueError(f"unknown endpoint type {key!r}") from None

        tls = {"tls": TlsConfig.from_dict}
        if kind is EndpointKind.FILE:
            if not isinstance(value, str):
                raise ValueError("file endpoint expects a path string")
            config: Any = value
        elif kind is EndpointKind.FANOUT:
            if not isinstance(value, list):
                raise ValueError("fanout endpoint expects a list of endpoints")
            config = [cls.from_dict(item) for item in value]
        elif kind is EndpointKind.MEMORY:
            config = _build(MemoryConfig, value)
        elif kind is EndpointKind.HTTP:
            config = _build(HttpConfig, value, {**tls, "response_out": cls.from_dict})
        elif kind is EndpointKind.MQTT:
            config = _build(MqttConfig, value, tls)
        else:
            config = _build(MongoDbConfig, value)
        return cls(kind, config)