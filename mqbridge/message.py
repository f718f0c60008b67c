"""The message type that flows through every endpoint."""

from __future__ import annotations

import dataclasses
import json
import os
import re
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

_U128_MAX = (1 << 128) - 1
_I64_MIN = -(1 << 63)
_I64_LIMIT = 1 << 63
_U64_LIMIT = 1 << 64

_HEX_DIGITS = re.compile(r"\+?[0-9A-Fa-f]+")
_DEC_DIGITS = re.compile(r"\+?[0-9]+")

_id_lock = threading.Lock()
_last_id = 0


def new_message_id() -> int:
    """Return a fresh, time-ordered UUIDv7 as a 128-bit integer."""
    global _last_id
    millis = time.time_ns() // 1_000_000
    rand_a = int.from_bytes(os.urandom(2), "big") & 0xFFF
    rand_b = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)
    value = (
        ((millis & ((1 << 48) - 1)) << 80)
        | (0x7 << 76)
        | (rand_a << 64)
        | (0b10 << 62)
        | rand_b
    )
    with _id_lock:
        if value <= _last_id:
            value = _last_id + 1
        _last_id = value
    return value


def _parse_unsigned(text: str, pattern: re.Pattern[str], base: int) -> Optional[int]:
    if not pattern.fullmatch(text):
        return None
    number = int(text, base)
    return number if number <= _U128_MAX else None


def _id_from_value(raw: Any) -> Optional[int]:
    if isinstance(raw, str):
        try:
            return uuid.UUID(raw).int
        except ValueError:
            pass
        trimmed = raw
        while trimmed.startswith("0x"):
            trimmed = trimmed[2:]
        number = _parse_unsigned(trimmed, _HEX_DIGITS, 16)
        if number is not None:
            return number
        return _parse_unsigned(raw, _DEC_DIGITS, 10)
    if isinstance(raw, int) and not isinstance(raw, bool):
        if _I64_MIN <= raw < _I64_LIMIT:
            return raw & _U128_MAX
        if 0 <= raw < _U64_LIMIT:
            return raw
        return None
    if isinstance(raw, Mapping):
        oid = raw.get("$oid")
        if isinstance(oid, str):
            return _parse_unsigned(oid, _HEX_DIGITS, 16)
    return None


def _extract_id(value: Any) -> Optional[int]:
    if not isinstance(value, Mapping):
        return None
    for key in ("message_id", "id", "_id"):
        if key in value:
            return _id_from_value(value[key])
    return None


def _dumps(value: Any, *, sort_keys: bool) -> bytes:
    return json.dumps(
        value, separators=(",", ":"), ensure_ascii=False, sort_keys=sort_keys
    ).encode("utf-8")


@dataclass
class CanonicalMessage:
    """A payload with a 128-bit identifier and string metadata."""

    payload: bytes
    message_id: Optional[int] = None
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.payload, str):
            self.payload = self.payload.encode("utf-8")
        elif not isinstance(self.payload, bytes):
            self.payload = bytes(self.payload)
        if self.message_id is None:
            self.message_id = new_message_id()
        elif not 0 <= self.message_id <= _U128_MAX:
            raise ValueError(f"message id {self.message_id} does not fit in 128 bits")
        self.metadata = dict(self.metadata)

    @classmethod
    def from_str(cls, payload: str) -> CanonicalMessage:
        """Build a message whose payload is the UTF-8 encoding of ``payload``."""
        return cls(payload.encode("utf-8"))

    @classmethod
    def from_json(cls, value: Any) -> CanonicalMessage:
        """Serialize a JSON value, taking the id from message_id, id or _id if usable."""
        return cls(_dumps(value, sort_keys=True), _extract_id(value))

    @classmethod
    def from_struct(cls, data: Any) -> CanonicalMessage:
        """Serialize ``data`` (a dataclass or JSON-compatible object) as the payload."""
        if dataclasses.is_dataclass(data) and not isinstance(data, type):
            data = dataclasses.asdict(data)
        return cls(_dumps(data, sort_keys=False))

    def get_struct(self) -> Any:
        """Parse the payload as JSON."""
        return json.loads(self.payload)

    def payload_str(self) -> str:
        """Return the payload decoded as UTF-8, replacing invalid bytes."""
        return self.payload.decode("utf-8", errors="replace")

    def with_metadata(self, metadata: Mapping[str, str]) -> CanonicalMessage:
        """Return a copy of this message carrying ``metadata``."""
        return dataclasses.replace(self, metadata=dict(metadata))

    def to_dict(self) -> dict[str, Any]:
        """Return the serialized form: payload as a list of byte values."""
        data: dict[str, Any] = {
            "message_id": self.message_id,
            "payload": list(self.payload),
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CanonicalMessage:
        """Rebuild a message from the form produced by :meth:`to_dict`."""
        if not isinstance(data, Mapping):
            raise ValueError("message must be a JSON object")
        for name in ("message_id", "payload"):
            if name not in data:
                raise ValueError(f"missing field {name!r}")
        message_id = data["message_id"]
        if (
            not isinstance(message_id, int)
            or isinstance(message_id, bool)
            or not 0 <= message_id <= _U128_MAX
        ):
            raise ValueError(f"invalid message_id: {message_id!r}")
        raw_payload = data["payload"]
        if isinstance(raw_payload, str):
            payload = raw_payload.encode("utf-8")
        elif isinstance(raw_payload, (bytes, bytearray)):
            payload = bytes(raw_payload)
        elif isinstance(raw_payload, list) and all(
            isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255
            for b in raw_payload
        ):
            payload = bytes(raw_payload)
        else:
            raise ValueError("payload must be a string or a list of byte values")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, Mapping) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()
        ):
            raise ValueError("metadata must map strings to strings")
        return cls(payload, message_id, dict(metadata))