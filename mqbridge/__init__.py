"""Asyncio message bridge endpoints: memory, file, HTTP, MQTT, MongoDB and fanout."""

__version__ = "0.1.0"