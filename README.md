# mqbridge

`mqbridge` is an asyncio library for moving messages between systems. Every endpoint implements the same
publisher/consumer interface (`MessagePublisher` / `MessageConsumer` in `mqbridge.publishing`). Every endpoint also
carries the same message type, `CanonicalMessage`. Because of this, you can swap endpoints, wrap them or fan them
out without changing the code around them.

## Installation

```
pip install mqbridge
```

To install the test tools as well:

```
pip install "mqbridge[test]"
```

## Endpoints

| Kind      | Module             | Publisher           | Consumer          |
|-----------|--------------------|---------------------|-------------------|
| memory    | `mqbridge.memory`  | `MemoryPublisher`   | `MemoryConsumer`  |
| file      | `mqbridge.file`    | `FilePublisher`     | `FileConsumer`    |
| http      | `mqbridge.http`    | `HttpPublisher`     | `HttpConsumer`    |
| mqtt      | `mqbridge.mqtt`    | `MqttPublisher`     | `MqttConsumer`    |
| mongodb   | `mqbridge.mongodb` | `MongoDbPublisher`  | `MongoDbConsumer` |
| fanout    | `mqbridge.publishing` | `FanoutPublisher` | —                 |

You can create the endpoints directly, or build them from configuration with the functions in `mqbridge.factory`.

## Messages

A `CanonicalMessage` (`mqbridge.message`) has three parts:

- a 128-bit integer `message_id`;
- a `payload` of bytes;
- a `metadata` dictionary of strings.

If you leave out the id, a time-ordered UUIDv7 value is generated (`new_message_id()`).

```python
from mqbridge.message import CanonicalMessage

msg = CanonicalMessage.from_json({"id": 42, "hello": "world"})
msg.message_id        # 42
msg.get_struct()      # {'hello': 'world', 'id': 42}
msg.payload_str()     # '{"hello":"world","id":42}'
```

`from_json` serialises the value as compact JSON with sorted keys. It takes the id from the first of the
`message_id`, `id` or `_id` fields that is present. That field can hold any of these:

- a UUID string;
- a hex string (an optional `0x` prefix is accepted);
- a decimal string;
- an integer;
- a `{"$oid": "<hex>"}` object.

Hex is tried before decimal, so the string `"42"` becomes `0x42`. If the id cannot be used, a fresh one is
generated.

Other helpers:

- `from_str` builds a message from text.
- `from_struct` builds a message from a dataclass or any JSON-compatible value.
- `with_metadata` returns a copy with new metadata.
- `to_dict` and `from_dict` convert to and from the serialised form, where the payload is a list of byte values.

## Publishing and consuming

```python
import asyncio
from mqbridge.config import Endpoint
from mqbridge.factory import create_consumer_from_route, create_publisher_from_route
from mqbridge.message import CanonicalMessage


async def main():
    publisher = await create_publisher_from_route("demo", Endpoint.memory("demo-topic", 10))
    consumer = await create_consumer_from_route("demo", Endpoint.memory("demo-topic", 10))

    await publisher.send(CanonicalMessage.from_str("hello"))
    received = await consumer.receive()
    print(received.message.payload_str())
    await received.commit(None)


asyncio.run(main())
```

Publishers have three methods:

- `send(message)` returns a `Sent`. Its `response` is either a response message or `None`, and `is_ack` tells
  the two apart.
- `send_batch(messages)` returns a `SentBatch`. It carries any `responses`, plus the `failed` messages that hit a
  retryable error.
- `flush()` pushes out anything the publisher has buffered.

Consumers have two methods:

- `receive()` returns a `Received`, which holds a `message` and a `commit` coroutine function.
- `receive_batch(max_messages)` returns a `ReceivedBatch`, which holds `messages` and one `commit`.

### Building endpoints from dictionaries

`Endpoint.from_dict` parses a mapping with exactly one key naming the endpoint kind, for example the mapping
you get after loading a YAML or JSON file. The kinds are `memory`, `file`, `http`, `mqtt`, `mongodb` and
`fanout`. Keys that the matching config class (`MemoryConfig`, `HttpConfig`, `MqttConfig`, `MongoDbConfig`,
`TlsConfig`) does not know are ignored.

```python
endpoint = Endpoint.from_dict({"fanout": [
    {"memory": {"topic": "out-a"}},
    {"file": "/tmp/out-b.jsonl"},
]})
```

### Defaults from the route name

- Endpoints without a topic, queue or collection of their own use the route name:
  - MQTT uses it as the topic;
  - MongoDB uses it as the collection.
- MQTT also uses the route name as its client id suffix.
- Fanout endpoints can be nested at most 16 levels deep.
- Fanout can only be used as a publisher.

## Endpoint notes

### memory

Channels are shared within the process by topic name (`get_or_create_channel`). A channel's capacity is fixed
when the first endpoint for that topic creates it. The default is 100, and it counts batches, not messages.

`MemoryChannel` has these methods, which are handy in tests:

- `send_message`
- `fill_messages`
- `drain_messages`
- `is_empty`
- `close`
- `len(channel)`, which also counts batches

`MemoryPublisher.local(topic, capacity)` and `MemoryConsumer.local(topic, capacity)` are shortcuts. The consumer
splits a stored batch into smaller pieces if `max_messages` asks for fewer messages. Once its channel is closed
and empty, it raises `ConsumerError`.

### file

`FilePublisher(path)` creates any missing parent directories. It appends one JSON object per line, and the
file is flushed after every batch.

`FileConsumer(path)` reads one message per call and raises `EndOfStream` at the end of the file.

Both can be used as context managers and have a `close()` method.

### http

`await HttpConsumer.start(config, response_sink)` listens on `config.url`. The URL is given as `host:port`, and
the host must be an IP address. If `config.tls` has a certificate and a key, the consumer serves HTTPS.

Each `POST /` becomes a message. Its metadata holds the request headers, with lower-cased names. The reply waits
until the message is committed:

| Situation | Status | Body |
|-----------|--------|------|
| Committed with a response message | 200 | The response payload. `Content-Type` comes from its `content-type` metadata, or is `application/json`. |
| Committed with `None` | 202 | — |
| No commit within 30 seconds | 504 | — |
| Consumer closed while the request waits | 500 | — |

If a response sink is given, the original request is sent to it after the commit, and the sink's response
becomes the reply.

`HttpPublisher(config, response_out)` posts each payload to `config.url`, with the metadata as headers:

- A non-2xx status raises `RetryablePublisherError`.
- If `response_out` is set, the reply is sent to it instead of being returned.
- Otherwise the reply comes back as the response message, with the same id and the reply headers as metadata.

`with_url` returns a copy that shares the client session. Call `close()` when you are done with it.

### mqtt

The publisher and consumer are created as follows:

```python
publisher = await MqttPublisher.connect(config, topic, bridge_id)
consumer = await MqttConsumer.connect(config, topic, bridge_id)
```

Both wait up to 10 seconds for the broker to accept the connection. The consumer also waits for its
subscription to succeed.

URL handling (`parse_url`):

- `localhost` is replaced with `127.0.0.1`.
- The port defaults to 8883 for `mqtts://` and `ssl://`, and to 1883 otherwise.

Other behaviour:

- The QoS defaults to 1 (`parse_qos`).
- Only the payload is published; metadata is not sent.
- Every received message gets a fresh id.

### mongodb

`MongoDbPublisher.connect(config, collection_name)` inserts each message as a document. The document holds:

- `_id`: the id as a binary UUID;
- `payload`: the payload as binary;
- `metadata`;
- `locked_until`: set to `null`.

`MongoDbConsumer.connect(config, collection_name)` first creates an index on `locked_until`. It then claims
documents by setting `locked_until` to 60 seconds from now, and deletes them when they are committed.

On a replica set, the consumer follows inserts through a change stream. On a standalone server, it polls every
`polling_interval_ms` milliseconds (100 by default).

`message_to_document`, `document_to_message` and `available_message_filter` expose the document format.

## Command handlers

`CommandHandlerPublisher(inner, handler)` passes every message to `handler`. The handler can be a plain or async
callable, or an object with a `handle` method. It returns a `Handled`:

- `Handled(publish=new_message)` sends `new_message` through `inner`.
- `Handled()` acknowledges the message and stops there.

If the handler raises `RetryableHandlerError`, the caller sees `RetryablePublisherError`. Any other
`HandlerError` becomes `NonRetryablePublisherError`.

```python
from mqbridge.memory import MemoryPublisher
from mqbridge.message import CanonicalMessage
from mqbridge.publishing import CommandHandlerPublisher, Handled


async def handler(msg):
    return Handled(publish=CanonicalMessage.from_str("response_to_" + msg.payload_str()))

publisher = CommandHandlerPublisher(MemoryPublisher.local("commands-out", 10), handler)
```

An `Endpoint` with a `handler` gets wrapped like this by `create_publisher_from_route`.

## Errors

- Consumers raise `EndOfStream` when their source is exhausted, for example at the end of a file. Other receive
  failures raise `ConsumerError`.
- Publishers raise `RetryablePublisherError` or `NonRetryablePublisherError`.
- `send_batch_helper` sends messages one at a time. Messages that fail with a retryable error are collected in
  `SentBatch.failed`. Non-retryable errors propagate.

## What this package does not do

- There is no route runner, configuration file loader or command-line program. You write the loop that
  receives from a consumer, sends to a publisher and commits.
- The only endpoints are memory, file, HTTP, MQTT, MongoDB and fanout. There is nothing for Kafka, AMQP or NATS.
- There is no middleware for deduplication or metrics.