"""
Shared pytest fixtures and utilities for testing.

No broker is needed to run the suite. The amqpstorm `Connection` class is
patched so that every `ConnectionManager` receives a `FakeChannel`.

## Fakes

- `FakeChannel`: stands in for `amqpstorm.Channel`
  - `basic`, `queue`, `exchange` and `tx` are `Mock`s, so calls can be asserted
  - `basic.consume` / `basic.cancel` keep `consumer_tags` up to date
  - `deliver(...)` queues a message; each `process_data_events()` call hands
    at most one queued message to the first registered consumer
  - `queue.declare` reports `declare_result`, adjust it per test

- `FakeMessage`: the attributes of `amqpstorm.Message` the library reads
  (`body`, `delivery_tag`, `correlation_id`, `reply_to`, `method`)

## Fixtures

- `fake_channel`: fresh `FakeChannel`
- `mock_connection_class`: patches `Connection` and returns the patched class
- `amqp_config`: `AmqpConfig` with a minimal, broker-free property set
- `make_message`: factory for `FakeMessage` objects with increasing delivery tags

### Usage

```python
def test_consume_one(mock_connection_class, fake_channel, amqp_config, make_message):
    fake_channel.declare_result["message_count"] = 1
    fake_channel.deliver(make_message("hello"))
    ...
```
"""

import itertools
from typing import Any, Optional
from unittest.mock import Mock, patch

import pytest

from warren.config import AmqpConfig


class FakeMessage:
    def __init__(
        self,
        body: Any,
        delivery_tag: int = 1,
        correlation_id: Optional[str] = None,
        reply_to: Optional[str] = None,
        properties: Optional[dict] = None,
    ):
        self.body = body
        self.delivery_tag = delivery_tag
        self.correlation_id = correlation_id
        self.reply_to = reply_to
        self.properties = properties or {}
        self.method: dict = {"delivery_tag": delivery_tag}


class FakeChannel:
    """In-memory replacement for an amqpstorm channel."""

    def __init__(self):
        self.is_open = True
        self.consumer_tags: list[str] = []
        self.pending: list[FakeMessage] = []
        self.process_calls = 0
        self._callbacks: dict[str, Any] = {}
        self.declare_result = {"queue": "worker", "message_count": 0, "consumer_count": 0}

        self.basic = Mock()
        self.basic.consume.side_effect = self._consume
        self.basic.cancel.side_effect = self._cancel
        self.basic.publish.return_value = True

        self.queue = Mock()
        self.queue.declare.side_effect = lambda **kwargs: dict(self.declare_result)

        self.exchange = Mock()
        self.tx = Mock()
        self.confirm_deliveries = Mock()
        self.check_for_errors = Mock()
        self.close = Mock()

    def _consume(self, callback=None, queue="", consumer_tag="", **kwargs):
        tag = consumer_tag or f"ctag.{len(self._callbacks) + 1}"
        self._callbacks[tag] = callback
        self.consumer_tags.append(tag)
        return tag

    def _cancel(self, consumer_tag=""):
        self._callbacks.pop(consumer_tag, None)
        if consumer_tag in self.consumer_tags:
            self.consumer_tags.remove(consumer_tag)

    def deliver(self, *messages: FakeMessage) -> None:
        self.pending.extend(messages)

    def process_data_events(self):
        self.process_calls += 1
        if self.pending and self.consumer_tags:
            message = self.pending.pop(0)
            tag = self.consumer_tags[0]
            message.method = {"consumer_tag": tag, "delivery_tag": message.delivery_tag}
            self._callbacks[tag](message)


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def mock_connection_class(fake_channel):
    with patch("warren.repository.rabbitmq.connection.Connection") as connection_class:
        connection = Mock()
        connection.is_open = True
        connection.channel.return_value = fake_channel
        connection_class.return_value = connection
        yield connection_class


@pytest.fixture
def amqp_config():
    return AmqpConfig(
        {
            "host": "broker.test",
            "exchange": "events",
            "queue": "",
            "publish_timeout": 5,
        }
    )


@pytest.fixture
def make_message():
    tags = itertools.count(1)

    def _make(body: Any, **kwargs) -> FakeMessage:
        return FakeMessage(body, delivery_tag=next(tags), **kwargs)

    return _make
