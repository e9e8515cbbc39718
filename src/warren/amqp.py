"""
Entry point for application code.

Every publish or consume call builds its own session from the configured
defaults plus per-call properties, and always disconnects it afterwards.
"""

import logging
from typing import Any, Optional, Union

from warren.config import AmqpConfig
from warren.factories import ConsumerFactory, PublisherFactory
from warren.models import Message, MessageFactory, PublishResult
from warren.repository.rabbitmq.connection import ConnectionManager
from warren.repository.rabbitmq.consumer import ConsumeCallback
from warren.repository.rabbitmq.publisher import BatchManager
from warren.repository.rabbitmq.topology import Management

logger = logging.getLogger(__name__)


class Amqp:
    def __init__(
        self,
        config: Optional[AmqpConfig] = None,
        publisher_factory: Optional[PublisherFactory] = None,
        consumer_factory: Optional[ConsumerFactory] = None,
        message_factory: Optional[MessageFactory] = None,
        batch_manager: Optional[BatchManager] = None,
    ) -> None:
        self._config = config or AmqpConfig()
        self._publisher_factory = publisher_factory or PublisherFactory(self._config)
        self._consumer_factory = consumer_factory or ConsumerFactory(self._config)
        self._message_factory = message_factory or MessageFactory()
        self._batch_manager = BatchManager() if batch_manager is None else batch_manager

    @property
    def config(self) -> AmqpConfig:
        return self._config

    @property
    def batch_manager(self) -> BatchManager:
        return self._batch_manager

    def publish(
        self,
        routing: str,
        message: Union[Message, str, bytes],
        properties: Optional[dict[str, Any]] = None,
    ) -> PublishResult:
        """
        Publish one message on a fresh connection.

        :param routing: Routing key, also bound to the configured queue if any
        :param message: Message, or a plain body sent as persistent text/plain
        :param properties: Per-call overrides. `mandatory` requests a confirmed,
            routable delivery and `application_headers` adds headers to a
            plain body.
        """
        properties = dict(properties or {})
        properties["routing"] = routing
        publisher = self._publisher_factory.create(properties)

        try:
            message = self._message_factory.create(
                message, properties.get("application_headers")
            )
            mandatory = bool(publisher.config.get("mandatory", False))
            result = publisher.publish(routing, message, mandatory)
            if result and publisher.confirms_enabled and publisher.config.get("wait_for_confirms", True):
                result = publisher.wait_for_confirms()
            return result
        finally:
            publisher.connection_manager.disconnect()

    def batch_basic_publish(
        self,
        routing: str,
        message: Union[Message, str, bytes],
        batch: Optional[BatchManager] = None,
    ) -> None:
        batch = self._batch_manager if batch is None else batch
        batch.add(routing, message)

    def batch_publish(
        self,
        properties: Optional[dict[str, Any]] = None,
        batch: Optional[BatchManager] = None,
    ) -> int:
        """
        Flush a batch in one transaction. An empty batch opens no connection.

        :return: Number of messages published
        """
        batch = self._batch_manager if batch is None else batch
        if batch.is_empty():
            return 0

        publisher = self._publisher_factory.create(properties)
        try:
            return publisher.batch_publish(batch)
        finally:
            publisher.connection_manager.disconnect()

    def consume(
        self,
        queue: str,
        callback: ConsumeCallback,
        properties: Optional[dict[str, Any]] = None,
    ) -> bool:
        properties = dict(properties or {})
        properties["queue"] = queue
        consumer = self._consumer_factory.create(properties)

        try:
            return consumer.consume(queue, callback)
        finally:
            consumer.connection_manager.disconnect()

    def message(self, body: Union[str, bytes], properties: Optional[dict[str, Any]] = None) -> Message:
        return self._message_factory.create_with_properties(body, properties)

    def management(self, properties: Optional[dict[str, Any]] = None) -> Management:
        """Topology maintenance on a dedicated connection. Use as a context manager."""
        config = self._config.merge(properties)
        return Management(config, ConnectionManager(config))
