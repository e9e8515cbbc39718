import logging
from typing import Any, Optional

from warren.config import AmqpConfig
from warren.exceptions import WarrenError
from warren.repository.rabbitmq.connection import ConnectionManager
from warren.repository.rabbitmq.consumer import Consumer
from warren.repository.rabbitmq.publisher import ConfirmListener, Publisher

logger = logging.getLogger(__name__)


class PublisherFactory:
    """Builds a ready-to-use Publisher on its own connection."""

    def __init__(
        self,
        default_config: Optional[AmqpConfig] = None,
        confirm_listener: Optional[ConfirmListener] = None,
    ) -> None:
        self._default_config = default_config or AmqpConfig()
        self._confirm_listener = confirm_listener

    @property
    def default_config(self) -> AmqpConfig:
        return self._default_config

    def create(self, properties: Optional[dict[str, Any]] = None) -> Publisher:
        """
        Merge `properties` over the default config, connect and declare.

        :raises ConfigurationError: If no exchange is configured
        :raises ConnectionFailedError: If the broker cannot be reached
        """
        config = self._default_config.merge(properties)
        connection_manager = ConnectionManager(config)
        publisher = Publisher(config, connection_manager, confirm_listener=self._confirm_listener)
        try:
            publisher.setup()
        except WarrenError:
            connection_manager.disconnect()
            raise
        return publisher


class ConsumerFactory:
    """Builds a ready-to-use Consumer on its own connection."""

    def __init__(self, default_config: Optional[AmqpConfig] = None) -> None:
        self._default_config = default_config or AmqpConfig()

    @property
    def default_config(self) -> AmqpConfig:
        return self._default_config

    def create(self, properties: Optional[dict[str, Any]] = None) -> Consumer:
        """
        Merge `properties` over the default config, connect, declare, bind and
        snapshot the queue depth.
        """
        config = self._default_config.merge(properties)
        connection_manager = ConnectionManager(config)
        consumer = Consumer(config, connection_manager)
        try:
            consumer.setup()
        except WarrenError:
            connection_manager.disconnect()
            raise
        return consumer
