"""
Exchange and queue topology.

ExchangeManager and QueueManager declare and bind from a property set.
Management wraps the maintenance operations (purge, delete, unbind) that do
not belong to a publish or consume session.
"""

import logging
from typing import Any, Optional

from warren.config import AmqpConfig
from warren.exceptions import ConfigurationError
from warren.models import QueueInfo
from warren.repository.rabbitmq.config import BindingConfig, ExchangeSpec, QueueSpec
from warren.repository.rabbitmq.connection import ConnectionManager
from warren.repository.rabbitmq.util import normalize_arguments, translate_amqp_errors

logger = logging.getLogger(__name__)


def _log_unsupported_flags(kind: str, name: str, **flags: bool) -> None:
    enabled = [flag for flag, value in flags.items() if value]
    if enabled:
        logger.warning(
            "%s %s requested %s, not supported by the transport and not sent",
            kind,
            name,
            ", ".join(enabled),
        )


class ExchangeManager:
    def __init__(self, config: AmqpConfig, connection_manager: ConnectionManager) -> None:
        self._config = config
        self._connection_manager = connection_manager

    def declare_exchange(self) -> ExchangeSpec:
        """
        Declare the configured exchange.

        :raises ConfigurationError: If no exchange is configured. Raised before
            any network call.
        :raises ProtocolError: If the broker rejects the declaration, e.g. the
            exchange exists with different attributes.
        """
        spec = ExchangeSpec.from_config(self._config)
        if not spec.name:
            raise ConfigurationError("Exchange is not defined in configuration.")

        _log_unsupported_flags("Exchange", spec.name, internal=spec.internal, nowait=spec.nowait)

        channel = self._connection_manager.get_channel()
        with translate_amqp_errors(f"declaring exchange {spec.name}"):
            channel.exchange.declare(
                exchange=spec.name,
                exchange_type=spec.type,
                passive=spec.passive,
                durable=spec.durable,
                auto_delete=spec.auto_delete,
                arguments=spec.arguments,
            )
        logger.info("Exchange declared: %s (%s)", spec.name, spec.type)
        return spec


class QueueManager:
    """
    Declares the configured queue and binds it to the configured exchange.

    The message count returned by the broker at declare time is kept as a
    snapshot for the consumer's stop condition and is never refreshed.
    """

    def __init__(self, config: AmqpConfig, connection_manager: ConnectionManager) -> None:
        self._config = config
        self._connection_manager = connection_manager
        self._queue_info: Optional[QueueInfo] = None

    def declare_and_bind(self) -> Optional[QueueInfo]:
        """
        Declare and bind the queue if one is configured.

        Publish-only sessions have no queue and skip this step, unless
        `queue_force_declare` is set.
        """
        queue = self._config.get("queue")
        force_declare = bool(self._config.get("queue_force_declare", False))

        if not queue and not force_declare:
            logger.debug("No queue configured, skipping declare")
            return None

        queue_info = self.declare_queue()
        self.bind_queue(queue or queue_info.queue)
        return queue_info

    def declare_queue(self) -> QueueInfo:
        spec = QueueSpec.from_config(self._config)
        _log_unsupported_flags("Queue", spec.name or "<generated>", nowait=spec.nowait)

        channel = self._connection_manager.get_channel()
        logger.info("Declaring queue with config: %s", spec)
        with translate_amqp_errors(f"declaring queue {spec.name or '<generated>'}"):
            result = channel.queue.declare(
                queue=spec.name,
                passive=spec.passive,
                durable=spec.durable,
                exclusive=spec.exclusive,
                auto_delete=spec.auto_delete,
                arguments=spec.arguments,
            )

        result = result or {}
        self._queue_info = QueueInfo(
            queue=result.get("queue", spec.name),
            message_count=int(result.get("message_count", 0) or 0),
            consumer_count=int(result.get("consumer_count", 0) or 0),
        )
        logger.info(
            "Queue declared %s with %d message(s)",
            self._queue_info.queue,
            self._queue_info.message_count,
        )
        return self._queue_info

    def bind_queue(self, queue: str) -> None:
        binding_config = BindingConfig.from_config(self._config)
        channel = self._connection_manager.get_channel()

        for binding in binding_config.bindings_for(queue):
            with translate_amqp_errors(
                f"binding {binding.queue} to {binding.exchange} with {binding.routing_key}"
            ):
                channel.queue.bind(
                    queue=binding.queue,
                    exchange=binding.exchange,
                    routing_key=binding.routing_key,
                )
            logger.info(
                "Queue %s bound to exchange %s with routing key '%s'",
                binding.queue,
                binding.exchange,
                binding.routing_key,
            )

    def get_message_count(self) -> int:
        if self._queue_info is None:
            return 0
        return self._queue_info.message_count

    def get_queue_info(self) -> Optional[QueueInfo]:
        return self._queue_info


class Management:
    """Queue and exchange maintenance over a dedicated connection."""

    def __init__(self, config: AmqpConfig, connection_manager: ConnectionManager) -> None:
        self._config = config
        self._connection_manager = connection_manager

    @property
    def config(self) -> AmqpConfig:
        return self._config

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._connection_manager

    def queue_unbind(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Optional[dict[str, Any]] = None,
    ) -> None:
        channel = self._connection_manager.get_channel()
        with translate_amqp_errors(f"unbinding {queue} from {exchange}"):
            channel.queue.unbind(
                queue=queue,
                exchange=exchange,
                routing_key=routing_key,
                arguments=normalize_arguments(arguments),
            )
        logger.info("Queue %s unbound from %s with routing key '%s'", queue, exchange, routing_key)

    def exchange_unbind(
        self,
        destination: str,
        source: str,
        routing_key: str = "",
        arguments: Optional[dict[str, Any]] = None,
    ) -> None:
        channel = self._connection_manager.get_channel()
        with translate_amqp_errors(f"unbinding exchange {destination} from {source}"):
            channel.exchange.unbind(
                destination=destination,
                source=source,
                routing_key=routing_key,
                arguments=normalize_arguments(arguments),
            )
        logger.info("Exchange %s unbound from %s with routing key '%s'", destination, source, routing_key)

    def queue_purge(self, queue: str) -> int:
        """
        Remove all ready messages from a queue.

        :return: Number of messages purged
        """
        channel = self._connection_manager.get_channel()
        with translate_amqp_errors(f"purging queue {queue}"):
            result = channel.queue.purge(queue=queue)
        purged = int((result or {}).get("message_count", 0) or 0)
        logger.info("Queue %s purged, %d message(s) removed", queue, purged)
        return purged

    def queue_delete(self, queue: str, if_unused: bool = False, if_empty: bool = False) -> int:
        """
        Delete a queue.

        :param if_unused: Only delete if the queue has no consumers
        :param if_empty: Only delete if the queue is empty
        :return: Number of messages deleted with the queue
        """
        channel = self._connection_manager.get_channel()
        with translate_amqp_errors(f"deleting queue {queue}"):
            result = channel.queue.delete(queue=queue, if_unused=if_unused, if_empty=if_empty)
        deleted = int((result or {}).get("message_count", 0) or 0)
        logger.info("Queue %s deleted with %d message(s)", queue, deleted)
        return deleted

    def exchange_delete(self, exchange: str, if_unused: bool = False) -> None:
        channel = self._connection_manager.get_channel()
        with translate_amqp_errors(f"deleting exchange {exchange}"):
            channel.exchange.delete(exchange=exchange, if_unused=if_unused)
        logger.info("Exchange %s deleted", exchange)

    def close(self) -> None:
        self._connection_manager.disconnect()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
