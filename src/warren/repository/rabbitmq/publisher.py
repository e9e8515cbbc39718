"""
RabbitMQ publisher implementation.

Covers plain publishing, the publisher-confirm protocol (ack / nack /
unroutable return) and the transactional batch flush.
"""

import abc
import logging
import time
from typing import NamedTuple, Optional, Union

from amqpstorm import AMQPChannelError, AMQPConnectionError, AMQPError, AMQPMessageError

from warren.config import AmqpConfig
from warren.exceptions import (
    ConfigurationError,
    ConfirmsNotEnabledError,
    ConnectionFailedError,
    ProtocolError,
)
from warren.models import Message, MessageFactory, PublishResult
from warren.repository.rabbitmq.config import DEFAULT_PUBLISH_TIMEOUT
from warren.repository.rabbitmq.connection import ConnectionManager
from warren.repository.rabbitmq.topology import ExchangeManager, QueueManager
from warren.repository.rabbitmq.util import translate_amqp_errors

logger = logging.getLogger(__name__)


class ConfirmListener(abc.ABC):
    """
    Receives publisher-confirm outcomes.

    Callbacks run synchronously inside the publish call that produced them and
    must not issue blocking operations on the same channel.
    """

    def on_ack(self, message: Message) -> None:
        pass

    def on_nack(self, message: Message) -> None:
        pass

    def on_return(self, message: Optional[Message], reason: str) -> None:
        pass


class BatchEntry(NamedTuple):
    routing: str
    message: Union[Message, str, bytes, None]


class BatchManager:
    """
    Ordered buffer of (routing key, message) pairs waiting to be flushed.

    One instance per caller session. Nothing is shared between instances.
    """

    def __init__(self) -> None:
        self._entries: list[BatchEntry] = []

    def add(self, routing: str, message: Union[Message, str, bytes]) -> None:
        self._entries.append(BatchEntry(routing, message))

    def get_messages(self) -> list[BatchEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries = []

    def is_empty(self) -> bool:
        return not self._entries

    def __len__(self) -> int:
        return len(self._entries)


class Publisher:
    """
    Publishes messages on a single channel owned by its ConnectionManager.

    The result of each publish is tri-state: CONFIRMED, REJECTED (nack or
    unroutable return) or PENDING (confirm wait timed out). Without confirm
    mode the result is optimistically CONFIRMED.
    """

    def __init__(
        self,
        config: AmqpConfig,
        connection_manager: ConnectionManager,
        exchange_manager: Optional[ExchangeManager] = None,
        queue_manager: Optional[QueueManager] = None,
        confirm_listener: Optional[ConfirmListener] = None,
        message_factory: Optional[MessageFactory] = None,
    ) -> None:
        self._config = config
        self._connection_manager = connection_manager
        self._exchange_manager = exchange_manager or ExchangeManager(config, connection_manager)
        self._queue_manager = queue_manager or QueueManager(config, connection_manager)
        self._confirm_listener = confirm_listener
        self._message_factory = message_factory or MessageFactory()

        self._confirms_enabled = False
        self._transactional = False
        self._result = PublishResult.PENDING

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._connection_manager

    @property
    def config(self) -> AmqpConfig:
        return self._config

    @property
    def confirms_enabled(self) -> bool:
        return self._confirms_enabled

    @property
    def transactional(self) -> bool:
        return self._transactional

    @property
    def publish_timeout(self) -> int:
        return max(1, int(self._config.get("publish_timeout", DEFAULT_PUBLISH_TIMEOUT)))

    def set_confirm_listener(self, listener: Optional[ConfirmListener]) -> None:
        self._confirm_listener = listener

    def setup(self) -> None:
        """Declare the exchange, then the queue and its bindings. Connects on first use."""
        self._exchange_manager.declare_exchange()
        self._queue_manager.declare_and_bind()

    def enable_confirms(self) -> None:
        """Put the channel in confirm mode. Safe to call more than once."""
        if self._confirms_enabled:
            return
        if self._transactional:
            raise ConfigurationError(
                "Publisher confirms are not available on a channel used for batch transactions"
            )
        channel = self._connection_manager.get_channel()
        with translate_amqp_errors("enabling publisher confirms"):
            channel.confirm_deliveries()
        self._confirms_enabled = True
        logger.info("Publisher confirms enabled on channel %s", channel)

    def _set_result(self, result: PublishResult) -> None:
        if self._result is not PublishResult.PENDING:
            logger.debug("Publish result already %s, ignoring %s", self._result, result)
            return
        self._result = result

    def _handle_ack(self, message: Message) -> None:
        self._set_result(PublishResult.CONFIRMED)
        if self._confirm_listener is not None:
            self._confirm_listener.on_ack(message)

    def _handle_nack(self, message: Message) -> None:
        logger.warning("Message nacked by broker")
        self._set_result(PublishResult.REJECTED)
        if self._confirm_listener is not None:
            self._confirm_listener.on_nack(message)

    def _handle_return(self, message: Optional[Message], reason: str) -> None:
        logger.warning("Message returned by broker: %s", reason)
        if self._result is not PublishResult.PENDING:
            # the publish already reported its outcome
            logger.debug("Publish result already %s, not reporting return", self._result)
            return
        self._set_result(PublishResult.REJECTED)
        if self._confirm_listener is not None:
            self._confirm_listener.on_return(message, reason)

    def publish(
        self,
        routing: str,
        message: Union[Message, str, bytes],
        mandatory: bool = False,
    ) -> PublishResult:
        """
        Publish a message to the configured exchange.

        :param routing: Routing key
        :param message: Message, or a plain body wrapped with MessageFactory
        :param mandatory: The message must be routable. Enables confirm mode,
            an unroutable message yields REJECTED. The `publisher_confirms`
            property enables confirm mode even when this is false.
        :return: The tri-state publish result
        :raises ConfigurationError: If confirm mode is requested on a channel
            already used for a batch transaction
        """
        message = self._message_factory.create(message)
        self._result = PublishResult.PENDING

        if mandatory or self._config.get("publisher_confirms", False):
            self.enable_confirms()

        channel = self._connection_manager.get_channel()
        exchange = self._config.get("exchange", "")
        started = time.monotonic()

        try:
            acked = channel.basic.publish(
                body=message.body,
                routing_key=routing,
                exchange=exchange,
                properties=message.properties or None,
                mandatory=mandatory,
            )
        except AMQPMessageError as e:
            self._handle_return(message, str(e))
            return self._result
        except AMQPConnectionError as e:
            raise ConnectionFailedError(str(e)) from e
        except AMQPChannelError as e:
            if self._confirms_enabled and time.monotonic() - started >= self.publish_timeout:
                logger.warning(
                    "No confirm for message to %s/%s within %ss",
                    exchange,
                    routing,
                    self.publish_timeout,
                )
                return self._result
            raise ProtocolError(str(e), reply_code=getattr(e, "error_code", None)) from e

        if self._transactional:
            with translate_amqp_errors(f"committing message to {exchange}"):
                channel.tx.commit()

        logger.debug("Message published to exchange %s with routing key %s", exchange, routing)

        if not self._confirms_enabled:
            self._set_result(PublishResult.CONFIRMED)
        elif acked is False:
            self._handle_nack(message)
        else:
            self._handle_ack(message)
        return self._result

    def wait_for_confirms(self) -> PublishResult:
        """
        Surface any confirm outcome still held by the channel.

        The transport resolves acks and nacks synchronously within publish,
        so this only drains late unroutable returns.

        :raises ConfirmsNotEnabledError: If the channel is not in confirm mode
        """
        if not self._confirms_enabled:
            raise ConfirmsNotEnabledError(
                "Cannot wait for confirms, publisher confirms are not enabled on this channel"
            )
        channel = self._connection_manager.get_channel()
        try:
            channel.check_for_errors()
        except AMQPMessageError as e:
            self._handle_return(None, str(e))
        except AMQPConnectionError as e:
            raise ConnectionFailedError(str(e)) from e
        except AMQPChannelError as e:
            raise ProtocolError(str(e), reply_code=getattr(e, "error_code", None)) from e
        return self._result

    def batch_publish(self, batch: BatchManager) -> int:
        """
        Flush every buffered message in one channel transaction.

        The buffer is cleared only once the commit has succeeded. On failure
        the transaction is rolled back and the buffer is left untouched.
        The channel stays in transaction mode afterwards, so later single
        publishes on this publisher are committed one by one and confirm mode
        can no longer be enabled.

        :param batch: The caller's batch
        :return: Number of messages published
        """
        if batch.is_empty():
            return 0
        if self._confirms_enabled:
            raise ConfigurationError("Batch publishing is not available on a channel in confirm mode")

        entries = []
        for entry in batch.get_messages():
            if not entry.routing or entry.message is None:
                logger.warning("Skipping batch entry without routing key or message")
                continue
            entries.append((entry.routing, self._message_factory.create(entry.message)))

        channel = self._connection_manager.get_channel()
        exchange = self._config.get("exchange", "")

        with translate_amqp_errors(f"publishing batch of {len(entries)} to {exchange}"):
            if not self._transactional:
                channel.tx.select()
                self._transactional = True
            try:
                for routing, message in entries:
                    channel.basic.publish(
                        body=message.body,
                        routing_key=routing,
                        exchange=exchange,
                        properties=message.properties or None,
                    )
                channel.tx.commit()
            except AMQPError:
                try:
                    channel.tx.rollback()
                except AMQPError as rollback_error:
                    logger.warning("Error rolling back batch: %s", rollback_error)
                raise

        batch.clear()
        logger.info("Batch of %d message(s) published to exchange %s", len(entries), exchange)
        return len(entries)
