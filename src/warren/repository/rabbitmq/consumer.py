"""
RabbitMQ consumer implementation.

The consume loop runs on the caller's thread: it pumps the channel until
every consumer callback is cancelled, the session asks to stop, the idle
timeout elapses, or the transport fails.
"""

import logging
import time
from typing import Any, Callable, Optional

from amqpstorm import AMQPChannelError, AMQPConnectionError, AMQPError
from amqpstorm import Message as AmqpMessage

from warren.config import AmqpConfig
from warren.exceptions import ConnectionFailedError, GracefulStop, ProtocolError
from warren.models import Continuation
from warren.repository.rabbitmq.connection import ConnectionManager
from warren.repository.rabbitmq.topology import ExchangeManager, QueueManager
from warren.repository.rabbitmq.util import normalize_arguments, translate_amqp_errors

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_SIGNAL = "quit"
# pause between polls when no delivery is waiting
IDLE_WAIT = 0.01

ConsumeCallback = Callable[[AmqpMessage, "ConsumerSession"], Optional[Continuation]]


class ConsumerSession:
    """
    State of one `consume()` call, handed to the callback with every delivery.

    Created when consume starts and discarded when its loop exits.
    """

    def __init__(
        self,
        queue: str,
        channel: Any,
        initial_count: int,
        shutdown_signal: str = DEFAULT_SHUTDOWN_SIGNAL,
        consumer_tag: str = "",
    ) -> None:
        self.queue = queue
        self.channel = channel
        self.consumer_tag = consumer_tag
        self.initial_count = max(0, initial_count)
        self.remaining = self.initial_count
        self.shutdown_signal = shutdown_signal
        self.deliveries = 0
        self.stopped = False

    def acknowledge(self, message: AmqpMessage) -> None:
        """
        Ack the delivery. A body equal to the shutdown signal also cancels
        the consumer that received it.
        """
        self.channel.basic.ack(delivery_tag=message.delivery_tag)
        logger.debug("Message acknowledged: %s", message.delivery_tag)

        if _body_text(message.body) == self.shutdown_signal:
            consumer_tag = (message.method or {}).get("consumer_tag") or self.consumer_tag
            logger.info("Shutdown signal received, cancelling consumer %s", consumer_tag)
            self.channel.basic.cancel(consumer_tag)

    def reject(self, message: AmqpMessage, requeue: bool = False) -> None:
        self.channel.basic.reject(delivery_tag=message.delivery_tag, requeue=requeue)
        logger.debug("Message rejected: %s requeue=%s", message.delivery_tag, requeue)

    def stop_when_processed(self) -> Continuation:
        """
        Count one message as processed.

        :return: STOP once every message present at declare time was handled
        """
        self.remaining = max(0, self.remaining - 1)
        if self.remaining <= 0:
            self.stopped = True
            return Continuation.STOP
        return Continuation.CONTINUE

    def stop(self) -> Continuation:
        self.stopped = True
        return Continuation.STOP


def _body_text(body: Any) -> Any:
    if isinstance(body, bytes):
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError:
            return body
    return body


class Consumer:
    def __init__(
        self,
        config: AmqpConfig,
        connection_manager: ConnectionManager,
        exchange_manager: Optional[ExchangeManager] = None,
        queue_manager: Optional[QueueManager] = None,
    ) -> None:
        self._config = config
        self._connection_manager = connection_manager
        self._exchange_manager = exchange_manager or ExchangeManager(config, connection_manager)
        self._queue_manager = queue_manager or QueueManager(config, connection_manager)
        self._message_count = 0
        self._qos_configured = False

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._connection_manager

    @property
    def config(self) -> AmqpConfig:
        return self._config

    def setup(self) -> None:
        """Declare the exchange, then the queue and its bindings. Connects on first use."""
        self._exchange_manager.declare_exchange()
        self._queue_manager.declare_and_bind()
        self._message_count = self._queue_manager.get_message_count()

    def get_queue_message_count(self) -> int:
        return self._queue_manager.get_message_count()

    def configure_qos(self) -> None:
        """Apply prefetch limits once, before the subscription starts."""
        if self._qos_configured or not self._config.get("qos", False):
            return

        channel = self._connection_manager.get_channel()
        prefetch_size = int(self._config.get("qos_prefetch_size", 0))
        prefetch_count = int(self._config.get("qos_prefetch_count", 1))
        a_global = bool(self._config.get("qos_a_global", False))

        with translate_amqp_errors("setting qos"):
            channel.basic.qos(
                prefetch_count=prefetch_count,
                prefetch_size=prefetch_size,
                global_=a_global,
            )
        self._qos_configured = True
        logger.info(
            "QoS configured: prefetch_count=%d prefetch_size=%d global=%s",
            prefetch_count,
            prefetch_size,
            a_global,
        )

    def consume(self, queue: str, callback: ConsumeCallback) -> bool:
        """
        Consume from `queue` until a stop condition is met.

        Graceful stops (empty queue in non-persistent mode, every message
        processed, idle timeout, GracefulStop raised by the callback) return
        True. Transport failures propagate.

        :param queue: Queue to consume from
        :param callback: Called as `callback(message, session)` per delivery;
            may return Continuation.STOP to end the loop
        :return: True
        """
        persistent = bool(self._config.get("persistent", False))
        if not persistent and self._message_count == 0:
            logger.info("Queue %s is empty and session is not persistent, nothing to consume", queue)
            return True

        self.configure_qos()

        channel = self._connection_manager.get_channel()
        session = ConsumerSession(
            queue=queue,
            channel=channel,
            initial_count=self._message_count,
            shutdown_signal=self._config.get("shutdown_signal", DEFAULT_SHUTDOWN_SIGNAL),
        )

        def _on_message(message: AmqpMessage) -> None:
            if session.stopped:
                return
            session.deliveries += 1
            continuation = callback(message, session)
            if continuation is Continuation.STOP:
                session.stop()

        no_local = bool(self._config.get("consumer_no_local", False))
        if self._config.get("consumer_nowait", False):
            logger.warning("consumer_nowait is not supported by the transport and is ignored")

        with translate_amqp_errors(f"subscribing to {queue}"):
            session.consumer_tag = channel.basic.consume(
                callback=_on_message,
                queue=queue,
                consumer_tag=self._config.get("consumer_tag", ""),
                exclusive=bool(self._config.get("consumer_exclusive", False)),
                no_ack=bool(self._config.get("consumer_no_ack", False)),
                no_local=no_local,
                arguments=normalize_arguments(self._config.get("consumer_properties")),
            )
        logger.info("Consuming from %s with consumer tag %s", queue, session.consumer_tag)

        timeout = max(0, int(self._config.get("timeout", 0)))
        try:
            self._wait(channel, session, timeout)
        except GracefulStop:
            logger.info("Consumer %s stopped by callback", session.consumer_tag)
        except AMQPConnectionError as e:
            raise ConnectionFailedError(str(e)) from e
        except AMQPChannelError as e:
            raise ProtocolError(str(e), reply_code=getattr(e, "error_code", None)) from e

        self._cancel(channel, session)
        return True

    def _wait(self, channel: Any, session: ConsumerSession, timeout: int) -> None:
        last_activity = time.monotonic()
        while channel.consumer_tags:
            deliveries = session.deliveries
            channel.process_data_events()

            if session.stopped:
                logger.info("Consumer %s finished processing", session.consumer_tag)
                return

            if session.deliveries != deliveries:
                last_activity = time.monotonic()

            if timeout and time.monotonic() - last_activity >= timeout:
                logger.info("No delivery for %ss on %s, stopping", timeout, session.queue)
                return

            time.sleep(IDLE_WAIT)

    def _cancel(self, channel: Any, session: ConsumerSession) -> None:
        try:
            if session.consumer_tag in channel.consumer_tags and channel.is_open:
                channel.basic.cancel(session.consumer_tag)
                logger.debug("Consumer %s cancelled", session.consumer_tag)
        except AMQPError as e:
            logger.warning("Error cancelling consumer %s: %s", session.consumer_tag, e)
