"""
RabbitMQ connection management.

A ConnectionManager owns exactly one amqpstorm connection and the single
channel opened on it. Publishers and consumers each hold their own manager,
channels are never shared between sessions or threads.
"""

import logging
import ssl
from typing import Any, Optional

from amqpstorm import AMQPError, Channel, Connection

from warren.config import AmqpConfig
from warren.exceptions import ConnectionFailedError
from warren.repository.rabbitmq.config import ConnectionConfig

logger = logging.getLogger(__name__)


def get_ssl_options(hostname: str, ssl_options: dict[str, Any]) -> dict:
    """
    Build amqpstorm SSL options from the `ssl_options` property.

    Recognized keys: cafile, local_cert, local_key, passphrase, verify_peer,
    verify_peer_name. A fresh context is created on every call so contexts are
    never reused across connect attempts.

    :param hostname: Server hostname used for certificate verification
    :param ssl_options: The `ssl_options` property map
    :return: Dictionary with SSL context and server hostname
    :raises ConnectionFailedError: If hostname is empty or None
    """
    if hostname is None or len(hostname) == 0:
        raise ConnectionFailedError("SSL is enabled but no hostname provided")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    cafile = ssl_options.get("cafile")
    if cafile:
        context.load_verify_locations(cafile=cafile)
    else:
        context.load_default_certs(purpose=ssl.Purpose.SERVER_AUTH)

    local_cert = ssl_options.get("local_cert")
    if local_cert:
        context.load_cert_chain(
            certfile=local_cert,
            keyfile=ssl_options.get("local_key"),
            password=ssl_options.get("passphrase"),
        )

    verify_peer = bool(ssl_options.get("verify_peer", True))
    verify_peer_name = bool(ssl_options.get("verify_peer_name", True))

    # check_hostname has to be cleared before verify_mode can be relaxed
    context.check_hostname = verify_peer and verify_peer_name
    context.verify_mode = ssl.CERT_REQUIRED if verify_peer else ssl.CERT_NONE

    logger.debug("Created SSL context for hostname: %s", hostname)
    return {
        "context": context,
        "server_hostname": hostname,
    }


class ConnectionManager:
    """
    Owns one connection+channel pair.

    `connect` is idempotent and `disconnect` is best-effort. There is no
    automatic reconnection: a failed connect raises ConnectionFailedError and
    retry policy is left to the caller.
    """

    def __init__(self, config: AmqpConfig) -> None:
        self._config = config
        self._connection: Optional[Connection] = None
        self._channel: Optional[Channel] = None

    @property
    def config(self) -> AmqpConfig:
        return self._config

    def _connection_params(self, connection_config: ConnectionConfig) -> dict:
        params: dict[str, Any] = {
            "hostname": connection_config.host,
            "port": connection_config.port,
            "username": connection_config.username,
            "password": connection_config.password,
            "virtual_host": connection_config.vhost,
            "heartbeat": connection_config.heartbeat,
        }
        if connection_config.connection_timeout is not None:
            params["timeout"] = connection_config.connection_timeout

        if connection_config.ssl_enabled:
            params["ssl"] = True
            params["ssl_options"] = get_ssl_options(
                connection_config.host, connection_config.ssl_options
            )
        return params

    def connect(self) -> None:
        """
        Establish the connection and open its channel, unless already connected.

        :raises ConnectionFailedError: If the broker cannot be reached
        """
        if self.is_connected():
            return

        connection_config = ConnectionConfig.from_config(self._config)
        params = self._connection_params(connection_config)

        logger.info(
            "Establishing RabbitMQ connection to %s:%s vhost=%s SSL=%s",
            connection_config.host,
            connection_config.port,
            connection_config.vhost,
            connection_config.ssl_enabled,
        )
        try:
            self._connection = Connection(**params)
            self._channel = self._connection.channel(
                rpc_timeout=connection_config.channel_rpc_timeout
            )
        except (AMQPError, OSError) as e:
            logger.error("Failed to establish RabbitMQ connection: %s", e)
            self._close_quietly()
            raise ConnectionFailedError(
                f"Unable to connect to {connection_config.host}:{connection_config.port}: {e}"
            ) from e

        logger.info("RabbitMQ connection established")

    def get_channel(self) -> Channel:
        if self._channel is None:
            self.connect()
        return self._channel

    def get_connection(self) -> Connection:
        if self._connection is None:
            self.connect()
        return self._connection

    def is_connected(self) -> bool:
        try:
            return (
                self._connection is not None
                and self._channel is not None
                and bool(self._connection.is_open)
            )
        except Exception:
            return False

    def _close_quietly(self) -> None:
        try:
            if self._channel is not None and self._channel.is_open:
                self._channel.close()
                logger.debug("Channel closed")
        except Exception as e:
            logger.warning("Error closing channel: %s", e)

        try:
            if self._connection is not None and self._connection.is_open:
                self._connection.close()
                logger.debug("Connection closed")
        except Exception as e:
            logger.warning("Error closing connection: %s", e)

        self._channel = None
        self._connection = None

    def disconnect(self) -> None:
        """Close channel then connection. Errors during close are logged, never raised."""
        if self._connection is None and self._channel is None:
            return
        logger.info("Closing RabbitMQ connection")
        self._close_quietly()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False
