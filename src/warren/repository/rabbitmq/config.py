from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from warren.config import AmqpConfig
from warren.repository.rabbitmq.util import (
    normalize_arguments,
    normalize_queue_arguments,
    normalize_routing_keys,
)

DEFAULT_HEARTBEAT = 60
DEFAULT_PUBLISH_TIMEOUT = 30


class ConnectionConfig(BaseModel):
    """Connection parameters for a single connect attempt."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 5672
    username: str = "guest"
    password: str = "guest"
    vhost: str = "/"
    ssl_options: dict[str, Any] = {}
    heartbeat: int = DEFAULT_HEARTBEAT
    connection_timeout: Optional[float] = None
    channel_rpc_timeout: float = DEFAULT_PUBLISH_TIMEOUT

    @property
    def ssl_enabled(self) -> bool:
        return bool(self.ssl_options)

    @classmethod
    def from_config(cls, config: AmqpConfig) -> "ConnectionConfig":
        publish_timeout = max(1, int(config.get("publish_timeout", DEFAULT_PUBLISH_TIMEOUT)))
        return cls(
            host=config.get("host", "localhost"),
            port=int(config.get("port", 5672)),
            username=config.get("username", "guest"),
            password=config.get("password", "guest"),
            vhost=config.get("vhost", "/"),
            ssl_options=dict(config.get("ssl_options", {}) or {}),
            heartbeat=int(config.get_connect_option("heartbeat", DEFAULT_HEARTBEAT)),
            connection_timeout=config.get_connect_option("connection_timeout"),
            channel_rpc_timeout=float(
                config.get_connect_option("channel_rpc_timeout", publish_timeout)
            ),
        )


@dataclass(frozen=True)
class ExchangeSpec:
    name: str
    type: str = "topic"
    passive: bool = False
    durable: bool = True
    auto_delete: bool = False
    internal: bool = False
    nowait: bool = False
    arguments: Optional[dict] = None

    @classmethod
    def from_config(cls, config: AmqpConfig) -> "ExchangeSpec":
        return cls(
            name=config.get("exchange", ""),
            type=config.get("exchange_type", "topic"),
            passive=bool(config.get("exchange_passive", False)),
            durable=bool(config.get("exchange_durable", True)),
            auto_delete=bool(config.get("exchange_auto_delete", False)),
            internal=bool(config.get("exchange_internal", False)),
            nowait=bool(config.get("exchange_nowait", False)),
            arguments=normalize_arguments(config.get("exchange_properties")),
        )


@dataclass(frozen=True)
class QueueSpec:
    """
    Queue declaration settings.

    An empty name asks the broker to generate one; the generated name is
    reported back in `QueueInfo.queue`.
    """

    name: str = ""
    passive: bool = False
    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    nowait: bool = False
    arguments: Optional[dict] = None

    @classmethod
    def from_config(cls, config: AmqpConfig) -> "QueueSpec":
        return cls(
            name=config.get("queue", "") or "",
            passive=bool(config.get("queue_passive", False)),
            durable=bool(config.get("queue_durable", True)),
            exclusive=bool(config.get("queue_exclusive", False)),
            auto_delete=bool(config.get("queue_auto_delete", False)),
            nowait=bool(config.get("queue_nowait", False)),
            arguments=normalize_queue_arguments(config.get("queue_properties")),
        )


@dataclass(frozen=True)
class Binding:
    queue: str
    exchange: str
    routing_key: str


@dataclass
class BindingConfig:
    exchange: str
    routing_keys: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: AmqpConfig) -> "BindingConfig":
        return cls(
            exchange=config.get("exchange", ""),
            routing_keys=normalize_routing_keys(config.get("routing")),
        )

    def bindings_for(self, queue: str) -> list[Binding]:
        return [Binding(queue, self.exchange, key) for key in self.routing_keys]
