"""
Configuration for warren sessions.

Properties are resolved in layers: built-in defaults, then the selected
profile, then per-call overrides. Publishers and consumers only ever read
through `AmqpConfig.get`, so unknown keys pass through untouched and can be
used as opaque broker arguments by callers.
"""

from typing import Any, Mapping, Optional

from warren.exceptions import ConfigurationError

# Global service name for logging/observability systems
SERVICE_NAME = "warren"

DEFAULT_PROFILE = "production"

CONNECTION_KEYS = frozenset(
    [
        "host",
        "port",
        "username",
        "password",
        "vhost",
        "connect_options",
        "ssl_options",
    ]
)

EXCHANGE_KEYS = frozenset(
    [
        "exchange",
        "exchange_type",
        "exchange_passive",
        "exchange_durable",
        "exchange_auto_delete",
        "exchange_internal",
        "exchange_nowait",
        "exchange_properties",
    ]
)

QUEUE_KEYS = frozenset(
    [
        "queue",
        "queue_force_declare",
        "queue_passive",
        "queue_durable",
        "queue_exclusive",
        "queue_auto_delete",
        "queue_nowait",
        "queue_properties",
        "routing",
    ]
)

CONSUMER_KEYS = frozenset(
    [
        "consumer_tag",
        "consumer_no_local",
        "consumer_no_ack",
        "consumer_exclusive",
        "consumer_nowait",
        "consumer_properties",
        "timeout",
        "persistent",
        "shutdown_signal",
    ]
)

QOS_KEYS = frozenset(
    [
        "qos",
        "qos_prefetch_size",
        "qos_prefetch_count",
        "qos_a_global",
    ]
)

PUBLISH_KEYS = frozenset(
    [
        "content_type",
        "mandatory",
        "publisher_confirms",
        "wait_for_confirms",
        "publish_timeout",
        "application_headers",
    ]
)

RPC_KEYS = frozenset(["rpc_queue"])

KNOWN_KEYS = (
    CONNECTION_KEYS
    | EXCHANGE_KEYS
    | QUEUE_KEYS
    | CONSUMER_KEYS
    | QOS_KEYS
    | PUBLISH_KEYS
    | RPC_KEYS
)

DEFAULT_PROPERTIES: dict[str, Any] = {
    "host": "localhost",
    "port": 5672,
    "username": "guest",
    "password": "guest",
    "vhost": "/",
    "connect_options": {},
    "ssl_options": {},
    "content_type": "application/json",
    "exchange": "amq.topic",
    "exchange_type": "topic",
    "exchange_passive": False,
    "exchange_durable": True,
    "exchange_auto_delete": False,
    "exchange_internal": False,
    "exchange_nowait": False,
    "exchange_properties": {},
    "queue_force_declare": False,
    "queue_passive": False,
    "queue_durable": True,
    "queue_exclusive": False,
    "queue_auto_delete": False,
    "queue_nowait": False,
    "queue_properties": {"x-ha-policy": ["S", "all"]},
    "consumer_tag": "",
    "consumer_no_local": False,
    "consumer_no_ack": False,
    "consumer_exclusive": False,
    "consumer_nowait": False,
    "timeout": 0,
    "persistent": True,
    "queue": "worker",
    "rpc_queue": "rpc-worker",
    "publish_timeout": 30,
    "wait_for_confirms": True,
    "shutdown_signal": "quit",
    "qos": False,
    "qos_prefetch_size": 0,
    "qos_prefetch_count": 1,
    "qos_a_global": False,
    "mandatory": False,
    "publisher_confirms": False,
}


class AmqpConfig:
    """
    Layered property map.

    `merge` always layers over the original (defaults + profile) properties,
    so overrides from one call never leak into the next one.
    """

    def __init__(
        self,
        properties: Optional[Mapping[str, Any]] = None,
        include_defaults: bool = True,
    ) -> None:
        base: dict[str, Any] = dict(DEFAULT_PROPERTIES) if include_defaults else {}
        if properties:
            base.update(properties)
        self._original_properties = base
        self._properties = dict(base)

    @classmethod
    def from_profiles(
        cls,
        profiles: Mapping[str, Mapping[str, Any]],
        use: str = DEFAULT_PROFILE,
    ) -> "AmqpConfig":
        """
        Build a config from a `{profile_name: properties}` mapping.

        :param profiles: Available profiles
        :param use: Name of the profile to select
        :raises ConfigurationError: If the profile does not exist
        """
        if use not in profiles:
            raise ConfigurationError(f"Profile '{use}' is not defined in configuration.")
        return cls(profiles[use])

    def merge(self, overrides: Optional[Mapping[str, Any]] = None) -> "AmqpConfig":
        """Return a new config with `overrides` layered over the original properties."""
        merged = AmqpConfig(include_defaults=False)
        merged._original_properties = dict(self._original_properties)
        merged._properties = dict(self._original_properties)
        if overrides:
            merged._properties.update(overrides)
        return merged

    def get(self, key: str, default: Any = None) -> Any:
        value = self._properties.get(key)
        return default if value is None else value

    def get_connect_option(self, key: str, default: Any = None) -> Any:
        options = self.get("connect_options", {})
        if not isinstance(options, Mapping):
            return default
        value = options.get(key)
        return default if value is None else value

    def properties(self) -> dict[str, Any]:
        return dict(self._properties)

    def unknown_keys(self) -> set[str]:
        """Keys that are not part of any subsystem key set."""
        return set(self._properties) - KNOWN_KEYS

    def __contains__(self, key: str) -> bool:
        return key in self._properties

    def __repr__(self) -> str:
        safe = {
            k: ("***" if "password" in k else v) for k, v in self._properties.items()
        }
        return f"AmqpConfig({safe!r})"
