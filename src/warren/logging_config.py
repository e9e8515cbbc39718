"""
Logging setup for processes built on warren.

The library itself only emits through module loggers. Applications call
`setup_logging()` once at startup to get console output and, with the `otel`
extra installed, export to an OTLP collector.
"""

import logging
import os
import sys
from typing import Optional, Union

try:
    from opentelemetry._logs import set_logger_provider
    from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
    from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
    from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
    from opentelemetry.sdk.resources import Resource

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False

from warren.config import SERVICE_NAME

# transport library that logs every heartbeat and frame
QUIET_LOGGERS = ("amqpstorm",)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    component_name: Optional[str] = None,
    app_env: Optional[str] = None,
    force_setup: bool = False,
    enable_otel: bool = False,
    enable_console: bool = True,
    otel_endpoint: Optional[str] = None,
) -> None:
    """
    Configure the root logger for a warren process.

    Calling it again is a no-op apart from the level, unless `force_setup`
    is set, in which case the installed handlers are replaced.

    Args:
        level: Level as a number or a name such as "DEBUG" (default: INFO)
        component_name: Name of the process component (e.g., 'rpc-worker', 'publisher')
        app_env: Deployment environment reported to the collector
        force_setup: Replace handlers that are already installed
        enable_otel: Export logs over OTLP (needs the `otel` extra)
        enable_console: Log to stdout
        otel_endpoint: OTLP collector endpoint, falls back to OTEL_EXPORTER_OTLP_LOGS_ENDPOINT
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root = logging.getLogger()
    if root.handlers and not force_setup:
        root.setLevel(level)
        return
    if force_setup:
        root.handlers.clear()

    if enable_otel and not OTEL_AVAILABLE:
        logging.getLogger(__name__).warning(
            "OTEL logging requested but opentelemetry is not installed"
        )
    elif enable_otel:
        _setup_otel_logging(SERVICE_NAME, component_name, app_env, otel_endpoint)

    if enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(create_formatter(component_name))
        root.addHandler(console)

    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger(SERVICE_NAME).setLevel(level)


def create_formatter(component_name: Optional[str] = None) -> logging.Formatter:
    """
    Console formatter: `<time> - [component] <logger> - <LEVEL> - <message>`.

    The component tag is omitted when no name is given.
    """
    prefix = f"[{component_name}] " if component_name else ""
    return logging.Formatter(
        f"%(asctime)s - {prefix}%(name)s - %(levelname)s - %(message)s"
    )


def _setup_otel_logging(
    service_name: str,
    component_name: Optional[str] = None,
    app_env: Optional[str] = None,
    otel_endpoint: Optional[str] = None,
) -> None:
    attributes = {
        "service.name": service_name,
        "service.instance.id": os.uname().nodename,
    }
    if component_name:
        attributes["service.component"] = component_name
    if app_env:
        attributes["deployment.environment"] = app_env

    provider = LoggerProvider(resource=Resource.create(attributes))
    set_logger_provider(provider)

    exporter = OTLPLogExporter(
        endpoint=otel_endpoint or os.getenv("OTEL_EXPORTER_OTLP_LOGS_ENDPOINT"),
        insecure=True,
    )
    provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=provider))
