import contextlib
import logging
from typing import Any, Iterator, Mapping, Optional, Union

from amqpstorm import AMQPChannelError, AMQPConnectionError, AMQPError

from warren.exceptions import ConnectionFailedError, ProtocolError

logger = logging.getLogger(__name__)

# deprecated classic mirroring argument, rejected by current brokers
DEPRECATED_QUEUE_ARGUMENTS = frozenset(["x-ha-policy"])


def normalize_arguments(arguments: Optional[Mapping[str, Any]]) -> Optional[dict]:
    """
    Convert an argument table to what amqpstorm expects.

    :param arguments: Argument table, may be None or empty.
    :return: A copy of the table, or None when there is nothing to send.
    """
    if not arguments:
        return None
    return dict(arguments)


def normalize_queue_arguments(arguments: Optional[Mapping[str, Any]]) -> Optional[dict]:
    """
    Normalize a queue argument table before declaring.

    Drops deprecated keys (`x-ha-policy`) and keys whose value is None.
    Everything else, `x-queue-master-locator` included, is passed through
    without interpretation.

    :param arguments: Argument table from the `queue_properties` property.
    :return: The filtered table, or None if nothing is left.
    """
    if not arguments or not isinstance(arguments, Mapping):
        return None

    filtered = {
        key: value
        for key, value in arguments.items()
        if key not in DEPRECATED_QUEUE_ARGUMENTS and value is not None
    }
    return filtered or None


def normalize_routing_keys(routing: Union[str, list[str], tuple, None]) -> list[str]:
    """
    Turn the `routing` property into a list of non-empty routing keys.

    :param routing: A single routing key, a list of them, or None.
    :return: Routing keys in the given order with empty entries removed.
    """
    if routing is None:
        return []
    if isinstance(routing, str):
        routing = [routing]
    return [str(key) for key in routing if key]


@contextlib.contextmanager
def translate_amqp_errors(action: str) -> Iterator[None]:
    """
    Re-raise amqpstorm errors as warren errors.

    Connection-level failures become `ConnectionFailedError`. Channel-level
    rejections become `ProtocolError` carrying the broker text verbatim.

    :param action: Short description of what was attempted, used for logging.
    """
    try:
        yield
    except AMQPConnectionError as e:
        logger.error("Connection failure while %s: %s", action, e)
        raise ConnectionFailedError(str(e)) from e
    except AMQPChannelError as e:
        logger.error("Broker rejected %s: %s", action, e)
        raise ProtocolError(str(e), reply_code=getattr(e, "error_code", None)) from e
    except AMQPError as e:
        logger.error("AMQP error while %s: %s", action, e)
        raise ProtocolError(str(e), reply_code=getattr(e, "error_code", None)) from e
