"""
Server side of the RPC pattern.

Requests are JSON envelopes `{"procedure": "...", "params": [...]}` consumed
from `rpc_queue`. Every request gets exactly one `{"result": ..., "error": ...}`
reply on the default exchange, routed to the request's `reply_to` and carrying
its `correlation_id` unchanged.
"""

import abc
import logging
from typing import Any, Optional

from amqpstorm import Message as AmqpMessage
from pydantic import ValidationError

from warren.amqp import Amqp
from warren.exceptions import CannotCorrelateError, EnvelopeValidationError
from warren.models import RpcRequest, RpcResponse
from warren.repository.rabbitmq.consumer import ConsumerSession
from warren.repository.rabbitmq.util import translate_amqp_errors

logger = logging.getLogger(__name__)

PROCEDURE_NOT_FOUND = "procedure not found"

RPC_CONSUMER_PROPERTIES = {
    "queue_force_declare": True,
    "queue_durable": True,
    "consumer_no_ack": True,
    "persistent": True,
}


class ProcedureHandler(abc.ABC):
    """A named remote procedure."""

    @abc.abstractmethod
    def handle(self, params: list[Any]) -> Any:
        pass


class RpcServer:
    def __init__(self, amqp: Amqp, handlers: Optional[dict[str, ProcedureHandler]] = None):
        self._amqp = amqp
        self._handlers: dict[str, ProcedureHandler] = dict(handlers or {})

    def register(self, name: str, handler: ProcedureHandler) -> None:
        self._handlers[name] = handler
        logger.debug("Registered procedure %s", name)

    def get_handler(self, name: str) -> Optional[ProcedureHandler]:
        return self._handlers.get(name)

    @staticmethod
    def validate(body: Any) -> RpcRequest:
        """
        Parse and validate a request envelope.

        :raises EnvelopeValidationError: If the body is not JSON or the envelope
            lacks a string `procedure` or an array `params`
        """
        try:
            return RpcRequest.model_validate_json(body)
        except ValidationError as e:
            raise EnvelopeValidationError(e.errors(include_url=False, include_input=False)) from e

    def dispatch(self, body: Any) -> RpcResponse:
        """
        Run the procedure named in the envelope. Never raises: validation
        failures, unknown procedures and handler errors become error replies.
        """
        try:
            request = self.validate(body)
        except EnvelopeValidationError as e:
            logger.warning("Invalid RPC envelope: %s", e)
            return RpcResponse(error=_error_details(e))

        handler = self.get_handler(request.procedure)
        if handler is None:
            logger.warning("Unknown RPC procedure: %s", request.procedure)
            return RpcResponse(error=PROCEDURE_NOT_FOUND)

        try:
            response = RpcResponse(result=handler.handle(request.params))
            # results that cannot be encoded must fail here, not in reply()
            response.model_dump_json()
            return response
        except Exception as e:
            logger.exception("RPC procedure %s failed", request.procedure)
            return RpcResponse(error=str(e))

    def reply(
        self,
        channel: Any,
        request: AmqpMessage,
        response: RpcResponse,
        content_type: str = "application/json",
    ) -> None:
        """
        Publish `response` to the requester.

        A reply queue that no longer exists drops the reply on the broker
        side. That is not detected here.

        :raises CannotCorrelateError: If the request has no reply_to or
            correlation_id
        """
        reply_to = request.reply_to
        correlation_id = request.correlation_id
        if not reply_to or not correlation_id:
            raise CannotCorrelateError(reply_to, correlation_id)

        with translate_amqp_errors(f"replying to {reply_to}"):
            channel.basic.publish(
                body=response.model_dump_json(),
                routing_key=reply_to,
                exchange="",
                properties={
                    "content_type": content_type,
                    "delivery_mode": 1,
                    "correlation_id": correlation_id,
                },
            )
        logger.debug("RPC reply sent to %s for %s", reply_to, correlation_id)

    def on_request(self, message: AmqpMessage, session: ConsumerSession) -> None:
        response = self.dispatch(message.body)
        content_type = self._amqp.config.get("content_type", "application/json")
        self.reply(session.channel, message, response, content_type=content_type)

    def serve(self, properties: Optional[dict[str, Any]] = None) -> bool:
        """
        Answer requests from `rpc_queue` until the consumer stops.

        The queue is always declared (durable) and deliveries are auto-acked.
        """
        overrides = dict(properties or {})
        overrides.update(RPC_CONSUMER_PROPERTIES)
        queue = overrides.get("rpc_queue") or self._amqp.config.get("rpc_queue")
        logger.info("Serving RPC on %s with %d procedure(s)", queue, len(self._handlers))
        return self._amqp.consume(queue, self.on_request, overrides)


def _error_details(error: EnvelopeValidationError) -> dict[str, list[str]]:
    details: dict[str, list[str]] = {}
    for item in error.errors:
        field = ".".join(str(part) for part in item.get("loc", ())) or "envelope"
        details.setdefault(field, []).append(item.get("msg", "invalid"))
    return details
