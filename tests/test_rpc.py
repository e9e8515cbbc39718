import json
from unittest.mock import Mock

import pytest

from warren.amqp import Amqp
from warren.config import AmqpConfig
from warren.exceptions import CannotCorrelateError, EnvelopeValidationError
from warren.models import RpcResponse
from warren.repository.rabbitmq.consumer import ConsumerSession
from warren.rpc import PROCEDURE_NOT_FOUND, ProcedureHandler, RpcServer


class Add(ProcedureHandler):
    def handle(self, params):
        return sum(params)


class Explode(ProcedureHandler):
    def handle(self, params):
        raise RuntimeError("division by zero")


class Opaque(ProcedureHandler):
    def handle(self, params):
        return object()


@pytest.fixture
def server():
    amqp = Mock(spec=Amqp)
    amqp.config = AmqpConfig({"content_type": "application/json"})
    rpc_server = RpcServer(amqp)
    rpc_server.register("add", Add())
    rpc_server.register("explode", Explode())
    rpc_server.register("opaque", Opaque())
    return rpc_server


def test_dispatch_success(server):
    response = server.dispatch(json.dumps({"procedure": "add", "params": [1, 2, 3]}))
    assert response == RpcResponse(result=6, error=None)


def test_dispatch_bytes_body(server):
    response = server.dispatch(b'{"procedure": "add", "params": [4]}')
    assert response.result == 4


def test_dispatch_unknown_procedure(server):
    response = server.dispatch(json.dumps({"procedure": "nope", "params": []}))
    assert response.result is None
    assert response.error == PROCEDURE_NOT_FOUND


def test_dispatch_handler_error(server):
    response = server.dispatch(json.dumps({"procedure": "explode", "params": []}))
    assert response.result is None
    assert response.error == "division by zero"


def test_dispatch_unserializable_result(server):
    response = server.dispatch(json.dumps({"procedure": "opaque", "params": []}))
    assert response.result is None
    assert "serialize" in response.error


def test_dispatch_missing_procedure(server):
    response = server.dispatch(json.dumps({"params": []}))
    assert response.result is None
    assert "procedure" in response.error


def test_dispatch_params_not_array(server):
    response = server.dispatch(json.dumps({"procedure": "add", "params": {"a": 1}}))
    assert response.result is None
    assert "params" in response.error


def test_dispatch_invalid_json(server):
    response = server.dispatch("not json at all")
    assert response.result is None
    assert response.error


def test_validate_raises_envelope_error(server):
    with pytest.raises(EnvelopeValidationError) as exc_info:
        server.validate(json.dumps({"procedure": 12, "params": []}))
    assert exc_info.value.errors[0]["loc"] == ("procedure",)


def test_reply_uses_default_exchange(server, make_message):
    channel = Mock()
    request = make_message("{}", correlation_id="corr-9", reply_to="amq.gen-reply")

    server.reply(channel, request, RpcResponse(result=6), content_type="application/json")

    kwargs = channel.basic.publish.call_args[1]
    assert kwargs["exchange"] == ""
    assert kwargs["routing_key"] == "amq.gen-reply"
    assert kwargs["properties"] == {
        "content_type": "application/json",
        "delivery_mode": 1,
        "correlation_id": "corr-9",
    }
    assert json.loads(kwargs["body"]) == {"result": 6, "error": None}


def test_reply_without_reply_to(server, make_message):
    request = make_message("{}", correlation_id="corr-9")
    with pytest.raises(CannotCorrelateError, match="reply_to"):
        server.reply(Mock(), request, RpcResponse(result=1))


def test_reply_without_correlation_id(server, make_message):
    request = make_message("{}", reply_to="amq.gen-reply")
    with pytest.raises(CannotCorrelateError, match="correlation_id"):
        server.reply(Mock(), request, RpcResponse(result=1))


def test_on_request_dispatches_and_replies(server, make_message):
    channel = Mock()
    session = ConsumerSession("rpc-worker", channel, initial_count=1)
    request = make_message(
        json.dumps({"procedure": "add", "params": [2, 2]}),
        correlation_id="c-1",
        reply_to="replies",
    )

    server.on_request(request, session)

    kwargs = channel.basic.publish.call_args[1]
    assert json.loads(kwargs["body"])["result"] == 4
    assert kwargs["properties"]["correlation_id"] == "c-1"


def test_on_request_replies_when_result_cannot_be_encoded(server, make_message):
    channel = Mock()
    session = ConsumerSession("rpc-worker", channel, initial_count=1)
    request = make_message(
        json.dumps({"procedure": "opaque", "params": []}),
        correlation_id="c-2",
        reply_to="replies",
    )

    server.on_request(request, session)

    kwargs = channel.basic.publish.call_args[1]
    body = json.loads(kwargs["body"])
    assert body["result"] is None
    assert "serialize" in body["error"]
    assert kwargs["properties"]["correlation_id"] == "c-2"


def test_serve_consumes_rpc_queue(server):
    server._amqp.config = AmqpConfig()
    server._amqp.consume.return_value = True

    assert server.serve() is True

    queue, callback, properties = server._amqp.consume.call_args[0]
    assert queue == "rpc-worker"
    assert callback == server.on_request
    assert properties["queue_force_declare"] is True
    assert properties["queue_durable"] is True
    assert properties["consumer_no_ack"] is True
    assert properties["persistent"] is True


def test_serve_custom_queue(server):
    server._amqp.consume.return_value = True
    server.serve({"rpc_queue": "math"})
    assert server._amqp.consume.call_args[0][0] == "math"
