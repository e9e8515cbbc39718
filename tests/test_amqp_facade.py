"""
Tests for the Amqp facade and the publisher/consumer factories.
"""

import unittest
from unittest.mock import Mock

import pytest

from warren.amqp import Amqp
from warren.config import AmqpConfig
from warren.exceptions import ConfigurationError, ProtocolError
from warren.factories import ConsumerFactory, PublisherFactory
from warren.models import Message, PublishResult
from warren.repository.rabbitmq.consumer import Consumer
from warren.repository.rabbitmq.publisher import BatchManager, Publisher
from warren.repository.rabbitmq.topology import Management


class TestAmqpFacade(unittest.TestCase):
    """Facade behaviour with mocked factories."""

    def setUp(self):
        self.config = AmqpConfig({"exchange": "events"})

        self.publisher = Mock(spec=Publisher)
        self.publisher.config = self.config
        self.publisher.confirms_enabled = False
        self.publisher.publish.return_value = PublishResult.CONFIRMED
        self.publisher_factory = Mock(spec=PublisherFactory)
        self.publisher_factory.create.return_value = self.publisher

        self.consumer = Mock(spec=Consumer)
        self.consumer.consume.return_value = True
        self.consumer_factory = Mock(spec=ConsumerFactory)
        self.consumer_factory.create.return_value = self.consumer

        self.amqp = Amqp(
            self.config,
            publisher_factory=self.publisher_factory,
            consumer_factory=self.consumer_factory,
        )

    def test_publish_sets_routing_and_disconnects(self):
        result = self.amqp.publish("a.b", "hello", {"application_headers": {"k": "v"}})

        self.assertIs(result, PublishResult.CONFIRMED)
        properties = self.publisher_factory.create.call_args[0][0]
        self.assertEqual(properties["routing"], "a.b")

        routing, message, mandatory = self.publisher.publish.call_args[0]
        self.assertEqual(routing, "a.b")
        self.assertEqual(message.body, "hello")
        self.assertEqual(message.get("content_type"), "text/plain")
        self.assertEqual(message.get("delivery_mode"), 2)
        self.assertEqual(message.headers, {"k": "v"})
        self.assertFalse(mandatory)
        self.publisher.connection_manager.disconnect.assert_called_once()

    def test_publish_does_not_mutate_caller_properties(self):
        properties = {"mandatory": True}
        self.amqp.publish("a.b", "hello", properties)
        self.assertEqual(properties, {"mandatory": True})

    def test_publish_mandatory_from_properties(self):
        self.publisher.config = self.config.merge({"mandatory": True})
        self.amqp.publish("a.b", "hello", {"mandatory": True})
        self.assertTrue(self.publisher.publish.call_args[0][2])

    def test_publish_waits_for_confirms_when_enabled(self):
        self.publisher.confirms_enabled = True
        self.publisher.wait_for_confirms.return_value = PublishResult.REJECTED

        self.assertIs(self.amqp.publish("a.b", "hello"), PublishResult.REJECTED)

    def test_publish_skips_wait_when_disabled(self):
        self.publisher.confirms_enabled = True
        self.publisher.config = self.config.merge({"wait_for_confirms": False})

        self.amqp.publish("a.b", "hello")
        self.publisher.wait_for_confirms.assert_not_called()

    def test_publish_disconnects_on_error(self):
        self.publisher.publish.side_effect = ProtocolError("NOT_FOUND")

        with self.assertRaises(ProtocolError):
            self.amqp.publish("a.b", "hello")
        self.publisher.connection_manager.disconnect.assert_called_once()

    def test_publish_keeps_message_objects(self):
        message = Message(body="{}", properties={"content_type": "application/json"})
        self.amqp.publish("a.b", message)
        self.assertIs(self.publisher.publish.call_args[0][1], message)

    def test_batch_publish_empty_opens_nothing(self):
        self.assertEqual(self.amqp.batch_publish(), 0)
        self.publisher_factory.create.assert_not_called()

    def test_batch_publish_uses_facade_batch(self):
        self.publisher.batch_publish.return_value = 2
        self.amqp.batch_basic_publish("a", "one")
        self.amqp.batch_basic_publish("b", "two")

        self.assertEqual(self.amqp.batch_publish({"publish_timeout": 3}), 2)
        self.publisher_factory.create.assert_called_once_with({"publish_timeout": 3})
        self.publisher.batch_publish.assert_called_once_with(self.amqp.batch_manager)
        self.publisher.connection_manager.disconnect.assert_called_once()

    def test_batch_publish_with_caller_batch(self):
        batch = BatchManager()
        self.amqp.batch_basic_publish("a", "one", batch=batch)

        self.assertTrue(self.amqp.batch_manager.is_empty())
        self.amqp.batch_publish(batch=batch)
        self.publisher.batch_publish.assert_called_once_with(batch)

    def test_consume_sets_queue_and_disconnects(self):
        callback = Mock()
        self.assertTrue(self.amqp.consume("jobs", callback, {"persistent": False}))

        self.consumer_factory.create.assert_called_once_with({"persistent": False, "queue": "jobs"})
        self.consumer.consume.assert_called_once_with("jobs", callback)
        self.consumer.connection_manager.disconnect.assert_called_once()

    def test_consume_disconnects_on_error(self):
        self.consumer.consume.side_effect = RuntimeError("callback failed")
        with self.assertRaises(RuntimeError):
            self.amqp.consume("jobs", Mock())
        self.consumer.connection_manager.disconnect.assert_called_once()

    def test_message_builder(self):
        message = self.amqp.message("body", {"priority": 3})
        self.assertEqual(message.priority, 3)

    def test_management_handle(self):
        management = self.amqp.management({"host": "other.broker"})
        self.assertIsInstance(management, Management)
        self.assertEqual(management.config.get("host"), "other.broker")


def test_publisher_factory_runs_setup(mock_connection_class, fake_channel, amqp_config):
    publisher = PublisherFactory(amqp_config).create({"routing": "a.b"})

    assert publisher.config.get("routing") == "a.b"
    fake_channel.exchange.declare.assert_called_once()
    # publish-only sessions have no queue
    fake_channel.queue.declare.assert_not_called()


def test_consumer_factory_snapshots_count(mock_connection_class, fake_channel, amqp_config):
    fake_channel.declare_result = {"queue": "jobs", "message_count": 4, "consumer_count": 0}
    consumer = ConsumerFactory(amqp_config).create({"queue": "jobs", "routing": ["x", "y"]})

    assert consumer.get_queue_message_count() == 4
    assert fake_channel.queue.bind.call_count == 2


def test_factory_disconnects_when_setup_fails(mock_connection_class, fake_channel, amqp_config):
    fake_channel.exchange.declare.side_effect = ProtocolError("PRECONDITION_FAILED")

    with pytest.raises(ProtocolError):
        PublisherFactory(amqp_config).create()
    fake_channel.close.assert_called_once()


def test_factory_configuration_error_before_network(mock_connection_class, amqp_config):
    with pytest.raises(ConfigurationError):
        PublisherFactory(amqp_config).create({"exchange": ""})
    mock_connection_class.assert_not_called()


def test_publish_end_to_end(mock_connection_class, fake_channel, amqp_config):
    amqp = Amqp(amqp_config)

    assert amqp.publish("a.b", "hello") is PublishResult.CONFIRMED

    fake_channel.basic.publish.assert_called_once()
    fake_channel.close.assert_called_once()


def test_mandatory_end_to_end_unroutable(mock_connection_class, fake_channel, amqp_config):
    from amqpstorm import AMQPMessageError

    fake_channel.basic.publish.side_effect = AMQPMessageError("Message not delivered: NO_ROUTE")
    amqp = Amqp(amqp_config)

    result = amqp.publish("unbound", "hello", {"mandatory": True})

    assert not result
    fake_channel.confirm_deliveries.assert_called_once()


def test_consume_end_to_end(mock_connection_class, fake_channel, amqp_config, make_message):
    fake_channel.declare_result = {"queue": "jobs", "message_count": 2, "consumer_count": 0}
    fake_channel.deliver(make_message("one"), make_message("two"))
    seen = []

    def callback(message, session):
        seen.append(message.body)
        session.acknowledge(message)
        return session.stop_when_processed()

    assert Amqp(amqp_config).consume("jobs", callback, {"persistent": False}) is True
    assert seen == ["one", "two"]
    fake_channel.close.assert_called_once()


def test_batch_end_to_end(mock_connection_class, fake_channel, amqp_config):
    amqp = Amqp(amqp_config)
    for i in range(4):
        amqp.batch_basic_publish(f"key.{i}", f"message {i}")

    assert amqp.batch_publish() == 4
    assert fake_channel.basic.publish.call_count == 4
    fake_channel.tx.commit.assert_called_once()
    assert amqp.batch_manager.is_empty()
