"""
RabbitMQ messaging implementation on top of amqpstorm.

Public API:
    - ConnectionManager: One connection+channel pair per session
    - ExchangeManager, QueueManager: Declare and bind from a property set
    - Management: Purge, delete and unbind maintenance operations
    - Publisher: Publish with optional confirms, transactional batch flush
    - Consumer, ConsumerSession: Bounded consume loop with QoS and stop conditions
"""

from .connection import ConnectionManager
from .consumer import Consumer, ConsumerSession
from .publisher import BatchEntry, BatchManager, ConfirmListener, Publisher
from .topology import ExchangeManager, Management, QueueManager

__all__ = [
    # Connection
    "ConnectionManager",
    # Topology
    "ExchangeManager",
    "QueueManager",
    "Management",
    # Publishing
    "Publisher",
    "ConfirmListener",
    "BatchManager",
    "BatchEntry",
    # Consuming
    "Consumer",
    "ConsumerSession",
]
