"""
Repository package for broker access.

AMQP sessions, topology and maintenance operations live in `rabbitmq`.
"""
