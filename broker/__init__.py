"""
RabbitMQ topic consumer and producer.

- RabbitMQConsumer: binds a private queue to an exchange and streams its
  deliveries through an iterator (one connection per consumer, own I/O thread)
- RabbitMQProducer: publishes one message per call, optionally waiting for
  the broker's publisher confirm (one connection per call)

Usage:
    consumer = RabbitMQConsumer(consumer_tag, ConsumerTimeouts(setup=10, shutdown=10))
    consumer.setup(amqp_uri, exchange, "topic", "", "orders.*")
    for delivery in consumer.deliveries():
        delivery.ack()
    consumer.completion().set(None)
    consumer.shutdown()

    producer = RabbitMQProducer(timeout=10)
    producer.publish(amqp_uri, exchange, "topic", "orders.created", b'{"x":1}', reliable=True)
"""

from .consumer import ConsumerState, ConsumerStatus, ConsumerTimeouts, RabbitMQConsumer
from .delivery import Delivery
from .envelope import PublishEnvelope
from .producer import Confirmation, RabbitMQProducer

__all__ = [
    "RabbitMQConsumer",
    "ConsumerTimeouts",
    "ConsumerState",
    "ConsumerStatus",
    "Delivery",
    "RabbitMQProducer",
    "Confirmation",
    "PublishEnvelope",
]
