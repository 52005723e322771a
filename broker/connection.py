"""
Connection and channel helpers shared by the consumer and the producer.

Every helper turns a pika failure into the phase-tagged error of the step
it belongs to, logging the outcome in the usual action/result format.
"""

import logging
from contextlib import contextmanager

import pika
from pika.exceptions import AMQPError

from common.utils import log_action, redact_uri
from .errors import (
    ChannelOpenError,
    ConnectionCloseError,
    DialError,
    ExchangeDeclareError,
)

# Failures pika reports while talking to the broker
BROKER_ERRORS = (AMQPError, OSError, ValueError)


@contextmanager
def broker_step(error_cls, action, **fields):
    """Run one broker call, wrapping its failure in error_cls"""
    try:
        yield
    except BROKER_ERRORS as e:
        log_action(action, "fail", level=logging.ERROR, error=e, extra_fields=fields)
        raise error_cls(e) from e
    log_action(action, "success", level=logging.DEBUG, extra_fields=fields)


def connection_parameters(amqp_uri, timeout):
    """Build pika parameters from an amqp:// URI, bounding every socket wait"""
    parameters = pika.URLParameters(amqp_uri)
    parameters.socket_timeout = timeout
    parameters.stack_timeout = timeout
    parameters.blocked_connection_timeout = timeout
    return parameters


def dial(amqp_uri, timeout):
    uri = redact_uri(amqp_uri)
    log_action("dial", "in_progress", extra_fields={"uri": uri})
    with broker_step(DialError, "dial", uri=uri):
        return pika.BlockingConnection(connection_parameters(amqp_uri, timeout))


def open_channel(connection):
    with broker_step(ChannelOpenError, "channel_open"):
        return connection.channel()


def declare_exchange(channel, exchange, exchange_type):
    """Declare a durable, non auto-deleted, non internal exchange"""
    with broker_step(
        ExchangeDeclareError,
        "declare_exchange",
        exchange=exchange,
        exchange_type=exchange_type,
    ):
        channel.exchange_declare(
            exchange=exchange,
            exchange_type=exchange_type,
            durable=True,
            auto_delete=False,
            internal=False,
        )


def close_connection(connection):
    if connection is None or connection.is_closed:
        return
    with broker_step(ConnectionCloseError, "connection_close"):
        connection.close()
