import logging
import threading
from dataclasses import dataclass

from pika.exceptions import NackError

from common.signals import OneShot
from .connection import (
    broker_step,
    close_connection,
    declare_exchange,
    dial,
    open_channel,
)
from .envelope import PublishEnvelope
from .errors import (
    BrokerError,
    BrokerTimeoutError,
    ConfirmModeError,
    Phase,
    PublishError,
)


@dataclass(frozen=True)
class Confirmation:
    """
    Broker answer to a publish made in confirm mode.

    pika's BlockingChannel reports the Basic.Ack/Basic.Nack outcome but not
    the frame itself, so delivery_tag is the channel's publish sequence
    number. Every publish uses a fresh confirm-mode channel, where that
    number is always 1.
    """

    delivery_tag: int
    ack: bool


class RabbitMQProducer:
    """
    Publishes single messages.

    Nothing is kept between calls: every publish() opens its own connection
    and channel and closes them before returning, whatever the outcome.
    No retries are attempted; a failed publish raises and the caller decides.
    """

    # Sequence number of the only publish on a fresh confirm-mode channel
    FIRST_DELIVERY_TAG = 1

    def __init__(self, timeout, envelope=None):
        """
        Args:
            timeout: Seconds the whole publish() may take, from dial to
                confirmation. Also used as pika's socket, stack and
                blocked-connection timeouts. Required.
            envelope: Properties stamped on each message, PublishEnvelope()
                defaults when omitted
        """
        self.timeout = timeout
        self.envelope = envelope or PublishEnvelope()
        self.logger = logging.getLogger(__name__)

    def publish(
        self, amqp_uri, exchange, exchange_type, routing_key, body, reliable=False
    ):
        """
        Publish one message to exchange with routing_key.

        With reliable=True the channel is put in confirm mode and the call
        waits for the single confirmation before closing the connection. A
        negative acknowledgement is logged, not raised.

        The connection is owned by a worker thread and the caller waits at
        most timeout seconds for it. On expiry the worker is abandoned: it
        closes the connection as soon as the pending broker call returns
        and its late result is only logged.

        Returns:
            Confirmation when reliable, None otherwise

        Raises:
            BrokerError subclass tagged with the failing phase,
            BrokerTimeoutError when the publish takes longer than timeout
        """
        result = OneShot("publish")
        abandoned = threading.Event()
        worker = threading.Thread(
            target=self._run,
            args=(
                result,
                abandoned,
                (amqp_uri, exchange, exchange_type, routing_key, body, reliable),
            ),
            name="Producer-Publish",
            daemon=True,
        )
        worker.start()

        done, outcome = result.wait(self.timeout)
        if not done:
            abandoned.set()
            self.logger.error(
                "action: publish | result: fail | exchange: %s | routing_key: %s | error: timed out after %ss",
                exchange,
                routing_key,
                self.timeout,
            )
            raise BrokerTimeoutError(Phase.PUBLISH, self.timeout)
        if isinstance(outcome, BrokerError):
            raise outcome
        return outcome

    def _run(self, result, abandoned, args):
        try:
            outcome = self._publish(*args)
        except BrokerError as e:
            outcome = e
        except Exception as e:
            outcome = PublishError(e)
            outcome.__cause__ = e

        if abandoned.is_set():
            self.logger.warning(
                "action: publish | result: late | exchange: %s | routing_key: %s | outcome: %s",
                args[1],
                args[3],
                outcome,
            )
        result.set(outcome)

    def _publish(self, amqp_uri, exchange, exchange_type, routing_key, body, reliable):
        connection = dial(amqp_uri, self.timeout)
        try:
            channel = open_channel(connection)
            declare_exchange(channel, exchange, exchange_type)

            if reliable:
                with broker_step(ConfirmModeError, "enable_confirms"):
                    channel.confirm_delivery()

            return self._publish_one(
                channel, exchange, routing_key, self.envelope.encode(body), reliable
            )
        finally:
            self._release(connection)

    def _publish_one(self, channel, exchange, routing_key, body, reliable):
        self.logger.info(
            "action: publish | result: in_progress | exchange: %s | routing_key: %s | size: %dB | body: %r",
            exchange,
            routing_key,
            len(body),
            body,
        )

        acked = True
        with broker_step(
            PublishError, "publish", exchange=exchange, routing_key=routing_key
        ):
            try:
                # In confirm mode this blocks until the broker acks or nacks
                channel.basic_publish(
                    exchange=exchange,
                    routing_key=routing_key,
                    body=body,
                    properties=self.envelope.to_properties(),
                    mandatory=self.envelope.mandatory,
                )
            except NackError:
                if not reliable:
                    raise
                acked = False

        if not reliable:
            return None

        delivery_tag = self.FIRST_DELIVERY_TAG
        if acked:
            self.logger.info(
                "action: confirm | result: success | delivery_tag: %d", delivery_tag
            )
        else:
            self.logger.warning(
                "action: confirm | result: fail | msg: broker nacked the message | delivery_tag: %d",
                delivery_tag,
            )
        return Confirmation(delivery_tag=delivery_tag, ack=acked)

    def _release(self, connection):
        try:
            close_connection(connection)
        except BrokerError as e:
            # The publish outcome is already decided at this point
            self.logger.warning(
                "action: producer_release | result: fail | error: %s", e
            )
