#!/usr/bin/env python3

from broker.consumer import ConsumerTimeouts, RabbitMQConsumer
from broker.errors import AckError, BrokerError
from broker.producer import RabbitMQProducer
from common.config import CONSUMER_ROLE, initialize_config
from common.utils import redact_uri
import logging
import signal
import sys
import threading


def initialize_log(logging_level):
    """
    Python custom logging initialization

    Current timestamp is added to be able to identify in docker
    compose logs the date when the log has arrived
    """
    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s %(message)s",
        level=logging_level,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class ConsumerRunner:
    """Drains a consumer, acknowledging every delivery, until it is shut down"""

    def __init__(self, consumer_config):
        self.config = consumer_config
        timeouts = ConsumerTimeouts(
            setup=consumer_config.setup_timeout,
            shutdown=consumer_config.shutdown_timeout,
        )
        self.consumer = RabbitMQConsumer(consumer_config.consumer_tag, timeouts)
        self._shutdown_thread = None
        self._shutdown_error = None
        self._lock = threading.Lock()

    def run(self):
        try:
            self.consumer.setup(
                self.config.amqp_uri,
                self.config.exchange,
                self.config.exchange_type,
                self.config.queue,
                self.config.binding_key,
            )
        except BrokerError as e:
            logging.critical("action: consumer_setup | result: fail | error: %s", e)
            return 1

        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        for delivery in self.consumer.deliveries():
            logging.info(
                "action: delivery | result: success | size: %dB | delivery_tag: %s | routing_key: %s | body: %r",
                len(delivery.body),
                delivery.delivery_tag,
                delivery.routing_key,
                delivery.body,
            )
            try:
                delivery.ack()
            except AckError as e:
                # The broker requeues it once the connection is gone
                logging.warning("action: ack | result: fail | error: %s", e)

        logging.info("action: handle | result: success | msg: deliveries closed")
        self.consumer.completion().set(None)

        # Shut down here unless a signal already started it
        self._request_shutdown()
        self._shutdown_thread.join()

        if self._shutdown_error is not None:
            logging.critical(
                "action: consumer_shutdown | result: fail | error: %s",
                self._shutdown_error,
            )
            return 1
        return 0

    def _handle_signal(self, signum, frame):
        logging.info(
            "action: shutdown | result: in_progress | msg: received signal %s", signum
        )
        self._request_shutdown()

    def _request_shutdown(self):
        # The reader may be blocked on deliveries(): shut down from another thread
        with self._lock:
            if self._shutdown_thread is not None:
                return
            self._shutdown_thread = threading.Thread(
                target=self._shutdown, name="Consumer-Shutdown", daemon=True
            )
            self._shutdown_thread.start()

    def _shutdown(self):
        try:
            self.consumer.shutdown()
        except BrokerError as e:
            self._shutdown_error = e


def run_producer(producer_config):
    producer = RabbitMQProducer(producer_config.publish_timeout)
    stop = threading.Event()

    def _handle_signal(signum, frame):
        logging.info(
            "action: shutdown | result: in_progress | msg: received signal %s", signum
        )
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    while not stop.wait(producer_config.publish_interval):
        try:
            producer.publish(
                producer_config.amqp_uri,
                producer_config.exchange,
                producer_config.exchange_type,
                producer_config.routing_key,
                producer_config.body,
                producer_config.reliable,
            )
        except BrokerError as e:
            # Try again on the next tick
            logging.error("action: publish_tick | result: fail | error: %s", e)
            continue
        logging.info(
            "action: publish_tick | result: success | size: %dB",
            len(producer_config.body),
        )
    return 0


def main():
    try:
        role, role_config, log_config = initialize_config()
    except KeyError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Configuration Parse Error: {e}", file=sys.stderr)
        return 1

    initialize_log(log_config.logging_level)

    # Log config parameters at the beginning of the program to verify the configuration
    logging.debug(
        "action: config | result: success | role: %s | amqp_uri: %s | exchange: %s | exchange_type: %s",
        role,
        redact_uri(role_config.amqp_uri),
        role_config.exchange,
        role_config.exchange_type,
    )

    if role == CONSUMER_ROLE:
        return ConsumerRunner(role_config).run()
    return run_producer(role_config)


if __name__ == "__main__":
    sys.exit(main())
