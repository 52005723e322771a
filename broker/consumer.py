import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from functools import partial

from common.close_monitor import CloseMonitor
from common.signals import OneShot
from .connection import (
    BROKER_ERRORS,
    broker_step,
    close_connection,
    declare_exchange,
    dial,
    open_channel,
)
from .delivery import Delivery
from .errors import (
    AckError,
    AlreadyClosedError,
    BrokerError,
    BrokerTimeoutError,
    CancelError,
    ConnectionCloseError,
    ConsumeStartError,
    DrainError,
    InvalidStateError,
    Phase,
    QosError,
    QueueBindError,
    QueueDeclareError,
    SetupError,
    ShutdownError,
)

_END_OF_STREAM = object()


class ConsumerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTED = "connected"
    TOPOLOGY_DECLARED = "topology_declared"
    CONSUMING = "consuming"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = (ConsumerState.CLOSED, ConsumerState.FAILED)


@dataclass(frozen=True)
class ConsumerTimeouts:
    """Seconds allowed for setup() and for each wait inside shutdown()"""

    setup: float
    shutdown: float


@dataclass(frozen=True)
class Topology:
    exchange: str
    exchange_type: str
    queue_name: str
    binding_key: str


@dataclass(frozen=True)
class ConsumerStatus:
    state: ConsumerState
    queue_name: str
    consumer_tag: str
    last_close_reason: object


class RabbitMQConsumer:
    """
    Subscribes a private queue to an exchange and streams its deliveries.

    The pika connection lives on a dedicated I/O thread: it runs the setup
    handshake and then pumps broker events. Readers and shutdown() reach it
    through add_callback_threadsafe only.

    Usage:
        consumer = RabbitMQConsumer("", ConsumerTimeouts(setup=10, shutdown=10))
        consumer.setup(uri, "events", "topic", "", "orders.*")
        for delivery in consumer.deliveries():
            ...
            delivery.ack()
        consumer.completion().set(None)
        consumer.shutdown()
    """

    # Seconds the I/O thread blocks on the socket before checking for close
    POLL_INTERVAL = 0.1

    def __init__(self, consumer_tag, timeouts):
        """
        Args:
            consumer_tag: Subscription tag, empty to let the broker pick one
            timeouts: ConsumerTimeouts, required
        """
        self.consumer_tag = consumer_tag
        self.timeouts = timeouts
        self.queue_name = ""
        self.connection = None
        self.channel = None
        self.logger = logging.getLogger(__name__)

        self._state = ConsumerState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._consuming = False
        self._shutdown_called = False

        self._deliveries = queue.Queue()
        self._stream_ended = False

        self._completion = OneShot("completion")
        self._setup_result = OneShot("setup")
        self._close_result = OneShot("connection-close")
        self._close_requested = threading.Event()

        self._io_thread = None
        self._close_monitor = None

    # -- public operations ---------------------------------------------------

    def setup(self, amqp_uri, exchange, exchange_type, queue_name, binding_key):
        """
        Connect, declare the topology and start the subscription.

        Blocks until the handshake finishes or timeouts.setup expires.

        On expiry the I/O thread is abandoned, not killed: pika offers no
        safe way to interrupt a blocking call from another thread. It closes
        the connection as soon as the pending broker call returns, and
        socket_timeout and stack_timeout (both set to timeouts.setup) bound
        how long that can take while the socket is connecting. The thread
        is a daemon so it never keeps the process alive.

        Raises:
            SetupError subclass tagged with the failing phase,
            BrokerTimeoutError when the handshake takes too long,
            InvalidStateError when called more than once
        """
        with self._state_lock:
            if self._io_thread is not None:
                raise InvalidStateError("set up", self._state)
            topology = Topology(exchange, exchange_type, queue_name, binding_key)
            self._io_thread = threading.Thread(
                target=self._run,
                args=(amqp_uri, topology),
                name="Consumer-IO",
                daemon=True,
            )
        self._io_thread.start()

        done, error = self._setup_result.wait(self.timeouts.setup)
        if not done:
            self._set_state(ConsumerState.FAILED)
            self._close_requested.set()
            self.logger.error(
                "action: consumer_setup | result: fail | error: timed out after %ss",
                self.timeouts.setup,
            )
            raise BrokerTimeoutError(Phase.SETUP, self.timeouts.setup)
        if error is not None:
            raise error

        with self._state_lock:
            self._consuming = True
        self.logger.info(
            "action: consumer_setup | result: success | queue: %s | consumer_tag: %s",
            self.queue_name,
            self.consumer_tag,
        )

    def deliveries(self):
        """
        Iterator over inbound deliveries, in broker dispatch order.

        It ends once the subscription is cancelled or the connection closes.
        Each delivery must be settled with ack(), nack() or reject().
        """
        with self._state_lock:
            if not self._consuming:
                raise InvalidStateError("read deliveries", self._state)
        return self._stream()

    def completion(self):
        """Signal the reader sets once it stops draining deliveries()"""
        return self._completion

    def shutdown(self):
        """
        Cancel the subscription, close the connection and wait for the reader.

        The connection is closed even if the cancel fails. One failure is
        raised as is, two are raised together as ShutdownError.

        Raises:
            AlreadyClosedError on a second call,
            BrokerTimeoutError when the completion signal does not arrive,
            DrainError when the reader signalled a failure
        """
        with self._state_lock:
            if self._shutdown_called:
                raise AlreadyClosedError()
            if not self._consuming:
                raise InvalidStateError("shut down", self._state)
            self._shutdown_called = True
            self._state = ConsumerState.SHUTTING_DOWN

        self.logger.info("action: consumer_shutdown | result: in_progress")

        failures = []
        try:
            self._cancel_subscription()
        except BrokerError as e:
            failures.append(e)
        finally:
            try:
                self._close_connection()
            except BrokerError as e:
                failures.append(e)

        if failures:
            self._set_state(ConsumerState.FAILED)
            self.logger.error(
                "action: consumer_shutdown | result: fail | error: %s",
                "; ".join(str(f) for f in failures),
            )
            if len(failures) == 1:
                raise failures[0]
            raise ShutdownError(causes=failures) from failures[0]

        done, value = self._completion.wait(self.timeouts.shutdown)
        if not done:
            self._set_state(ConsumerState.FAILED)
            raise BrokerTimeoutError(Phase.SHUTDOWN, self.timeouts.shutdown)

        self._set_state(ConsumerState.CLOSED)
        self.logger.info("action: consumer_shutdown | result: success")
        if isinstance(value, BaseException):
            raise DrainError(value) from value
        return value

    def status(self):
        return ConsumerStatus(
            state=self._state,
            queue_name=self.queue_name,
            consumer_tag=self.consumer_tag,
            last_close_reason=(
                self._close_monitor.last_reason if self._close_monitor else None
            ),
        )

    @property
    def state(self):
        return self._state

    # -- I/O thread ----------------------------------------------------------

    def _run(self, amqp_uri, topology):
        try:
            self._declare(amqp_uri, topology)
        except SetupError as e:
            self._fail_setup(e)
            return
        except Exception as e:
            error = SetupError(e, Phase.SETUP)
            error.__cause__ = e
            self._fail_setup(error)
            return

        self._setup_result.set(None)
        reason = None
        try:
            while not self._close_requested.is_set():
                self.connection.process_data_events(time_limit=self.POLL_INTERVAL)
        except BROKER_ERRORS as e:
            reason = e
        finally:
            self._end_stream()
            close_error = None
            try:
                close_connection(self.connection)
            except ConnectionCloseError as e:
                close_error = e
            self._close_monitor.notify(reason)
            self._close_result.set(close_error)

    def _declare(self, amqp_uri, topology):
        self.connection = dial(amqp_uri, self.timeouts.setup)
        self._set_state(ConsumerState.CONNECTED)

        self._close_monitor = CloseMonitor()
        self._close_monitor.start()

        self.channel = open_channel(self.connection)
        self.channel.add_on_cancel_callback(self._on_broker_cancel)

        declare_exchange(self.channel, topology.exchange, topology.exchange_type)

        # Exclusive: the broker deletes the queue when this connection closes
        with broker_step(QueueDeclareError, "declare_queue", queue=topology.queue_name):
            result = self.channel.queue_declare(
                queue=topology.queue_name,
                durable=False,
                exclusive=True,
                auto_delete=False,
            )
        self.queue_name = result.method.queue
        self.logger.info(
            "action: declare_queue | result: success | queue: %s | messages: %s | consumers: %s",
            self.queue_name,
            result.method.message_count,
            result.method.consumer_count,
        )

        with broker_step(
            QueueBindError,
            "bind_queue",
            queue=self.queue_name,
            exchange=topology.exchange,
            binding_key=topology.binding_key,
        ):
            self.channel.queue_bind(
                queue=self.queue_name,
                exchange=topology.exchange,
                routing_key=topology.binding_key,
            )

        # Fair dispatch: one unacknowledged delivery at a time
        with broker_step(QosError, "set_qos", prefetch_count=1):
            self.channel.basic_qos(prefetch_size=0, prefetch_count=1, global_qos=False)
        self._set_state(ConsumerState.TOPOLOGY_DECLARED)

        with broker_step(
            ConsumeStartError, "start_consuming", consumer_tag=self.consumer_tag
        ):
            self.consumer_tag = self.channel.basic_consume(
                queue=self.queue_name,
                on_message_callback=self._on_message,
                auto_ack=False,
                exclusive=False,
                consumer_tag=self.consumer_tag or None,
            )
        self._set_state(ConsumerState.CONSUMING)

    def _fail_setup(self, error):
        self._set_state(ConsumerState.FAILED)
        self._release_after_failed_setup(error)
        self._setup_result.set(error)

    def _release_after_failed_setup(self, error):
        self._end_stream()
        try:
            close_connection(self.connection)
        except ConnectionCloseError as e:
            self.logger.warning(
                "action: consumer_release | result: fail | error: %s", e
            )
        if self._close_monitor:
            self._close_monitor.notify(error)

    def _on_message(self, channel, method, properties, body):
        self.logger.debug(
            "action: delivery_received | delivery_tag: %s | routing_key: %s | size: %dB",
            method.delivery_tag,
            method.routing_key,
            len(body),
        )
        self._deliveries.put(Delivery.from_pika(method, properties, body, self._settle))

    def _on_broker_cancel(self, method_frame):
        self.logger.warning(
            "action: consumer_cancelled | result: success | msg: subscription cancelled by broker"
        )
        self._end_stream()

    def _end_stream(self):
        with self._state_lock:
            if self._stream_ended:
                return
            self._stream_ended = True
        self._deliveries.put(_END_OF_STREAM)

    def _stream(self):
        while True:
            item = self._deliveries.get()
            if item is _END_OF_STREAM:
                # Leave the marker for any later iterator
                self._deliveries.put(_END_OF_STREAM)
                return
            yield item

    # -- cross-thread requests -----------------------------------------------

    def _settle(self, action, delivery_tag, **kwargs):
        operation = getattr(self.channel, f"basic_{action}")
        try:
            self.connection.add_callback_threadsafe(
                partial(operation, delivery_tag=delivery_tag, **kwargs)
            )
        except BROKER_ERRORS as e:
            self.logger.error(
                "action: %s | result: fail | delivery_tag: %s | error: %s",
                action,
                delivery_tag,
                e,
            )
            raise AckError(e) from e

    def _cancel_subscription(self):
        if not self._io_thread.is_alive() or self.connection.is_closed:
            self.logger.info(
                "action: cancel_consumer | result: skipped | msg: connection already closed"
            )
            return

        result = OneShot("cancel")

        def _cancel():
            try:
                self.channel.basic_cancel(self.consumer_tag)
            except BROKER_ERRORS as e:
                result.set(e)
                return
            self._end_stream()
            result.set(None)

        try:
            self.connection.add_callback_threadsafe(_cancel)
        except BROKER_ERRORS as e:
            raise CancelError(e) from e

        done, error = self._wait_on_io(result)
        if not done:
            raise BrokerTimeoutError(Phase.CANCEL, self.timeouts.shutdown)
        if error is not None:
            raise CancelError(error) from error
        self.logger.info(
            "action: cancel_consumer | result: success | consumer_tag: %s",
            self.consumer_tag,
        )

    def _close_connection(self):
        self._close_requested.set()
        done, error = self._close_result.wait(self.timeouts.shutdown)
        if not done:
            raise BrokerTimeoutError(Phase.CONNECTION_CLOSE, self.timeouts.shutdown)
        self._io_thread.join(self.timeouts.shutdown)
        if self._close_monitor:
            self._close_monitor.join(self.timeouts.shutdown)
        if error is not None:
            raise error

    def _wait_on_io(self, signal):
        """
        Wait for a request posted to the I/O thread.

        A request still pending when the I/O thread exits never runs; it
        counts as done since the subscription went away with the connection.
        """
        waited = 0.0
        while waited < self.timeouts.shutdown:
            done, value = signal.wait(self.POLL_INTERVAL)
            if done:
                return done, value
            if not self._io_thread.is_alive():
                _, value = signal.wait(0)
                return True, value
            waited += self.POLL_INTERVAL
        return False, None

    def _set_state(self, state):
        with self._state_lock:
            if self._state in TERMINAL_STATES:
                return
            self._state = state
            self.logger.debug("action: consumer_state | result: success | state: %s", state.value)
