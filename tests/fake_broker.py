"""
In-memory stand-in for pika.BlockingConnection.

FakeBroker routes messages through exchanges and queues, honours
basic_qos prefetch (a consumer gets message k+1 only once k is settled),
records every channel call and lets tests inject a failure or a hang into
any operation by name.
"""

import itertools
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from types import SimpleNamespace

import pika
from pika.exceptions import (
    AMQPConnectionError,
    ChannelClosedByBroker,
    ConnectionWrongStateError,
    NackError,
    StreamLostError,
)


@dataclass
class FakeMessage:
    exchange: str
    routing_key: str
    body: bytes
    properties: object
    redelivered: bool = False


def topic_matches(binding_key, routing_key):
    def _match(pattern, words):
        if not pattern:
            return not words
        head, rest = pattern[0], pattern[1:]
        if head == "#":
            return any(_match(rest, words[i:]) for i in range(len(words) + 1))
        if not words:
            return False
        if head == "*" or head == words[0]:
            return _match(rest, words[1:])
        return False

    return _match(binding_key.split("."), routing_key.split("."))


class FakeBroker:
    def __init__(self):
        self.lock = threading.RLock()
        self.exchanges = {}
        self.queues = {}
        self.exclusive_owners = {}
        self.bindings = []
        self.connections = []
        self.calls = []
        self.acked = []
        self.requeued = []
        self.max_outstanding = 0
        self.nack_publishes = False
        self._failures = {}
        self._gates = {}
        self._queue_ids = itertools.count(1)

    # -- failure injection ---------------------------------------------------

    def fail(self, operation, error=None):
        if error is None:
            if operation == "dial":
                error = AMQPConnectionError("connection refused")
            else:
                error = ChannelClosedByBroker(406, f"PRECONDITION_FAILED - {operation}")
        self._failures[operation] = error
        return error

    def block(self, operation):
        """Make operation wait until the returned event is set"""
        gate = threading.Event()
        self._gates[operation] = gate
        return gate

    def check(self, operation, **kwargs):
        with self.lock:
            self.calls.append((operation, kwargs))
        gate = self._gates.get(operation)
        if gate is not None:
            gate.wait()
        error = self._failures.get(operation)
        if error is not None:
            raise error

    def call_names(self):
        with self.lock:
            return [name for name, _ in self.calls]

    def kwargs_of(self, operation):
        with self.lock:
            for name, kwargs in self.calls:
                if name == operation:
                    return kwargs
        raise AssertionError(f"{operation} was never called")

    # -- pika entry point ----------------------------------------------------

    def connect(self, parameters):
        self.check("dial", host=parameters.host, port=parameters.port)
        connection = FakeConnection(self, parameters)
        with self.lock:
            self.connections.append(connection)
        return connection

    # -- routing -------------------------------------------------------------

    def route(self, exchange, routing_key, body, properties=None):
        properties = properties or pika.BasicProperties()
        with self.lock:
            exchange_type = self.exchanges.get(exchange, "direct")
            for bound_exchange, queue_name, binding_key in self.bindings:
                if bound_exchange != exchange or queue_name not in self.queues:
                    continue
                if exchange_type == "fanout":
                    matched = True
                elif exchange_type == "topic":
                    matched = topic_matches(binding_key, routing_key)
                else:
                    matched = binding_key == routing_key
                if matched:
                    self.queues[queue_name].append(
                        FakeMessage(exchange, routing_key, body, properties)
                    )

    def requeue(self, queue_name, message):
        with self.lock:
            message.redelivered = True
            self.requeued.append(message)
            if queue_name in self.queues:
                self.queues[queue_name].appendleft(message)

    def release(self, connection):
        with self.lock:
            for queue_name, owner in list(self.exclusive_owners.items()):
                if owner is connection:
                    del self.exclusive_owners[queue_name]
                    self.queues.pop(queue_name, None)
                    self.bindings = [b for b in self.bindings if b[1] != queue_name]


class FakeConnection:
    def __init__(self, broker, parameters):
        self.broker = broker
        self.parameters = parameters
        self.channels = []
        self.is_open = True
        self._lost = None
        self._callbacks = queue.Queue()

    @property
    def is_closed(self):
        return not self.is_open

    def channel(self):
        self.broker.check("channel")
        channel = FakeChannel(self, len(self.channels) + 1)
        self.channels.append(channel)
        return channel

    def add_callback_threadsafe(self, callback):
        if not self.is_open:
            raise ConnectionWrongStateError("BlockingConnection.add_callback_threadsafe() called on closed or closing connection.")
        self._callbacks.put(callback)

    def process_data_events(self, time_limit=0):
        deadline = time.monotonic() + (time_limit or 0)
        while True:
            if self._lost is not None:
                self._drop_channels()
                self.is_open = False
                raise self._lost
            self._run_callbacks()
            for channel in list(self.channels):
                channel.dispatch()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            try:
                callback = self._callbacks.get(timeout=min(remaining, 0.01))
            except queue.Empty:
                continue
            # Callbacks posted to a lost connection never run
            if self._lost is None:
                callback()

    def _run_callbacks(self):
        while True:
            try:
                callback = self._callbacks.get_nowait()
            except queue.Empty:
                return
            if self._lost is not None:
                return
            callback()

    def close(self):
        if not self.is_open:
            raise ConnectionWrongStateError("Illegal close of already closed connection")
        self.broker.check("close")
        self._drop_channels()
        self.is_open = False

    def drop(self, reason="Transport indicated EOF"):
        """Simulate the broker going away under the I/O loop"""
        self._lost = StreamLostError(reason)

    def _drop_channels(self):
        for channel in self.channels:
            channel.requeue_unacked()
        self.broker.release(self)


class FakeChannel:
    def __init__(self, connection, channel_number):
        self.connection = connection
        self.broker = connection.broker
        self.channel_number = channel_number
        self.prefetch_count = 0
        self.consumers = {}
        self.unacked = {}
        self.confirming = False
        self.publish_seq = 0
        self._tags = itertools.count(1)
        self._consumer_ids = itertools.count(1)
        self._cancel_callbacks = []

    def add_on_cancel_callback(self, callback):
        self._cancel_callbacks.append(callback)

    def exchange_declare(self, exchange, exchange_type="direct", durable=False, auto_delete=False, internal=False, arguments=None):
        self.broker.check(
            "exchange_declare",
            exchange=exchange,
            exchange_type=exchange_type,
            durable=durable,
            auto_delete=auto_delete,
            internal=internal,
        )
        with self.broker.lock:
            self.broker.exchanges[exchange] = exchange_type

    def queue_declare(self, queue, durable=False, exclusive=False, auto_delete=False, arguments=None):
        self.broker.check(
            "queue_declare",
            queue=queue,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
        )
        with self.broker.lock:
            name = queue or f"amq.gen-{next(self.broker._queue_ids)}"
            messages = self.broker.queues.setdefault(name, deque())
            if exclusive:
                self.broker.exclusive_owners[name] = self.connection
            return SimpleNamespace(
                method=SimpleNamespace(
                    queue=name, message_count=len(messages), consumer_count=0
                )
            )

    def queue_bind(self, queue, exchange, routing_key=None, arguments=None):
        self.broker.check(
            "queue_bind", queue=queue, exchange=exchange, routing_key=routing_key
        )
        with self.broker.lock:
            if exchange not in self.broker.exchanges:
                raise ChannelClosedByBroker(404, f"NOT_FOUND - no exchange '{exchange}'")
            self.broker.bindings.append((exchange, queue, routing_key))

    def basic_qos(self, prefetch_size=0, prefetch_count=0, global_qos=False):
        self.broker.check(
            "basic_qos",
            prefetch_size=prefetch_size,
            prefetch_count=prefetch_count,
            global_qos=global_qos,
        )
        self.prefetch_count = prefetch_count

    def basic_consume(self, queue, on_message_callback, auto_ack=False, exclusive=False, consumer_tag=None, arguments=None):
        self.broker.check(
            "basic_consume",
            queue=queue,
            auto_ack=auto_ack,
            exclusive=exclusive,
            consumer_tag=consumer_tag,
        )
        tag = consumer_tag or f"ctag{self.channel_number}.{next(self._consumer_ids)}"
        self.consumers[tag] = (queue, on_message_callback)
        return tag

    def basic_cancel(self, consumer_tag=""):
        self.broker.check("basic_cancel", consumer_tag=consumer_tag)
        self.consumers.pop(consumer_tag, None)
        return []

    def cancel_from_broker(self, consumer_tag):
        self.consumers.pop(consumer_tag, None)
        for callback in self._cancel_callbacks:
            callback(SimpleNamespace(consumer_tag=consumer_tag))

    def basic_ack(self, delivery_tag=0, multiple=False):
        self.broker.check("basic_ack", delivery_tag=delivery_tag, multiple=multiple)
        for tag in self._settled_tags(delivery_tag, multiple):
            _, message = self.unacked.pop(tag)
            with self.broker.lock:
                self.broker.acked.append(message)

    def basic_nack(self, delivery_tag=0, multiple=False, requeue=True):
        self.broker.check(
            "basic_nack", delivery_tag=delivery_tag, multiple=multiple, requeue=requeue
        )
        for tag in self._settled_tags(delivery_tag, multiple):
            queue_name, message = self.unacked.pop(tag)
            if requeue:
                self.broker.requeue(queue_name, message)

    def basic_reject(self, delivery_tag=0, requeue=True):
        self.broker.check("basic_reject", delivery_tag=delivery_tag, requeue=requeue)
        queue_name, message = self.unacked.pop(delivery_tag)
        if requeue:
            self.broker.requeue(queue_name, message)

    def confirm_delivery(self):
        self.broker.check("confirm_delivery")
        self.confirming = True

    def basic_publish(self, exchange, routing_key, body, properties=None, mandatory=False):
        self.broker.check(
            "basic_publish",
            exchange=exchange,
            routing_key=routing_key,
            body=body,
            properties=properties,
            mandatory=mandatory,
        )
        self.broker.route(exchange, routing_key, body, properties)
        if self.confirming:
            self.publish_seq += 1
            if self.broker.nack_publishes:
                raise NackError([body])

    def _settled_tags(self, delivery_tag, multiple):
        if multiple:
            return [tag for tag in sorted(self.unacked) if tag <= delivery_tag]
        return [delivery_tag]

    def dispatch(self):
        for consumer_tag, (queue_name, callback) in list(self.consumers.items()):
            while True:
                if self.prefetch_count and len(self.unacked) >= self.prefetch_count:
                    return
                with self.broker.lock:
                    messages = self.broker.queues.get(queue_name)
                    if not messages:
                        break
                    message = messages.popleft()
                tag = next(self._tags)
                self.unacked[tag] = (queue_name, message)
                with self.broker.lock:
                    self.broker.max_outstanding = max(
                        self.broker.max_outstanding, len(self.unacked)
                    )
                method = SimpleNamespace(
                    consumer_tag=consumer_tag,
                    delivery_tag=tag,
                    redelivered=message.redelivered,
                    exchange=message.exchange,
                    routing_key=message.routing_key,
                )
                callback(self, method, message.properties, message.body)

    def requeue_unacked(self):
        for tag in sorted(self.unacked):
            queue_name, message = self.unacked.pop(tag)
            self.broker.requeue(queue_name, message)
        self.consumers.clear()
