from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional


@dataclass
class Delivery:
    """
    One inbound message.

    Nothing is acknowledged automatically: the reader must call ack(),
    nack() or reject() once per delivery, in the order they were received.
    """

    body: bytes
    routing_key: str
    delivery_tag: int
    redelivered: bool
    exchange: str = ""
    consumer_tag: str = ""
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)
    _settle: Optional[Callable] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_pika(cls, method, properties, body, settle):
        return cls(
            body=body,
            routing_key=method.routing_key,
            delivery_tag=method.delivery_tag,
            redelivered=method.redelivered,
            exchange=method.exchange,
            consumer_tag=method.consumer_tag,
            content_type=properties.content_type,
            content_encoding=properties.content_encoding,
            headers=dict(properties.headers or {}),
            _settle=settle,
        )

    def ack(self, multiple=False):
        self._settle("ack", self.delivery_tag, multiple=multiple)

    def nack(self, multiple=False, requeue=True):
        self._settle("nack", self.delivery_tag, multiple=multiple, requeue=requeue)

    def reject(self, requeue=True):
        self._settle("reject", self.delivery_tag, requeue=requeue)
