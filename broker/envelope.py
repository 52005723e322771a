from dataclasses import dataclass, field
from typing import Any, Dict

import pika

PERSISTENT = pika.DeliveryMode.Persistent.value


@dataclass(frozen=True)
class PublishEnvelope:
    """Properties stamped on every published message"""

    content_type: str = "application/json"
    content_encoding: str = "utf-8"
    delivery_mode: int = PERSISTENT
    priority: int = 0
    headers: Dict[str, Any] = field(default_factory=dict)
    mandatory: bool = False

    def to_properties(self):
        return pika.BasicProperties(
            content_type=self.content_type,
            content_encoding=self.content_encoding,
            delivery_mode=self.delivery_mode,
            priority=self.priority,
            headers=dict(self.headers),
        )

    def encode(self, body):
        if isinstance(body, (bytes, bytearray)):
            return bytes(body)
        return str(body).encode(self.content_encoding)
