"""Worker-facing messaging: wire messages and bus transports."""

from strmarket.messaging.bus import Envelope, InMemoryBus, MessageBus
from strmarket.messaging.rabbitmq import RabbitHttpBus

__all__ = [
    "Envelope",
    "MessageBus",
    "InMemoryBus",
    "RabbitHttpBus",
]
