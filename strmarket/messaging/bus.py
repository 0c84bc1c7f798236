"""Message bus interface and the in-process implementation.

The orchestrator publishes work requests and the result consumer polls the
result queue; neither cares how messages travel.  :class:`MessageBus` is
the narrow interface both depend on:

* ``publish(routing_key, payload)`` hands one JSON-compatible payload to the
  exchange.  It either succeeds or raises
  :class:`~strmarket.core.exceptions.PublishError`; it never retries.
* ``receive(queue)`` returns the next :class:`Envelope` on *queue*, or
  ``None`` when the queue is empty.  It does not block waiting for work;
  callers poll.

:class:`InMemoryBus` routes by the fixed bindings of the scraping exchange
(see :data:`BINDINGS`) into :class:`asyncio.Queue` objects.  It serves
single-process deployments, where workers share the event loop, and tests.
:class:`~strmarket.messaging.rabbitmq.RabbitHttpBus` is the broker-backed
implementation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from strmarket.core.exceptions import PublishError
from strmarket.messaging.messages import (
    JOB_QUEUE,
    RESULT_QUEUE,
    ROUTING_JOB_COMPLETED,
    ROUTING_JOB_CREATED,
    ROUTING_JOB_FAILED,
)

__all__ = ["BINDINGS", "Envelope", "MessageBus", "InMemoryBus"]

logger = logging.getLogger(__name__)

#: Routing key → queue bindings of the scraping exchange.
BINDINGS: dict[str, str] = {
    ROUTING_JOB_CREATED: JOB_QUEUE,
    ROUTING_JOB_COMPLETED: RESULT_QUEUE,
    ROUTING_JOB_FAILED: RESULT_QUEUE,
}


@dataclass(frozen=True)
class Envelope:
    """A received message: its routing key and decoded JSON body."""

    routing_key: str
    payload: dict[str, Any] = field(default_factory=dict)


class MessageBus(Protocol):
    async def publish(self, routing_key: str, payload: dict[str, Any]) -> None: ...

    async def receive(self, queue: str) -> Envelope | None: ...

    async def close(self) -> None: ...


class InMemoryBus:
    """:class:`MessageBus` backed by per-queue :class:`asyncio.Queue` objects.

    Args:
        bindings: Routing key → queue name map.  Defaults to :data:`BINDINGS`.
    """

    def __init__(self, bindings: dict[str, str] | None = None) -> None:
        self._bindings = dict(bindings or BINDINGS)
        self._queues: dict[str, asyncio.Queue[Envelope]] = {
            name: asyncio.Queue() for name in set(self._bindings.values())
        }

    async def publish(self, routing_key: str, payload: dict[str, Any]) -> None:
        queue_name = self._bindings.get(routing_key)
        if queue_name is None:
            raise PublishError(None, f"No queue bound to routing key {routing_key!r}")
        self._queues[queue_name].put_nowait(Envelope(routing_key, payload))
        logger.debug("Published %s to %s", routing_key, queue_name)

    async def receive(self, queue: str) -> Envelope | None:
        try:
            return self._queues[queue].get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self, queue: str) -> list[Envelope]:
        """Remove and return everything currently waiting on *queue*."""
        items = []
        while not self._queues[queue].empty():
            items.append(self._queues[queue].get_nowait())
        return items

    def pending(self, queue: str) -> int:
        return self._queues[queue].qsize()

    async def close(self) -> None:
        pass
