"""Result consumer: the explicit task that feeds worker notifications back in.

Workers publish completion and failure notifications to the result queue.
:class:`ResultConsumer` polls that queue through the
:class:`~strmarket.messaging.bus.MessageBus` and hands each decoded
notification to the :class:`~strmarket.orchestrator.service.JobOrchestrator`.

Delivery is at-least-once, so handlers tolerate duplicates (see
:meth:`JobOrchestrator.record_completion`).  A malformed payload, an unknown
routing key, or a handler error is logged and the message dropped; the loop
never stops on a single bad message.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, NoReturn

from pydantic import ValidationError as PydanticValidationError

from strmarket.core import events
from strmarket.core.exceptions import MessagingError
from strmarket.core.logging_config import CORRELATION_ID_CTX
from strmarket.messaging.bus import Envelope, MessageBus
from strmarket.messaging.messages import (
    RESULT_QUEUE,
    ROUTING_JOB_COMPLETED,
    ROUTING_JOB_FAILED,
    CompletionNotification,
    FailureNotification,
)
from strmarket.orchestrator.service import JobOrchestrator

__all__ = ["ResultConsumer"]

logger = logging.getLogger(__name__)


def _classify(envelope: Envelope) -> str | None:
    """Routing key of the envelope, inferred from its shape if missing."""
    if envelope.routing_key in (ROUTING_JOB_COMPLETED, ROUTING_JOB_FAILED):
        return envelope.routing_key
    if "errorMessage" in envelope.payload or "error_message" in envelope.payload:
        return ROUTING_JOB_FAILED
    if "propertiesFound" in envelope.payload or "properties_found" in envelope.payload:
        return ROUTING_JOB_COMPLETED
    return None


class ResultConsumer:
    """Polls the result queue and applies notifications.

    Args:
        bus: Transport to poll.
        orchestrator: Receiver of decoded notifications.
        queue: Queue name to poll.
        poll_interval_s: Pause after an empty poll or a bus error.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        bus: MessageBus,
        orchestrator: JobOrchestrator,
        *,
        queue: str = RESULT_QUEUE,
        poll_interval_s: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._bus = bus
        self._orchestrator = orchestrator
        self._queue = queue
        self._poll_interval_s = poll_interval_s
        self._sleep = sleep
        self.handled = 0
        self.dropped = 0

    async def handle(self, envelope: Envelope) -> bool:
        """Apply one message.  Returns ``False`` if it was dropped."""
        kind = _classify(envelope)
        job_id = str(envelope.payload.get("jobId") or envelope.payload.get("job_id") or "-")
        token = CORRELATION_ID_CTX.set(job_id[:8])
        try:
            if kind == ROUTING_JOB_COMPLETED:
                await self._orchestrator.record_completion(
                    CompletionNotification.model_validate(envelope.payload)
                )
            elif kind == ROUTING_JOB_FAILED:
                await self._orchestrator.record_failure(
                    FailureNotification.model_validate(envelope.payload)
                )
            else:
                logger.warning(
                    "Dropping message with routing key %r",
                    envelope.routing_key,
                    extra={"event": events.RESULT_MALFORMED},
                )
                self.dropped += 1
                return False
        except PydanticValidationError as exc:
            logger.warning(
                "Dropping malformed %s payload: %s",
                kind,
                exc.errors(include_url=False),
                extra={"event": events.RESULT_MALFORMED},
            )
            self.dropped += 1
            return False
        except Exception:  # noqa: BLE001
            logger.exception("Failed to apply %s notification for job %s", kind, job_id)
            self.dropped += 1
            return False
        finally:
            CORRELATION_ID_CTX.reset(token)

        self.handled += 1
        return True

    async def poll_once(self) -> bool:
        """Receive and apply at most one message.

        Returns:
            ``True`` if a message was taken off the queue.

        Raises:
            MessagingError: The bus could not be polled.
        """
        envelope = await self._bus.receive(self._queue)
        if envelope is None:
            return False
        await self.handle(envelope)
        return True

    async def drain(self) -> int:
        """Apply everything currently queued; returns the number of messages taken."""
        taken = 0
        while await self.poll_once():
            taken += 1
        return taken

    async def run(self) -> NoReturn:
        """Poll forever; cancel the task to stop."""
        logger.info("Result consumer started on %s", self._queue)
        while True:
            try:
                got_message = await self.poll_once()
            except MessagingError as exc:
                logger.error("Polling %s failed: %s", self._queue, exc)
                got_message = False
            if not got_message:
                await self._sleep(self._poll_interval_s)
