"""RabbitMQ-backed message bus over the management HTTP API.

Talks to the broker's management plugin with :class:`httpx.AsyncClient`
rather than AMQP, which keeps the whole service on one HTTP stack:

* **publish** → ``POST /api/exchanges/{vhost}/{exchange}/publish``.  Exactly
  one attempt; the orchestrator bounds it with its publish timeout and
  fails the job on any error.  A reply of ``{"routed": false}`` means no
  queue is bound to the routing key and is treated as a failure.
* **receive** → ``POST /api/queues/{vhost}/{queue}/get`` with
  ``ackmode=ack_requeue_false`` and ``count=1``.  Polling is idempotent on
  our side, so transport errors and 5xx replies are retried with
  exponential back-off via :mod:`tenacity`.

Typical usage::

    async with RabbitHttpBus("http://localhost:15672", "guest", "guest") as bus:
        await bus.publish(ROUTING_JOB_CREATED, to_wire(request))
        envelope = await bus.receive(RESULT_QUEUE)
"""

from __future__ import annotations

import json
import logging
import random
from types import TracebackType
from typing import Any, Final
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from strmarket.core import events
from strmarket.core.exceptions import MessagingError, PublishError
from strmarket.messaging.bus import Envelope
from strmarket.messaging.messages import EXCHANGE

__all__ = ["RabbitHttpBus"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_TIMEOUT: Final[float] = 10.0

#: Total receive attempts (1 initial + 2 retries).
_DEFAULT_MAX_ATTEMPTS: Final[int] = 3

_MAX_BACKOFF_BASE: Final[float] = 30.0
_MAX_BACKOFF_JITTER: Final[float] = 5.0

#: AMQP persistent delivery mode.
_PERSISTENT: Final[int] = 2


class _RetryableServerError(MessagingError):
    """Internal: signals a 5xx status for tenacity to retry.

    Never escapes :meth:`RabbitHttpBus.receive`.
    """


def _backoff_wait(retry_state: RetryCallState) -> float:
    """Exponential back-off (1 s, 2 s, 4 s …) plus random jitter."""
    attempt = max(retry_state.attempt_number, 1)
    base = min(2.0 ** (attempt - 1), _MAX_BACKOFF_BASE)
    return base + random.uniform(0.0, min(base, _MAX_BACKOFF_JITTER))


class RabbitHttpBus:
    """:class:`~strmarket.messaging.bus.MessageBus` on the RabbitMQ management API.

    Args:
        api_url: Management API base URL, e.g. ``http://localhost:15672``.
        user: Management API user.
        password: Management API password.
        vhost: Virtual host holding the exchange and queues.
        exchange: Exchange work requests are published to.
        timeout: Per-request HTTP timeout in seconds.
        max_attempts: Total receive attempts (≥ 1).
        retry_wait: Tenacity wait strategy for receive retries.
        transport: Optional httpx transport (tests inject a
            :class:`httpx.MockTransport`).

    Raises:
        ValueError: If ``max_attempts`` is less than 1.
    """

    def __init__(
        self,
        api_url: str,
        user: str,
        password: str,
        *,
        vhost: str = "/",
        exchange: str = EXCHANGE,
        timeout: float = _DEFAULT_TIMEOUT,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        retry_wait: Any = _backoff_wait,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")
        self._api_url = api_url.rstrip("/")
        self._auth = (user, password)
        self._vhost = quote(vhost, safe="")
        self._exchange = exchange
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> RabbitHttpBus:
        self._ensure_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session.  Safe to call more than once."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("RabbitHttpBus HTTP session closed.")
        self._http = None

    # ------------------------------------------------------------------
    # MessageBus
    # ------------------------------------------------------------------

    async def publish(self, routing_key: str, payload: dict[str, Any]) -> None:
        """Publish *payload* to the exchange in a single attempt.

        Raises:
            PublishError: On transport errors, non-2xx replies, or an
                unrouted message.
        """
        client = self._ensure_client()
        url = f"/api/exchanges/{self._vhost}/{quote(self._exchange, safe='')}/publish"
        body = {
            "properties": {"content_type": "application/json", "delivery_mode": _PERSISTENT},
            "routing_key": routing_key,
            "payload": json.dumps(payload),
            "payload_encoding": "string",
        }
        try:
            response = await client.post(url, json=body)
        except httpx.RequestError as exc:
            raise PublishError(None, f"Broker unreachable: {exc}") from exc

        if not response.is_success:
            raise PublishError(
                None, f"Broker rejected publish with HTTP {response.status_code}"
            )
        try:
            reply = response.json()
        except ValueError as exc:
            raise PublishError(None, "Broker reply was not valid JSON") from exc
        if not isinstance(reply, dict):
            raise PublishError(None, f"Unexpected broker reply: {reply!r}")
        routed = bool(reply.get("routed", False))
        if not routed:
            raise PublishError(None, f"Message with routing key {routing_key!r} was not routed")
        logger.debug("Published %s to %s", routing_key, self._exchange)

    async def receive(self, queue: str) -> Envelope | None:
        """Fetch (and acknowledge) the next message on *queue*.

        Returns:
            The message, or ``None`` if the queue is empty.

        Raises:
            MessagingError: When the broker stays unreachable after all
                attempts or replies with a non-retryable error.
        """
        url = f"/api/queues/{self._vhost}/{quote(queue, safe='')}/get"
        body = {"count": 1, "ackmode": "ack_requeue_false", "encoding": "auto"}

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "Polling %s: attempt %d/%d failed (%s). Retrying…",
                queue,
                rs.attempt_number,
                self._max_attempts,
                type(exc).__name__ if exc else "?",
            )

        messages: list[dict[str, Any]] = []
        try:
            async for attempt in AsyncRetrying(
                wait=self._retry_wait,
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type((_RetryableServerError, httpx.TransportError)),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    messages = await self._get(url, body)
        except httpx.TransportError as exc:
            raise MessagingError(f"Broker unreachable while polling {queue}: {exc}") from exc
        except _RetryableServerError as exc:
            raise MessagingError(str(exc)) from exc
        except httpx.RequestError as exc:
            raise MessagingError(f"Request to broker failed while polling {queue}: {exc}") from exc

        if not messages:
            return None
        return self._to_envelope(messages[0])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self._api_url,
                auth=self._auth,
                timeout=self._timeout,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
            logger.debug("RabbitHttpBus session opened (api_url=%r).", self._api_url)
        return self._http

    async def _get(self, url: str, body: dict[str, Any]) -> list[dict[str, Any]]:
        client = self._ensure_client()
        response = await client.post(url, json=body)
        if response.status_code >= 500:
            raise _RetryableServerError(
                f"Broker returned HTTP {response.status_code} for {url}"
            )
        if not response.is_success:
            raise MessagingError(f"Broker returned HTTP {response.status_code} for {url}")
        try:
            messages = response.json()
        except ValueError as exc:
            raise MessagingError(f"Broker reply for {url} was not valid JSON") from exc
        if not isinstance(messages, list) or not all(isinstance(m, dict) for m in messages):
            raise MessagingError(f"Unexpected broker reply for {url}: {messages!r}")
        return messages

    @staticmethod
    def _to_envelope(message: dict[str, Any]) -> Envelope:
        routing_key = message.get("routing_key", "")
        raw = message.get("payload", "")
        try:
            payload = json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError:
            logger.warning(
                "Dropping undecodable %s payload",
                routing_key,
                extra={"event": events.RESULT_MALFORMED},
            )
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return Envelope(routing_key=routing_key, payload=payload)
