"""
Message broker adapter.

The worker consumes jobs from a durable queue bound to a direct exchange. The
queue dead-letters into the same exchange under the `dlq` routing key, where
the dead-letter queue is bound. Delayed retries wait in per-delay queues whose
messages expire back onto the job routing key. Job events go to a separate
topic exchange.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings

logger = get_logger(__name__)


class Delivery:
    """One received message, settled exactly once by ack or nack."""

    def __init__(
        self,
        body: bytes,
        headers: dict[str, Any] | None,
        settle: Callable[[bool, bool], Awaitable[None]],
        routing_key: str | None = None,
    ):
        self.body = body
        self.headers = dict(headers or {})
        self.routing_key = routing_key
        self._settle = settle
        self.settled = False
        self.outcome: str | None = None

    def json(self) -> Any:
        return json.loads(self.body)

    async def ack(self) -> None:
        if self.settled:
            return
        self.settled = True
        self.outcome = "ack"
        await self._settle(True, False)

    async def nack(self, requeue: bool = False) -> None:
        if self.settled:
            return
        self.settled = True
        self.outcome = "requeue" if requeue else "nack"
        await self._settle(False, requeue)


DeliveryHandler = Callable[[Delivery], Awaitable[None]]


class Broker(Protocol):
    """Protocol for the queue transport."""

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def consume(self, handler: DeliveryHandler, prefetch: int) -> None:
        """Start delivering messages from the job queue to `handler`."""
        ...

    async def cancel_consumer(self) -> None:
        ...

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: dict[str, Any],
        headers: dict[str, Any] | None = None,
    ) -> None:
        ...

    async def publish_delayed(
        self, body: dict[str, Any], headers: dict[str, Any], delay_s: float
    ) -> None:
        """Publish to the job routing key once `delay_s` has elapsed."""
        ...

    async def queue_depth(self, queue_name: str) -> int:
        ...

    @property
    def is_connected(self) -> bool:
        ...


class AioPikaBroker:
    """RabbitMQ transport built on aio-pika's robust connection."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._connection = None
        self._channel = None
        self._exchanges: dict[str, Any] = {}
        self._queue = None
        self._consumer_tag: str | None = None

    async def connect(self) -> None:
        import aio_pika

        self._connection = await aio_pika.connect_robust(self.settings.rabbitmq_url)
        self._channel = await self._connection.channel()

        jobs_exchange = await self._channel.declare_exchange(
            self.settings.exchange_name,
            aio_pika.ExchangeType.DIRECT,
            durable=self.settings.queue_durable,
        )
        events_exchange = await self._channel.declare_exchange(
            self.settings.events_exchange_name,
            aio_pika.ExchangeType.TOPIC,
            durable=self.settings.queue_durable,
        )
        self._exchanges = {
            self.settings.exchange_name: jobs_exchange,
            self.settings.events_exchange_name: events_exchange,
        }

        self._queue = await self._channel.declare_queue(
            self.settings.queue_name,
            durable=self.settings.queue_durable,
            arguments={
                "x-dead-letter-exchange": self.settings.exchange_name,
                "x-dead-letter-routing-key": self.settings.dead_letter_routing_key,
            },
        )
        await self._queue.bind(jobs_exchange, self.settings.routing_key)

        dead_letter_queue = await self._channel.declare_queue(
            self.settings.dead_letter_queue, durable=self.settings.queue_durable
        )
        await dead_letter_queue.bind(
            jobs_exchange, self.settings.dead_letter_routing_key
        )

        logger.info(
            "Connected to broker",
            exchange=self.settings.exchange_name,
            queue=self.settings.queue_name,
            dead_letter_queue=self.settings.dead_letter_queue,
        )

    async def close(self) -> None:
        await self.cancel_consumer()
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        logger.info("Broker connection closed")

    async def consume(self, handler: DeliveryHandler, prefetch: int) -> None:
        if self._channel is None or self._queue is None:
            raise RuntimeError("Broker is not connected")

        await self._channel.set_qos(prefetch_count=prefetch)

        async def on_message(message) -> None:
            async def settle(ack: bool, requeue: bool) -> None:
                if ack:
                    await message.ack()
                else:
                    await message.nack(requeue=requeue)

            await handler(
                Delivery(message.body, message.headers, settle, message.routing_key)
            )

        self._consumer_tag = await self._queue.consume(on_message)

    async def cancel_consumer(self) -> None:
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None

    def _message(self, body: dict[str, Any], headers: dict[str, Any] | None):
        import aio_pika

        delivery_mode = (
            aio_pika.DeliveryMode.PERSISTENT
            if self.settings.message_persistent
            else aio_pika.DeliveryMode.NOT_PERSISTENT
        )
        return aio_pika.Message(
            json.dumps(body, default=str).encode(),
            headers=headers or {},
            content_type="application/json",
            delivery_mode=delivery_mode,
        )

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: dict[str, Any],
        headers: dict[str, Any] | None = None,
    ) -> None:
        if exchange not in self._exchanges:
            raise RuntimeError(f"Unknown exchange: {exchange}")
        await self._exchanges[exchange].publish(
            self._message(body, headers), routing_key=routing_key
        )

    async def publish_delayed(
        self, body: dict[str, Any], headers: dict[str, Any], delay_s: float
    ) -> None:
        if self._channel is None:
            raise RuntimeError("Broker is not connected")

        # One queue per delay keeps expiry in order. Redeclaring restarts the
        # queue expiry, which outlives any message published here.
        delay_ms = max(1, int(delay_s * 1000))
        queue_name = f"{self.settings.queue_name}.delay.{delay_ms}"
        await self._channel.declare_queue(
            queue_name,
            durable=self.settings.queue_durable,
            arguments={
                "x-message-ttl": delay_ms,
                "x-expires": delay_ms + 60_000,
                "x-dead-letter-exchange": self.settings.exchange_name,
                "x-dead-letter-routing-key": self.settings.routing_key,
            },
        )

        await self._channel.default_exchange.publish(
            self._message(body, headers), routing_key=queue_name
        )

    async def queue_depth(self, queue_name: str) -> int:
        if self._channel is None:
            raise RuntimeError("Broker is not connected")
        queue = await self._channel.declare_queue(queue_name, passive=True)
        return queue.declaration_result.message_count or 0

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed


@dataclass
class PublishedMessage:
    exchange: str
    routing_key: str
    body: dict[str, Any]
    headers: dict[str, Any] = field(default_factory=dict)
    delay_s: float = 0


class InMemoryBroker:
    """Single-process broker with the same routing as the RabbitMQ topology.

    Used by tests and local development. Prefetch is enforced with a
    semaphore released when a delivery is settled.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.published: list[PublishedMessage] = []
        self.dead_letters: list[PublishedMessage] = []
        self._queue: asyncio.Queue[PublishedMessage] = asyncio.Queue()
        self._consumer_task: asyncio.Task | None = None
        self._delayed: dict[int, asyncio.TimerHandle] = {}
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        await self.cancel_consumer()
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._connected = False

    async def consume(self, handler: DeliveryHandler, prefetch: int) -> None:
        if not self._connected:
            raise RuntimeError("Broker is not connected")
        unacked = asyncio.Semaphore(prefetch)

        async def pump() -> None:
            while True:
                await unacked.acquire()
                message = await self._queue.get()
                await handler(self._delivery(message, unacked))

        self._consumer_task = asyncio.create_task(pump())

    def _delivery(self, message: PublishedMessage, unacked: asyncio.Semaphore) -> Delivery:
        async def settle(ack: bool, requeue: bool) -> None:
            unacked.release()
            if ack:
                return
            if requeue:
                self._queue.put_nowait(message)
            else:
                self.dead_letters.append(message)

        return Delivery(
            json.dumps(message.body, default=str).encode(),
            message.headers,
            settle,
            message.routing_key,
        )

    async def cancel_consumer(self) -> None:
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: dict[str, Any],
        headers: dict[str, Any] | None = None,
    ) -> None:
        if not self._connected:
            raise RuntimeError("Broker is not connected")
        message = PublishedMessage(exchange, routing_key, body, dict(headers or {}))
        self.published.append(message)
        if exchange != self.settings.exchange_name:
            return
        if routing_key == self.settings.routing_key:
            self._queue.put_nowait(message)
        elif routing_key == self.settings.dead_letter_routing_key:
            self.dead_letters.append(message)

    async def publish_delayed(
        self, body: dict[str, Any], headers: dict[str, Any], delay_s: float
    ) -> None:
        if not self._connected:
            raise RuntimeError("Broker is not connected")
        message = PublishedMessage(
            self.settings.exchange_name,
            self.settings.routing_key,
            body,
            dict(headers),
            delay_s=delay_s,
        )
        self.published.append(message)
        handle = asyncio.get_running_loop().call_later(
            delay_s, self._release_delayed, message
        )
        self._delayed[id(message)] = handle

    def _release_delayed(self, message: PublishedMessage) -> None:
        self._delayed.pop(id(message), None)
        self._queue.put_nowait(message)

    @property
    def delayed_count(self) -> int:
        return len(self._delayed)

    async def queue_depth(self, queue_name: str) -> int:
        if queue_name == self.settings.dead_letter_queue:
            return len(self.dead_letters)
        if queue_name == self.settings.queue_name:
            return self._queue.qsize()
        return 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    def events(self, routing_key: str | None = None) -> list[dict[str, Any]]:
        """Bodies published to the events exchange, optionally filtered."""
        return [
            message.body
            for message in self.published
            if message.exchange == self.settings.events_exchange_name
            and (routing_key is None or message.routing_key == routing_key)
        ]


def create_broker(settings: Settings) -> Broker:
    if settings.rabbitmq_url.startswith("memory://"):
        return InMemoryBroker(settings)
    return AioPikaBroker(settings)
