import asyncio

import pytest

from analysis_worker.config.settings import StateStoreBackend
from analysis_worker.infra.broker import AioPikaBroker, InMemoryBroker, create_broker
from analysis_worker.infra.state_store import (
    InMemoryStateStore,
    RedisStateStore,
    create_state_store,
)


async def test_set_if_absent_is_exclusive(store):
    assert await store.set_if_absent("dedup:abc", {"owner": "job-1"})
    assert not await store.set_if_absent("dedup:abc", {"owner": "job-2"})
    assert (await store.get("dedup:abc")) == {"owner": "job-1"}


async def test_entries_expire(store, clock):
    await store.set("ratelimit:user:alice", {"tokens": 3}, ttl_s=60)
    clock.advance(59)
    assert await store.get("ratelimit:user:alice") is not None
    clock.advance(2)
    assert await store.get("ratelimit:user:alice") is None
    assert await store.set_if_absent("ratelimit:user:alice", {"tokens": 5})


async def test_scan_by_prefix(store):
    await store.set("dedup:a", {"n": 1})
    await store.set("dedup:b", {"n": 2})
    await store.set("refund:job-1", {"n": 3})

    assert set(await store.scan("dedup:")) == {"dedup:a", "dedup:b"}
    assert await store.delete("dedup:a")
    assert not await store.delete("dedup:a")


async def test_returned_values_are_copies(store):
    await store.set("breaker:archive", {"failure_count": 1})
    value = await store.get("breaker:archive")
    value["failure_count"] = 99
    assert (await store.get("breaker:archive"))["failure_count"] == 1


def test_state_store_factory(settings):
    assert isinstance(create_state_store(settings), InMemoryStateStore)
    redis_settings = settings.model_copy(update={"state_store_backend": StateStoreBackend.REDIS})
    assert isinstance(create_state_store(redis_settings), RedisStateStore)


def test_broker_factory(settings):
    assert isinstance(create_broker(settings), InMemoryBroker)
    amqp_settings = settings.model_copy(update={"rabbitmq_url": "amqp://localhost:5672"})
    assert isinstance(create_broker(amqp_settings), AioPikaBroker)


@pytest.fixture
async def broker(settings):
    broker = InMemoryBroker(settings)
    await broker.connect()
    yield broker
    await broker.close()


async def test_publish_requires_connection(settings):
    broker = InMemoryBroker(settings)
    with pytest.raises(RuntimeError):
        await broker.publish(settings.exchange_name, settings.routing_key, {})


async def test_dlq_routing_key_lands_in_dead_letter_queue(broker, settings):
    await broker.publish(settings.exchange_name, settings.dead_letter_routing_key, {"job_id": "j"})
    assert await broker.queue_depth(settings.dead_letter_queue) == 1
    assert await broker.queue_depth(settings.queue_name) == 0


async def test_prefetch_bounds_unsettled_deliveries(broker, settings):
    received = []

    async def handler(delivery):
        received.append(delivery)

    for index in range(3):
        await broker.publish(settings.exchange_name, settings.routing_key, {"n": index})
    await broker.consume(handler, prefetch=2)
    await asyncio.sleep(0.01)
    assert len(received) == 2

    await received[0].ack()
    await asyncio.sleep(0.01)
    assert len(received) == 3


async def test_nack_without_requeue_dead_letters(broker, settings):
    received = []

    async def handler(delivery):
        received.append(delivery)

    await broker.publish(settings.exchange_name, settings.routing_key, {"job_id": "j"})
    await broker.consume(handler, prefetch=1)
    await asyncio.sleep(0.01)

    await received[0].nack(requeue=False)
    await received[0].ack()
    assert received[0].outcome == "nack"
    assert len(broker.dead_letters) == 1


async def test_requeue_redelivers(broker, settings):
    received = []

    async def handler(delivery):
        received.append(delivery)

    await broker.publish(settings.exchange_name, settings.routing_key, {"job_id": "j"})
    await broker.consume(handler, prefetch=1)
    await asyncio.sleep(0.01)
    await received[0].nack(requeue=True)
    await asyncio.sleep(0.01)

    assert len(received) == 2
    assert received[1].json() == {"job_id": "j"}
