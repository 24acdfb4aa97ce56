from typing import Dict, List

import pytest
from aio_pika.exceptions import ChannelInvalidStateError, DeliveryError
from sqlalchemy import select

from base_domains import messaging
from base_domains.errors import PublishError
from base_domains.events import ORDER_TOPIC, partition_for
from base_domains.messaging import STREAM_OFFSET_HEADER, RabbitStreamBroker, _StreamCursor, stream_name
from order_service import crud, workers
from order_service.models import Order, OrderStatus, OrdersOutbox
from order_service.schemas import OrderCreateRequest

from conftest import PARTITIONS


class StubExchange:
    def __init__(self, error: Exception = None):
        self.error = error
        self.published = []

    async def publish(self, message, routing_key, mandatory=False):
        if self.error is not None:
            raise self.error
        self.published.append((message, routing_key, mandatory))


class StubQueue:
    def __init__(self, name: str):
        self.name = name
        self.bindings: List[str] = []
        self.consumers: Dict[str, dict] = {}
        self.cancelled: List[str] = []

    async def bind(self, exchange, routing_key):
        self.bindings.append(routing_key)

    async def consume(self, callback, arguments=None):
        tag = f"ctag-{len(self.consumers)}"
        self.consumers[tag] = arguments
        return tag

    async def cancel(self, consumer_tag):
        self.cancelled.append(consumer_tag)


class StubChannel:
    def __init__(self):
        self.exchange = StubExchange()
        self.queues: Dict[str, StubQueue] = {}
        self.queue_arguments = {}

    async def set_qos(self, prefetch_count):
        self.prefetch_count = prefetch_count

    async def declare_exchange(self, name, type, durable=False):
        return self.exchange

    async def declare_queue(self, name, durable=False, arguments=None):
        self.queue_arguments[name] = arguments
        self.queues[name] = StubQueue(name)
        return self.queues[name]


class StubConnection:
    def __init__(self):
        self.channel_kwargs = None
        self.stub_channel = StubChannel()
        self.closed = False

    async def channel(self, **kwargs):
        self.channel_kwargs = kwargs
        return self.stub_channel

    async def close(self):
        self.closed = True


class StubMessage:
    def __init__(self, offset: int, body: bytes = b"{}", headers: dict = None):
        self.headers = {STREAM_OFFSET_HEADER: offset, **(headers or {})}
        self.body = body
        self.acked = False

    async def ack(self):
        self.acked = True


def started_broker(exchange: StubExchange) -> RabbitStreamBroker:
    broker = RabbitStreamBroker("amqp://test", "relay", {ORDER_TOPIC: PARTITIONS})
    broker._exchange = exchange
    return broker


class TestRabbitStreamBroker:
    @pytest.mark.asyncio
    async def test_start_declares_one_stream_per_partition(self, monkeypatch):
        connection = StubConnection()

        async def fake_connect(url):
            return connection

        monkeypatch.setattr(messaging, "connect_robust", fake_connect)
        broker = RabbitStreamBroker("amqp://test", "relay", {ORDER_TOPIC: PARTITIONS})
        await broker.start()

        # unroutable publishes must come back as errors, not as returned messages
        assert connection.channel_kwargs == {"publisher_confirms": True, "on_return_raises": True}
        names = [stream_name(ORDER_TOPIC, p) for p in range(PARTITIONS)]
        channel = connection.stub_channel
        assert sorted(channel.queues) == names
        for name in names:
            assert channel.queue_arguments[name] == {"x-queue-type": "stream"}
            assert channel.queues[name].bindings == [name]

        await broker.close()
        assert connection.closed

    @pytest.mark.asyncio
    async def test_append_routes_by_key(self):
        exchange = StubExchange()
        broker = started_broker(exchange)

        partition = await broker.append(ORDER_TOPIC, "ORD123", b'{"orderId": "ORD123"}', {"event_id": "e-1"})

        assert partition == partition_for("ORD123", PARTITIONS)
        [(message, routing_key, mandatory)] = exchange.published
        assert routing_key == stream_name(ORDER_TOPIC, partition)
        assert mandatory is True
        assert message.headers["key"] == "ORD123"
        assert message.message_id == "e-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        ChannelInvalidStateError("<Channel: closed>"),
        DeliveryError(None, None),
        ConnectionError("reset by peer"),
    ])
    async def test_append_failures_become_publish_errors(self, error):
        broker = started_broker(StubExchange(error))
        with pytest.raises(PublishError):
            await broker.append(ORDER_TOPIC, "ORD123", b"{}")

    @pytest.mark.asyncio
    async def test_append_before_start(self):
        broker = RabbitStreamBroker("amqp://test", "relay", {ORDER_TOPIC: PARTITIONS})
        with pytest.raises(PublishError):
            await broker.append(ORDER_TOPIC, "ORD123", b"{}")

    @pytest.mark.asyncio
    async def test_reconnecting_channel_backs_off_publisher(self, order_settings, order_sessions):
        broker = started_broker(StubExchange(ChannelInvalidStateError("<Channel: closed>")))
        async with order_sessions() as session:
            await crud.submit_order(
                OrderCreateRequest(orderId="ORD123", product="Laptop", quantity=2, email="a@b.com"), session
            )

        outcome = await workers.publish_pending(order_settings, order_sessions, broker)

        assert (outcome.published, outcome.retry_after) == (0, 0.5)
        async with order_sessions() as session:
            entry = (await session.execute(select(OrdersOutbox))).scalar_one()
            assert entry.attempts == 1
            assert "Channel: closed" in entry.last_error
            assert (await session.get(Order, "ORD123")).status == OrderStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_fetch_reopens_cursor_on_new_offset(self):
        broker = started_broker(StubExchange())
        queue = StubQueue(stream_name(ORDER_TOPIC, 0))
        broker._queues[(ORDER_TOPIC, 0)] = queue

        assert await broker.fetch(ORDER_TOPIC, 0, 0, 10, 0.01) == []
        assert await broker.fetch(ORDER_TOPIC, 0, 0, 10, 0.01) == []
        assert list(queue.consumers.values()) == [{STREAM_OFFSET_HEADER: 0}]

        await broker.fetch(ORDER_TOPIC, 0, 4, 10, 0.01)
        assert list(queue.consumers.values()) == [{STREAM_OFFSET_HEADER: 0}, {STREAM_OFFSET_HEADER: 4}]
        assert queue.cancelled == ["ctag-0"]


class TestStreamCursor:
    @pytest.mark.asyncio
    async def test_skips_records_before_requested_offset(self):
        cursor = _StreamCursor(StubQueue("order_topic.1"), ORDER_TOPIC, 1, 5)
        await cursor.open()
        # delivery starts at the chunk boundary, below the requested offset
        messages = [StubMessage(offset, body=f"r{offset}".encode(), headers={"key": "ORD1"}) for offset in (3, 4, 5, 6)]
        for message in messages:
            await cursor._on_message(message)

        records = await cursor.take(10, 0.1)

        assert [r.offset for r in records] == [5, 6]
        assert [r.value for r in records] == [b"r5", b"r6"]
        assert records[0].key == "ORD1"
        assert STREAM_OFFSET_HEADER not in records[0].headers
        assert all(m.acked for m in messages)
        assert cursor.next_offset == 7

    @pytest.mark.asyncio
    async def test_take_respects_batch_size(self):
        cursor = _StreamCursor(StubQueue("order_topic.0"), ORDER_TOPIC, 0, 0)
        for offset in range(3):
            await cursor._on_message(StubMessage(offset))

        assert [r.offset for r in await cursor.take(2, 0.1)] == [0, 1]
        assert [r.offset for r in await cursor.take(2, 0.1)] == [2]
        assert await cursor.take(2, 0.01) == []

    @pytest.mark.asyncio
    async def test_redelivered_offset_is_ignored(self):
        cursor = _StreamCursor(StubQueue("order_topic.0"), ORDER_TOPIC, 0, 0)
        first, again = StubMessage(0), StubMessage(0)
        await cursor._on_message(first)
        await cursor._on_message(again)

        assert [r.offset for r in await cursor.take(10, 0.1)] == [0]
        assert again.acked
