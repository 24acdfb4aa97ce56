import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from aio_pika import DeliveryMode, ExchangeType, Message, connect_robust
from aio_pika.abc import (
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
    AbstractRobustExchange,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from base_domains.config import ServiceSettings
from base_domains.errors import PublishError
from base_domains.events import partition_for

logger = logging.getLogger("relay.messaging")

STREAM_OFFSET_HEADER = "x-stream-offset"


@dataclass(frozen=True)
class BrokerRecord:
    topic: str
    partition: int
    offset: int
    key: Optional[str]
    value: bytes
    headers: Dict[str, str] = field(default_factory=dict)


class Broker(Protocol):
    """
    Append-only partitioned log. ``append`` returns only after the broker has
    durably accepted the record; ``fetch`` reads a partition from an offset
    without any server-side cursor, so each consumer group owns its position.
    """

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    def partitions(self, topic: str) -> int: ...

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> int: ...

    async def fetch(
        self,
        topic: str,
        partition: int,
        offset: int,
        max_records: int,
        timeout: float,
    ) -> List[BrokerRecord]: ...


def stream_name(topic: str, partition: int) -> str:
    return f"{topic}.{partition}"


def _header_value(value) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class _StreamCursor:
    """One stream consumer positioned at ``next_offset`` of a partition."""

    def __init__(self, queue: AbstractQueue, topic: str, partition: int, offset: int):
        self.queue = queue
        self.topic = topic
        self.partition = partition
        self.next_offset = offset
        self._buffered_up_to = offset
        self._buffer: asyncio.Queue = asyncio.Queue()
        self._consumer_tag: Optional[str] = None

    async def open(self) -> None:
        self._consumer_tag = await self.queue.consume(
            self._on_message,
            arguments={STREAM_OFFSET_HEADER: self.next_offset},
        )

    async def cancel(self) -> None:
        if self._consumer_tag is not None:
            await self.queue.cancel(self._consumer_tag)
            self._consumer_tag = None

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        offset = int(message.headers[STREAM_OFFSET_HEADER])
        # streams start delivering at a chunk boundary, possibly before the requested offset
        if offset < self._buffered_up_to:
            await message.ack()
            return
        self._buffered_up_to = offset + 1
        self._buffer.put_nowait((offset, message))

    async def take(self, max_records: int, timeout: float) -> List[BrokerRecord]:
        try:
            first = await asyncio.wait_for(self._buffer.get(), timeout)
        except asyncio.TimeoutError:
            return []
        batch = [first]
        while len(batch) < max_records and not self._buffer.empty():
            batch.append(self._buffer.get_nowait())

        records = []
        for offset, message in batch:
            headers = {
                k: _header_value(v)
                for k, v in (message.headers or {}).items()
                if k != STREAM_OFFSET_HEADER
            }
            records.append(BrokerRecord(
                topic=self.topic,
                partition=self.partition,
                offset=offset,
                key=headers.get("key"),
                value=message.body,
                headers=headers,
            ))
            # stream acks only return consumer credit
            await message.ack()
        self.next_offset = records[-1].offset + 1
        return records


class RabbitStreamBroker:
    """
    RabbitMQ adapter: every partition is a stream queue bound to a durable
    direct exchange under routing key ``<topic>.<partition>``. Publisher
    confirms make ``append`` wait for durable acceptance, and an unroutable
    record is returned to the publisher as an error.
    """

    def __init__(
        self,
        url: str,
        exchange_name: str,
        topics: Mapping[str, int],
        prefetch_count: int = 100,
        connect_attempts: int = 5,
        connect_delay: float = 2.0,
        log_prefix: str = "[Relay]",
    ):
        self.url = url
        self.exchange_name = exchange_name
        self.prefetch_count = prefetch_count
        self.connect_attempts = connect_attempts
        self.connect_delay = connect_delay
        self.log_prefix = log_prefix
        self._partitions = dict(topics)

        self._connection: AbstractRobustConnection | None = None
        self._channel:    AbstractRobustChannel    | None = None
        self._exchange:   AbstractRobustExchange   | None = None
        self._queues: Dict[Tuple[str, int], AbstractQueue] = {}
        self._cursors: Dict[Tuple[str, int], _StreamCursor] = {}

    def partitions(self, topic: str) -> int:
        try:
            return self._partitions[topic]
        except KeyError:
            raise KeyError(f"Unknown topic {topic!r}") from None

    async def start(self) -> None:
        for attempt in range(1, self.connect_attempts + 1):
            try:
                logger.info("%s Connecting to RabbitMQ (attempt %d/%d)",
                            self.log_prefix, attempt, self.connect_attempts)
                self._connection = await connect_robust(self.url)
                self._channel = await self._connection.channel(
                    publisher_confirms=True, on_return_raises=True
                )
                await self._channel.set_qos(prefetch_count=self.prefetch_count)

                self._exchange = await self._channel.declare_exchange(
                    self.exchange_name, ExchangeType.DIRECT, durable=True
                )
                for topic, count in self._partitions.items():
                    for partition in range(count):
                        name = stream_name(topic, partition)
                        queue = await self._channel.declare_queue(
                            name, durable=True, arguments={"x-queue-type": "stream"}
                        )
                        await queue.bind(self._exchange, name)
                        self._queues[(topic, partition)] = queue

                logger.info("%s RabbitMQ setup complete", self.log_prefix)
                return
            except (AMQPError, ConnectionError, OSError) as e:
                logger.error("%s RabbitMQ init failed: %s", self.log_prefix, e)
                if attempt < self.connect_attempts:
                    await asyncio.sleep(self.connect_delay)
                else:
                    logger.critical("%s Could not connect to RabbitMQ, giving up", self.log_prefix)
                    raise

    async def close(self) -> None:
        for cursor in self._cursors.values():
            await cursor.cancel()
        self._cursors.clear()
        if self._connection:
            await self._connection.close()
            logger.info("%s RabbitMQ connection closed", self.log_prefix)

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        if self._exchange is None:
            raise PublishError("broker not started")
        partition = partition_for(key, self.partitions(topic))
        message_headers = dict(headers or {})
        message_headers["key"] = key
        message = Message(
            body=value,
            headers=message_headers,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message_headers.get("event_id"),
        )
        try:
            await self._exchange.publish(
                message, routing_key=stream_name(topic, partition), mandatory=True
            )
        except (AMQPError, ChannelInvalidStateError, ConnectionError, asyncio.TimeoutError) as e:
            raise PublishError(f"append to {stream_name(topic, partition)} failed: {e}") from e
        return partition

    async def fetch(
        self,
        topic: str,
        partition: int,
        offset: int,
        max_records: int,
        timeout: float,
    ) -> List[BrokerRecord]:
        key = (topic, partition)
        cursor = self._cursors.get(key)
        if cursor is None or cursor.next_offset != offset:
            if cursor is not None:
                await cursor.cancel()
            cursor = _StreamCursor(self._queues[key], topic, partition, offset)
            await cursor.open()
            self._cursors[key] = cursor
        return await cursor.take(max_records, timeout)


def broker_from_settings(settings: ServiceSettings, log_prefix: str) -> Broker:
    topics = {settings.TOPIC: settings.TOPIC_PARTITIONS}
    if settings.BROKER_BACKEND == "memory":
        from base_domains.memory_broker import InMemoryBroker
        return InMemoryBroker(topics)
    return RabbitStreamBroker(
        settings.rabbit_url,
        settings.RABBIT_EXCHANGE,
        topics,
        prefetch_count=settings.PREFETCH_COUNT,
        connect_attempts=settings.RABBIT_CONNECT_ATTEMPTS,
        connect_delay=settings.RABBIT_CONNECT_DELAY,
        log_prefix=log_prefix,
    )
