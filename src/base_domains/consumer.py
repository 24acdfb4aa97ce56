"""
Pull-based consumer loop shared by every consumer group.

A ``ConsumerGroup`` runs one ``PartitionWorker`` per partition of the topic.
Each worker reads from its own committed offset and processes one record at a
time, so records of a partition reach the handler in append order while a
slow handler on one partition never holds up the others.

A record's effect, its processed-event row and the offset commit share one
local transaction. If the process dies before that commit the record is read
again on restart; the processed-event row turns the repeat into a no-op.
"""
import asyncio
import json
import logging
from datetime import timedelta
from typing import List, Optional, Protocol
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from base_domains import crud
from base_domains.config import ConsumerSettings
from base_domains.delivery import (
    Ack,
    Backoff,
    DeliveryCoordinator,
    HandlerResult,
    Nack,
    RetryPolicy,
)
from base_domains.errors import HandlerPermanentError, HandlerTransientError
from base_domains.events import OrderEvent
from base_domains.messaging import Broker, BrokerRecord
from base_domains.models import DeadLetter, utcnow

logger = logging.getLogger("relay.consumer")


class EventHandler(Protocol):
    async def on_event(self, session: AsyncSession, event: OrderEvent) -> HandlerResult: ...


async def invoke_handler(
    handler: EventHandler,
    session: AsyncSession,
    event: OrderEvent,
) -> HandlerResult:
    try:
        return await handler.on_event(session, event)
    except HandlerTransientError as e:
        return Nack(retryable=True, reason=str(e) or type(e).__name__)
    except HandlerPermanentError as e:
        return Nack(retryable=False, reason=str(e) or type(e).__name__)


def _raw_payload(record: BrokerRecord):
    try:
        return json.loads(record.value)
    except ValueError:
        return {"raw": record.value.decode("utf-8", errors="replace")}


def _header_event_id(record: BrokerRecord) -> Optional[UUID]:
    try:
        return UUID(record.headers["event_id"])
    except (KeyError, ValueError):
        return None


class PartitionWorker:
    def __init__(
        self,
        *,
        settings: ConsumerSettings,
        partition: int,
        broker: Broker,
        session_factory: async_sessionmaker[AsyncSession],
        handler: EventHandler,
        coordinator: DeliveryCoordinator,
        stopping: asyncio.Event,
    ):
        self.settings = settings
        self.group = settings.CONSUMER_GROUP
        self.topic = settings.TOPIC
        self.partition = partition
        self._broker = broker
        self._session_factory = session_factory
        self._handler = handler
        self._coordinator = coordinator
        self._stopping = stopping
        self._position: Optional[int] = None
        self._prefix = f"[{self.group}:{partition}]"

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleeps for ``delay`` seconds; True if shutdown was requested meanwhile."""
        if delay <= 0:
            return self._stopping.is_set()
        try:
            await asyncio.wait_for(self._stopping.wait(), delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _load_position(self) -> int:
        async with self._session_factory() as session:
            committed = await crud.get_committed_offset(
                session, self.group, self.topic, self.partition
            )
        return 0 if committed is None else committed + 1

    async def poll_once(self) -> int:
        if self._position is None:
            self._position = await self._load_position()
            logger.info("%s Reading from offset %d", self._prefix, self._position)

        records = await self._broker.fetch(
            self.topic,
            self.partition,
            self._position,
            self.settings.FETCH_MAX_RECORDS,
            self.settings.POLL_TIMEOUT,
        )
        handled = 0
        for record in records:
            if self._stopping.is_set():
                break
            if not await self.deliver(record):
                break
            self._position = record.offset + 1
            handled += 1
        return handled

    async def run(self) -> None:
        logger.info("%s Worker started", self._prefix)
        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("%s Worker failed, re-reading from committed offset", self._prefix)
                self._position = None
                if await self._wait_or_stop(self.settings.RESTART_DELAY):
                    break
        logger.info("%s Worker stopped", self._prefix)

    async def _dead_letter_poison(self, record: BrokerRecord, error: str) -> None:
        async with self._session_factory() as session:
            await crud.add_dead_letter(
                session,
                event_id=_header_event_id(record),
                consumer_group=self.group,
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
                last_error=error,
                attempts=1,
                payload=_raw_payload(record),
            )
            await crud.commit_offset(session, self.group, record.topic, record.partition, record.offset)
            await session.commit()

    async def deliver(self, record: BrokerRecord) -> bool:
        """
        Runs one record to a terminal state (acked or dead-lettered) and
        commits its offset. Returns False when shutdown interrupted a retry
        wait; nothing is committed for the record in that case.
        """
        try:
            event = OrderEvent.from_bytes(record.value)
        except ValidationError as e:
            logger.error("%s Undecodable record at offset %d: %s", self._prefix, record.offset, e)
            await self._dead_letter_poison(record, f"undecodable record: {e}")
            return True

        tracker = self._coordinator.track(event.event_id)
        try:
            while True:
                tracker.start()
                async with self._session_factory() as session:
                    if await crud.is_processed(session, self.group, event.event_id):
                        await crud.commit_offset(session, self.group, record.topic, record.partition, record.offset)
                        await session.commit()
                        tracker.ack()
                        logger.info("%s Event %s already processed, skipping", self._prefix, event.event_id)
                        return True

                    try:
                        result = await invoke_handler(self._handler, session, event)
                        if isinstance(result, Ack):
                            await crud.mark_processed(session, self.group, event.event_id)
                            await crud.commit_offset(session, self.group, record.topic, record.partition, record.offset)
                            await session.commit()
                    except Exception as e:
                        logger.exception("%s Event %s attempt %d raised", self._prefix, event.event_id, tracker.attempts)
                        result = Nack(retryable=True, reason=f"{type(e).__name__}: {e}")

                    if isinstance(result, Ack):
                        tracker.ack()
                        logger.info("%s Event %s for order %s processed (attempt %d)",
                                    self._prefix, event.event_id, event.order_id, tracker.attempts)
                        return True

                    await session.rollback()
                    decision = self._coordinator.on_failure(tracker, result)
                    if not decision.retry:
                        await crud.add_dead_letter(
                            session,
                            event_id=event.event_id,
                            consumer_group=self.group,
                            topic=record.topic,
                            partition=record.partition,
                            offset=record.offset,
                            last_error=result.reason,
                            attempts=tracker.attempts,
                            payload=event.to_payload(),
                        )
                        await crud.commit_offset(session, self.group, record.topic, record.partition, record.offset)
                        await session.commit()
                        logger.error("%s Event %s dead-lettered after %d attempt(s): %s",
                                     self._prefix, event.event_id, tracker.attempts, result.reason)
                        return True

                logger.warning("%s Event %s attempt %d failed (%s), retrying in %.2fs",
                               self._prefix, event.event_id, tracker.attempts, result.reason, decision.delay)
                if await self._wait_or_stop(decision.delay):
                    logger.info("%s Shutdown during retry wait for %s, offset %d left uncommitted",
                                self._prefix, event.event_id, record.offset)
                    return False
        finally:
            self._coordinator.release(event.event_id)


class ConsumerGroup:
    def __init__(
        self,
        settings: ConsumerSettings,
        broker: Broker,
        session_factory: async_sessionmaker[AsyncSession],
        handler: EventHandler,
    ):
        if not settings.CONSUMER_GROUP:
            raise ValueError("CONSUMER_GROUP must be set")
        self.settings = settings
        self.group = settings.CONSUMER_GROUP
        self.session_factory = session_factory
        self.handler = handler
        self.coordinator = DeliveryCoordinator(
            self.group,
            RetryPolicy(
                max_attempts=settings.MAX_ATTEMPTS,
                backoff=Backoff(settings.RETRY_BASE_DELAY, settings.RETRY_MAX_DELAY),
            ),
        )
        self._stopping = asyncio.Event()
        self.workers = [
            PartitionWorker(
                settings=settings,
                partition=partition,
                broker=broker,
                session_factory=session_factory,
                handler=handler,
                coordinator=self.coordinator,
                stopping=self._stopping,
            )
            for partition in range(broker.partitions(settings.TOPIC))
        ]
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(worker.run(), name=f"{self.group}-p{worker.partition}")
            for worker in self.workers
        ]
        self._tasks.append(asyncio.create_task(self.housekeeping(), name=f"{self.group}-housekeeping"))

    async def stop(self) -> None:
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

    async def poll_once(self) -> int:
        handled = 0
        for worker in self.workers:
            handled += await worker.poll_once()
        return handled

    async def prune_processed(self) -> int:
        cutoff = utcnow() - timedelta(hours=self.settings.PROCESSED_RETENTION_HOURS)
        async with self.session_factory() as session:
            return await crud.prune_processed(session, self.group, cutoff)

    async def housekeeping(self) -> None:
        while not self._stopping.is_set():
            try:
                removed = await self.prune_processed()
                if removed:
                    logger.info("[%s] Pruned %d processed-event records", self.group, removed)
            except Exception:
                logger.exception("[%s] Housekeeping failed", self.group)
            try:
                await asyncio.wait_for(self._stopping.wait(), self.settings.HOUSEKEEPING_INTERVAL)
            except asyncio.TimeoutError:
                pass

    async def replay(self, dead_letter_id: int) -> DeadLetter:
        """
        Runs the handler once more for a dead-lettered event and marks the
        dead letter resolved on success. Raises the handler error otherwise.
        """
        async with self.session_factory() as session:
            dead = await crud.get_dead_letter(session, self.group, dead_letter_id)
            if dead.resolved_at is not None:
                return dead
            try:
                event = OrderEvent.model_validate(dead.payload)
            except ValidationError as e:
                raise HandlerPermanentError(f"payload is not an order event: {e}") from e

            if not await crud.is_processed(session, self.group, event.event_id):
                result = await invoke_handler(self.handler, session, event)
                if isinstance(result, Nack):
                    await session.rollback()
                    if result.retryable:
                        raise HandlerTransientError(result.reason)
                    raise HandlerPermanentError(result.reason)
                await crud.mark_processed(session, self.group, event.event_id)

            dead.resolved_at = utcnow()
            await session.commit()
            logger.info("[%s] Dead letter %d replayed for event %s", self.group, dead_letter_id, event.event_id)
            return dead
