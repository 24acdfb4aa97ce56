"""
In-process partitioned log.

Behaves like the RabbitMQ stream adapter (append-only partitions, offsets
starting at 0, independent readers) but keeps everything in memory, so a
single process can host producer and consumers for local runs and tests.
"""
import asyncio
from typing import Dict, List, Mapping, Optional

from base_domains.events import partition_for
from base_domains.messaging import BrokerRecord


class InMemoryBroker:
    def __init__(self, topics: Mapping[str, int]):
        self._partitions = dict(topics)
        self._logs: Dict[str, List[List[BrokerRecord]]] = {
            topic: [[] for _ in range(count)] for topic, count in self._partitions.items()
        }
        self._appended = asyncio.Condition()

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def partitions(self, topic: str) -> int:
        try:
            return self._partitions[topic]
        except KeyError:
            raise KeyError(f"Unknown topic {topic!r}") from None

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        partition = partition_for(key, self.partitions(topic))
        log = self._logs[topic][partition]
        log.append(BrokerRecord(
            topic=topic,
            partition=partition,
            offset=len(log),
            key=key,
            value=value,
            headers=dict(headers or {}),
        ))
        async with self._appended:
            self._appended.notify_all()
        return partition

    async def fetch(
        self,
        topic: str,
        partition: int,
        offset: int,
        max_records: int,
        timeout: float,
    ) -> List[BrokerRecord]:
        log = self._logs[topic][partition]
        if offset >= len(log):
            if timeout <= 0:
                # suspend once even when empty; pollers spin on this
                await asyncio.sleep(0)
                return []
            async with self._appended:
                try:
                    await asyncio.wait_for(
                        self._appended.wait_for(lambda: offset < len(log)), timeout
                    )
                except asyncio.TimeoutError:
                    return []
        return log[offset:offset + max_records]

    def records(self, topic: str, partition: Optional[int] = None) -> List[BrokerRecord]:
        logs = self._logs[topic]
        if partition is not None:
            return list(logs[partition])
        return [record for log in logs for record in log]
