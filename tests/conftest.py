from typing import List, Optional

import pytest
import pytest_asyncio

from base_domains.db import create_tables, make_engine, make_session_factory
from base_domains.errors import PublishError
from base_domains.events import ORDER_TOPIC
from base_domains.memory_broker import InMemoryBroker
from base_domains.models import ConsumerBase
from email_service.config import EmailSettings
from email_service.mailer import OutgoingMail
from email_service.models import Base as EmailBase
from order_service.config import OrderSettings
from order_service.models import Base as OrderBase
from stock_service.config import StockSettings
from stock_service.models import Base as StockBase

PARTITIONS = 3


class FlakyBroker(InMemoryBroker):
    """In-memory log whose next ``fail_next`` appends are refused."""

    def __init__(self, topics):
        super().__init__(topics)
        self.fail_next = 0
        self.append_calls = 0
        self.appended_keys = []

    async def append(self, topic, key, value, headers=None):
        self.append_calls += 1
        self.appended_keys.append(key)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise PublishError("broker unreachable")
        return await super().append(topic, key, value, headers)


class RecordingGateway:
    """Mail gateway double: raises queued errors first, then records mail."""

    def __init__(self, failures: Optional[List[Exception]] = None):
        self.failures = list(failures or [])
        self.sent: List[OutgoingMail] = []
        self.calls = 0

    async def send(self, mail: OutgoingMail) -> Optional[str]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(mail)
        return f"<{len(self.sent)}@mail.test>"


def _sqlite_url(tmp_path, name: str) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / name}.db"


@pytest.fixture
def broker():
    return FlakyBroker({ORDER_TOPIC: PARTITIONS})


@pytest.fixture
def order_settings(tmp_path):
    return OrderSettings(
        DB_URL=_sqlite_url(tmp_path, "orders"),
        BROKER_BACKEND="memory",
        TOPIC_PARTITIONS=PARTITIONS,
        RUN_WORKERS=False,
    )


@pytest.fixture
def stock_settings(tmp_path):
    return StockSettings(
        DB_URL=_sqlite_url(tmp_path, "stock"),
        BROKER_BACKEND="memory",
        TOPIC_PARTITIONS=PARTITIONS,
        RUN_WORKERS=False,
        RETRY_BASE_DELAY=0,
        RETRY_MAX_DELAY=0,
        POLL_TIMEOUT=0,
    )


@pytest.fixture
def email_settings(tmp_path):
    return EmailSettings(
        DB_URL=_sqlite_url(tmp_path, "email"),
        BROKER_BACKEND="memory",
        TOPIC_PARTITIONS=PARTITIONS,
        RUN_WORKERS=False,
        RETRY_BASE_DELAY=0,
        RETRY_MAX_DELAY=0,
        POLL_TIMEOUT=0,
    )


async def _session_factory(settings, *metadatas):
    engine = make_engine(settings)
    await create_tables(engine, *metadatas)
    return engine, make_session_factory(engine)


@pytest_asyncio.fixture
async def order_sessions(order_settings):
    engine, factory = await _session_factory(order_settings, OrderBase.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def stock_sessions(stock_settings):
    engine, factory = await _session_factory(stock_settings, ConsumerBase.metadata, StockBase.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def email_sessions(email_settings):
    engine, factory = await _session_factory(email_settings, ConsumerBase.metadata, EmailBase.metadata)
    yield factory
    await engine.dispose()


@pytest.fixture
def gateway():
    return RecordingGateway()
