"""
Pytest configuration and fixtures
"""

import asyncio
from datetime import datetime
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import create_engine, create_session_factory
from core.exceptions import ProviderAuthError
from enrichment.consensus import ConsensusAggregator, FieldMerger
from enrichment.providers.base import ProviderAdapter, ProviderRegistry
from enrichment.quota import QuotaLedger
from enrichment.review import FieldReviewLedger
from enrichment.runner import EnrichmentRunner
from enrichment.stores.memory import InMemoryQuotaStore, InMemoryRunStore
from enrichment.types import Candidate
from models.base import Base, ReviewableField
from models.record import Record


# ============================================================================
# Fakes
# ============================================================================

class FakeProvider(ProviderAdapter):
    """Provider answering from a fixed table, optionally slow or failing"""

    def __init__(
        self,
        name: str,
        answers: Optional[Dict[str, tuple]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.answers = answers or {}
        self.error = error
        self.delay = delay
        self.calls: List[int] = []

    async def call(self, context, fields):
        self.calls.append(context.record_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        candidates = {}
        for key, (value, confidence) in self.answers.items():
            name = ReviewableField(key)
            if name in fields:
                candidates[name] = Candidate(value=value, confidence=confidence)
        return candidates


class BrokenRunStore(InMemoryRunStore):
    """Store whose run table is unavailable"""

    async def create_run(self, run):
        raise RuntimeError("connection reset")


class FixedClock:
    """Settable clock for time-dependent components"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_record(**overrides) -> Record:
    values = {"name": "Acme Tecnologia", "city": "Bogota"}
    values.update(overrides)
    return Record(**values)


# ============================================================================
# Database
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite test database (file-backed so every connection sees the same data)"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'enrichment_test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Enrichment components
# ============================================================================

@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def record(run_store):
    return run_store.add_record(make_record())


@pytest.fixture
def quota_ledger():
    return QuotaLedger(InMemoryQuotaStore(), limits={"hunter": 2, "directory": 5})


@pytest.fixture
def providers():
    return [
        FakeProvider("alpha", {
            "website": ("https://acme.example", 0.6),
            "industry": ("Tecnología", 0.9),
            "emails": (["info@acme.example"], 0.7),
        }),
        FakeProvider("beta", {
            "website": ("acme.example/", 0.8),
            "industry": ("Retail", 0.4),
            "phones": (["+57 1 555 0100"], 0.6),
        }),
    ]


@pytest.fixture
def aggregator(providers):
    return ConsensusAggregator(
        ProviderRegistry(providers),
        merger=FieldMerger(min_confidence=0.0, agreement_bonus=0.1, disagreement_penalty=0.9),
    )


@pytest.fixture
def review_ledger(run_store):
    return FieldReviewLedger(run_store, cooldown_hours=24)


@pytest.fixture
def runner(aggregator, review_ledger):
    return EnrichmentRunner(aggregator, review_ledger)


@pytest.fixture
def failing_provider():
    return FakeProvider("broken", error=ProviderAuthError("Authentication failed for broken", provider="broken"))
