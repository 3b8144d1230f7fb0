"""
Integration tests for the SQLAlchemy stores against SQLite
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from sqlalchemy import select

from core.exceptions import ConflictError, PersistenceError, RecordNotFoundError
from enrichment.quota import QuotaLedger
from enrichment.review import FieldReviewLedger
from enrichment.stores.sqlalchemy_store import SQLAlchemyQuotaStore, SQLAlchemyRunStore
from enrichment.types import EnrichmentResult, FieldResult
from models.base import RecordEnrichmentStatus, ReviewableField, RunStatus
from models.enrichment_run import EnrichmentRun
from models.quota import QuotaCounter
from conftest import FixedClock, make_record


async def add_records(db_session, count):
    records = [make_record(name=f"Empresa {i}", created_at=datetime(2024, 1, 1) + timedelta(minutes=i)) for i in range(count)]
    db_session.add_all(records)
    await db_session.commit()
    return records


@pytest.mark.asyncio
async def test_record_lookup_and_update(db_session, session_factory):
    """Records are read and patched through short-lived sessions"""
    [record] = await add_records(db_session, 1)
    store = SQLAlchemyRunStore(session_factory)

    found = await store.find_record(record.id)
    assert found.name == "Empresa 0"
    assert found.enrichment_status == RecordEnrichmentStatus.NONE

    updated = await store.update_record(record.id, {
        "website": "https://empresa.example",
        "enrichment_status": RecordEnrichmentStatus.PARTIAL,
    })
    assert updated.website == "https://empresa.example"

    reloaded = await store.find_record(record.id)
    assert reloaded.enrichment_status == RecordEnrichmentStatus.PARTIAL

    assert await store.find_record(999) is None
    with pytest.raises(RecordNotFoundError):
        await store.update_record(999, {"website": "x"})


@pytest.mark.asyncio
async def test_records_by_status_oldest_first(db_session, session_factory):
    records = await add_records(db_session, 4)
    store = SQLAlchemyRunStore(session_factory)
    await store.update_record(records[1].id, {"enrichment_status": RecordEnrichmentStatus.COMPLETE})

    pending = await store.find_records_by_status(RecordEnrichmentStatus.NONE, limit=2)
    counts = await store.count_records_by_status()

    assert [r.id for r in pending] == [records[0].id, records[2].id]
    assert counts == {"NONE": 3, "PENDING": 0, "PARTIAL": 0, "COMPLETE": 1}


@pytest.mark.asyncio
async def test_recently_attempted_records_wait_their_turn(db_session, session_factory):
    records = await add_records(db_session, 3)
    store = SQLAlchemyRunStore(session_factory)
    await store.update_record(records[0].id, {"last_attempted_at": datetime(2024, 3, 10, 9, 0)})
    await store.update_record(records[1].id, {"last_attempted_at": datetime(2024, 3, 1, 9, 0)})

    everything = await store.find_records_by_status(RecordEnrichmentStatus.NONE, limit=10)
    due = await store.find_records_by_status(
        RecordEnrichmentStatus.NONE, limit=10, attempted_before=datetime(2024, 3, 9, 9, 0)
    )

    assert [r.id for r in everything] == [records[2].id, records[1].id, records[0].id]
    assert [r.id for r in due] == [records[2].id, records[1].id]


@pytest.mark.asyncio
async def test_run_round_trip(db_session, session_factory):
    """JSON columns and enum status survive a write and a read"""
    [record] = await add_records(db_session, 1)
    store = SQLAlchemyRunStore(session_factory)

    run = await store.create_run(EnrichmentRun(
        record_id=record.id,
        enriched_at=datetime(2024, 2, 1, 12, 0),
        emails=["info@empresa.example"],
        emails_score=0.7,
        social_profiles={"instagram": "instagram.com/empresa"},
        social_profiles_score=0.6,
        providers_used=["alpha"],
        provider_errors=[{"provider": "beta", "error": "timeout", "error_type": "ProviderTimeoutError"}],
        field_statuses={"emails": "PENDING", "social_profiles": "PENDING"},
        status=RunStatus.PENDING,
    ))
    newer = await store.create_run(EnrichmentRun(
        record_id=record.id,
        enriched_at=datetime(2024, 2, 2, 12, 0),
        field_statuses={},
        status=RunStatus.CONFIRMED,
    ))

    assert run.id is not None
    loaded = await store.find_run(run.id)
    assert loaded.emails == ["info@empresa.example"]
    assert loaded.provider_errors[0]["provider"] == "beta"

    assert (await store.find_latest_run(record.id)).id == newer.id
    assert (await store.find_latest_pending_run(record.id)).id == run.id
    assert [r.id for r in await store.find_runs_for(record.id)] == [newer.id, run.id]

    updated = await store.update_run(run.id, {"field_statuses": {"emails": "CONFIRMED", "social_profiles": "PENDING"}})
    assert updated.field_statuses["emails"] == "CONFIRMED"
    assert (await store.find_run(run.id)).field_statuses["emails"] == "CONFIRMED"


@pytest.mark.asyncio
async def test_run_update_compares_version(db_session, session_factory):
    [record] = await add_records(db_session, 1)
    store = SQLAlchemyRunStore(session_factory)
    run = await store.create_run(EnrichmentRun(
        record_id=record.id,
        enriched_at=datetime(2024, 2, 1, 12, 0),
        field_statuses={"website": "PENDING"},
        status=RunStatus.PENDING,
    ))
    assert run.version == 1

    updated = await store.update_run(run.id, {"field_statuses": {"website": "CONFIRMED"}}, expected_version=1)
    assert updated.version == 2

    stale = await store.update_run(run.id, {"field_statuses": {"website": "REJECTED"}}, expected_version=1)
    assert stale is None
    reloaded = await store.find_run(run.id)
    assert reloaded.field_statuses == {"website": "CONFIRMED"}
    assert reloaded.version == 2

    with pytest.raises(PersistenceError):
        await store.update_run(999, {"status": RunStatus.CONFIRMED}, expected_version=1)


# ============================================================================
# Concurrent reviews
# ============================================================================

class InterruptedRunStore(SQLAlchemyRunStore):
    """Run store where another writer commits just before the first run write"""

    def __init__(self, session_factory, interloper):
        super().__init__(session_factory)
        self.interloper = interloper

    async def update_run(self, run_id, patch, expected_version=None):
        if self.interloper is not None:
            interloper, self.interloper = self.interloper, None
            await interloper(run_id)
        return await super().update_run(run_id, patch, expected_version=expected_version)


def other_reviewer(session_factory, field_name, status):
    """Writes one field status the way a review in another process would"""
    store = SQLAlchemyRunStore(session_factory)

    async def review(run_id):
        run = await store.find_run(run_id)
        statuses = dict(run.field_statuses)
        statuses[field_name] = status
        assert await store.update_run(run_id, {"field_statuses": statuses}, expected_version=run.version)

    return review


async def pending_run(session_factory, record_id):
    result = EnrichmentResult(record_id=record_id, providers_used=["alpha"])
    result.fields[ReviewableField.WEBSITE] = FieldResult(value="https://empresa.example", confidence=0.85, providers=["alpha"])
    result.fields[ReviewableField.INDUSTRY] = FieldResult(value="Retail", confidence=0.7, providers=["alpha"])
    return await FieldReviewLedger(SQLAlchemyRunStore(session_factory)).create_run(record_id, result)


@pytest.mark.asyncio
async def test_racing_reviews_of_one_field(db_session, session_factory):
    [record] = await add_records(db_session, 1)
    run = await pending_run(session_factory, record.id)
    ledger = FieldReviewLedger(SQLAlchemyRunStore(session_factory))

    results = await asyncio.gather(
        ledger.confirm(record.id, ["website"]),
        ledger.reject(record.id, ["website"]),
        return_exceptions=True,
    )

    conflicts = [r for r in results if isinstance(r, ConflictError)]
    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(conflicts) == 1
    assert len(winners) == 1

    stored = await ledger.store.find_run(run.id)
    assert stored.field_statuses["website"] == winners[0].run.field_statuses["website"]
    assert stored.field_statuses["industry"] == "PENDING"
    assert stored.version == 2


@pytest.mark.asyncio
async def test_review_retries_after_write_to_another_field(db_session, session_factory):
    [record] = await add_records(db_session, 1)
    run = await pending_run(session_factory, record.id)
    store = InterruptedRunStore(session_factory, other_reviewer(session_factory, "industry", "REJECTED"))
    ledger = FieldReviewLedger(store)

    outcome = await ledger.confirm(record.id, ["website"])

    assert outcome.run.field_statuses == {"website": "CONFIRMED", "industry": "REJECTED"}
    assert outcome.run_completed
    assert outcome.record_status == RecordEnrichmentStatus.COMPLETE

    stored = await store.find_run(run.id)
    assert stored.status == RunStatus.CONFIRMED
    assert stored.version == 3
    assert (await store.find_record(record.id)).website == "https://empresa.example"


@pytest.mark.asyncio
async def test_review_of_field_settled_elsewhere_conflicts(db_session, session_factory):
    [record] = await add_records(db_session, 1)
    run = await pending_run(session_factory, record.id)
    store = InterruptedRunStore(session_factory, other_reviewer(session_factory, "website", "CONFIRMED"))
    ledger = FieldReviewLedger(store)

    with pytest.raises(ConflictError):
        await ledger.reject(record.id, ["website"])

    stored = await store.find_run(run.id)
    assert stored.field_statuses == {"website": "CONFIRMED", "industry": "PENDING"}
    assert stored.status == RunStatus.PENDING


# ============================================================================
# Quota store
# ============================================================================

@pytest.mark.asyncio
async def test_quota_counter_enforces_limit(session_factory):
    clock = FixedClock(datetime(2024, 3, 10, 9, 0))
    ledger = QuotaLedger(SQLAlchemyQuotaStore(session_factory), limits={"hunter": 2}, clock=clock)

    assert await ledger.consume("hunter") is True
    assert await ledger.consume("hunter") is True
    assert await ledger.consume("hunter") is False

    info = await ledger.get_info("hunter")
    assert info.used == 2
    assert info.available == 0

    history = await ledger.get_history("hunter", days=1)
    assert history == [{"date": "2024-03-10", "used": 2, "success_count": 0, "error_count": 0}]


@pytest.mark.asyncio
async def test_quota_resets_on_new_day(session_factory, db_session):
    clock = FixedClock(datetime(2024, 3, 10, 23, 30))
    ledger = QuotaLedger(SQLAlchemyQuotaStore(session_factory), limits={"serpapi": 5}, clock=clock)
    await ledger.consume("serpapi", amount=4)

    clock.now = datetime(2024, 3, 11, 0, 5)
    info = await ledger.get_info("serpapi")

    assert info.used == 0
    counter = (await db_session.execute(select(QuotaCounter))).scalars().one()
    assert counter.last_reset_date.isoformat() == "2024-03-11"

    history = await ledger.get_history("serpapi", days=2)
    assert [row["date"] for row in history] == ["2024-03-10"]


@pytest.mark.asyncio
async def test_quota_outcomes_and_threshold(session_factory):
    clock = FixedClock(datetime(2024, 3, 10, 9, 0))
    ledger = QuotaLedger(SQLAlchemyQuotaStore(session_factory), limits={"hunter": 10}, clock=clock)

    await ledger.record_outcome("hunter", success=True)
    await ledger.record_outcome("hunter", success=False, error="HTTP 500")
    await ledger.set_alert_threshold("hunter", 20.0)
    await ledger.consume("hunter", amount=2)

    assert await ledger.error_rate("hunter", days=7) == 0.5
    alerts = await ledger.check_alerts()
    assert [alert.service for alert in alerts] == ["hunter"]
    assert alerts[0].threshold == 20.0

    await ledger.reset("hunter")
    assert (await ledger.get_info("hunter")).used == 0
