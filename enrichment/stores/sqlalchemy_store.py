"""
SQLAlchemy-backed stores.

Each operation opens its own short-lived session from ``session_factory``.
Batch enrichment runs several records concurrently and an AsyncSession must
not be shared between tasks.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import PersistenceError, RecordNotFoundError
from enrichment.stores.base import QuotaStore, RunStore
from models.base import RecordEnrichmentStatus, RunStatus
from models.enrichment_run import EnrichmentRun
from models.quota import QuotaCounter, QuotaHistory
from models.record import Record

logger = logging.getLogger(__name__)


class _SessionScope:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str, table_name: str) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"{operation} on {table_name} failed: {str(e)}")
                raise PersistenceError(
                    f"Database operation {operation} failed",
                    context={"operation": operation, "table_name": table_name},
                    original_exception=e
                )


class SQLAlchemyRunStore(_SessionScope, RunStore):

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def find_record(self, record_id):
        async with self._session("find_record", "records") as session:
            return await session.get(Record, record_id)

    async def update_record(self, record_id, patch):
        async with self._session("update_record", "records") as session:
            record = await session.get(Record, record_id)
            if record is None:
                raise RecordNotFoundError(
                    f"Record {record_id} not found",
                    context={"record_id": record_id, "operation": "update_record"}
                )
            for key, value in patch.items():
                setattr(record, key, value)
            record.updated_at = datetime.utcnow()
            await session.commit()
            return record

    async def find_records_by_status(self, status, limit, attempted_before=None):
        query = select(Record).where(Record.enrichment_status == status)
        if attempted_before is not None:
            query = query.where(or_(
                Record.last_attempted_at.is_(None),
                Record.last_attempted_at < attempted_before,
            ))
        async with self._session("find_records_by_status", "records") as session:
            result = await session.execute(
                query
                .order_by(
                    Record.last_attempted_at.asc().nulls_first(),
                    Record.created_at.asc(),
                    Record.id.asc(),
                )
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_records_by_status(self):
        async with self._session("count_records_by_status", "records") as session:
            result = await session.execute(
                select(Record.enrichment_status, func.count(Record.id))
                .group_by(Record.enrichment_status)
            )
            counts = {status.value: 0 for status in RecordEnrichmentStatus}
            for status, count in result.all():
                counts[RecordEnrichmentStatus(status).value] = count
            return counts

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def create_run(self, run):
        async with self._session("create_run", "enrichment_runs") as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run

    async def update_run(self, run_id, patch, expected_version=None):
        conditions = [EnrichmentRun.id == run_id]
        if expected_version is not None:
            conditions.append(EnrichmentRun.version == expected_version)

        async with self._session("update_run", "enrichment_runs") as session:
            result = await session.execute(
                update(EnrichmentRun)
                .where(*conditions)
                .values(**patch, version=EnrichmentRun.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                if await session.get(EnrichmentRun, run_id) is None:
                    raise PersistenceError(
                        f"Run {run_id} not found",
                        context={"run_id": run_id, "operation": "update_run"}
                    )
                # Stale version: another writer committed first
                return None
            await session.commit()
            return await session.get(EnrichmentRun, run_id)

    async def find_run(self, run_id):
        async with self._session("find_run", "enrichment_runs") as session:
            return await session.get(EnrichmentRun, run_id)

    async def find_latest_run(self, record_id):
        async with self._session("find_latest_run", "enrichment_runs") as session:
            result = await session.execute(
                select(EnrichmentRun)
                .where(EnrichmentRun.record_id == record_id)
                .order_by(EnrichmentRun.enriched_at.desc(), EnrichmentRun.id.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def find_latest_pending_run(self, record_id):
        async with self._session("find_latest_pending_run", "enrichment_runs") as session:
            result = await session.execute(
                select(EnrichmentRun)
                .where(
                    EnrichmentRun.record_id == record_id,
                    EnrichmentRun.status == RunStatus.PENDING
                )
                .order_by(EnrichmentRun.enriched_at.desc(), EnrichmentRun.id.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def find_runs_for(self, record_id):
        async with self._session("find_runs_for", "enrichment_runs") as session:
            result = await session.execute(
                select(EnrichmentRun)
                .where(EnrichmentRun.record_id == record_id)
                .order_by(EnrichmentRun.enriched_at.desc(), EnrichmentRun.id.desc())
            )
            return list(result.scalars().all())


class SQLAlchemyQuotaStore(_SessionScope, QuotaStore):

    async def ensure_counter(self, service, limit, today, alert_threshold):
        async with self._session("ensure_counter", "quota_counters") as session:
            counter = await session.get(QuotaCounter, service)
            if counter is None:
                counter = QuotaCounter(
                    service=service,
                    used=0,
                    limit=limit,
                    last_reset_date=today,
                    alert_threshold=alert_threshold,
                )
                session.add(counter)
                try:
                    await session.commit()
                    return counter
                except IntegrityError:
                    # Created concurrently
                    await session.rollback()
                    counter = await session.get(QuotaCounter, service)

            # Conditional reset so two callers on a new day zero it only once
            await session.execute(
                update(QuotaCounter)
                .where(QuotaCounter.service == service, QuotaCounter.last_reset_date < today)
                .values(used=0, last_reset_date=today)
            )
            if counter.limit != limit:
                await session.execute(
                    update(QuotaCounter)
                    .where(QuotaCounter.service == service)
                    .values({QuotaCounter.limit: limit})
                )
            await session.commit()
            await session.refresh(counter)
            return counter

    async def try_consume(self, service, amount):
        async with self._session("try_consume", "quota_counters") as session:
            result = await session.execute(
                update(QuotaCounter)
                .where(
                    QuotaCounter.service == service,
                    QuotaCounter.used + amount <= QuotaCounter.limit
                )
                .values(used=QuotaCounter.used + amount)
            )
            await session.commit()
            return result.rowcount == 1

    async def reset(self, service, today):
        async with self._session("reset", "quota_counters") as session:
            await session.execute(
                update(QuotaCounter)
                .where(QuotaCounter.service == service)
                .values(used=0, last_reset_date=today)
            )
            await session.commit()

    async def set_alert_threshold(self, service, threshold):
        async with self._session("set_alert_threshold", "quota_counters") as session:
            await session.execute(
                update(QuotaCounter)
                .where(QuotaCounter.service == service)
                .values(alert_threshold=threshold)
            )
            await session.commit()

    async def set_last_error(self, service, message):
        async with self._session("set_last_error", "quota_counters") as session:
            await session.execute(
                update(QuotaCounter)
                .where(QuotaCounter.service == service)
                .values(last_error=message)
            )
            await session.commit()

    async def add_history(self, service, day, used=0, success_count=0, error_count=0):
        increment = (
            update(QuotaHistory)
            .where(QuotaHistory.service == service, QuotaHistory.date == day)
            .values(
                used=QuotaHistory.used + used,
                success_count=QuotaHistory.success_count + success_count,
                error_count=QuotaHistory.error_count + error_count,
            )
        )
        async with self._session("add_history", "quota_history") as session:
            result = await session.execute(increment)
            if result.rowcount == 0:
                session.add(QuotaHistory(
                    service=service,
                    date=day,
                    used=used,
                    success_count=success_count,
                    error_count=error_count,
                ))
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()
                    await session.execute(increment)
            await session.commit()

    async def history(self, service, since):
        async with self._session("history", "quota_history") as session:
            result = await session.execute(
                select(QuotaHistory)
                .where(QuotaHistory.service == service, QuotaHistory.date >= since)
                .order_by(QuotaHistory.date.asc())
            )
            return list(result.scalars().all())
