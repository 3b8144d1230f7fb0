"""
In-process stores. Used by tests and single-process tooling.

None of the methods suspend between reading and writing state, so each call
is atomic under asyncio.
"""

import itertools
from datetime import datetime
from typing import Dict, List

from core.exceptions import PersistenceError, RecordNotFoundError
from enrichment.stores.base import QuotaStore, RunStore
from models.base import RecordEnrichmentStatus, RunStatus
from models.enrichment_run import EnrichmentRun
from models.quota import QuotaCounter, QuotaHistory
from models.record import Record


class InMemoryRunStore(RunStore):

    def __init__(self):
        self._records: Dict[int, Record] = {}
        self._runs: Dict[int, EnrichmentRun] = {}
        self._record_ids = itertools.count(1)
        self._run_ids = itertools.count(1)

    def add_record(self, record: Record) -> Record:
        if record.id is None:
            record.id = next(self._record_ids)
        if record.enrichment_status is None:
            record.enrichment_status = RecordEnrichmentStatus.NONE
        if record.created_at is None:
            record.created_at = datetime.utcnow()
        self._records[record.id] = record
        return record

    async def find_record(self, record_id):
        return self._records.get(record_id)

    async def update_record(self, record_id, patch):
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(
                f"Record {record_id} not found",
                context={"record_id": record_id, "operation": "update_record"}
            )
        for key, value in patch.items():
            setattr(record, key, value)
        record.updated_at = datetime.utcnow()
        return record

    async def find_records_by_status(self, status, limit, attempted_before=None):
        matching = [
            r for r in self._records.values()
            if r.enrichment_status == status
            and (attempted_before is None or r.last_attempted_at is None or r.last_attempted_at < attempted_before)
        ]
        matching.sort(key=lambda r: (
            r.last_attempted_at is not None, r.last_attempted_at or datetime.min, r.created_at, r.id
        ))
        return matching[:limit]

    async def count_records_by_status(self):
        counts = {status.value: 0 for status in RecordEnrichmentStatus}
        for record in self._records.values():
            counts[RecordEnrichmentStatus(record.enrichment_status).value] += 1
        return counts

    async def create_run(self, run):
        if run.record_id not in self._records:
            raise PersistenceError(
                f"Cannot create run for unknown record {run.record_id}",
                context={"record_id": run.record_id, "operation": "create_run"}
            )
        run.id = next(self._run_ids)
        if run.enriched_at is None:
            run.enriched_at = datetime.utcnow()
        if run.status is None:
            run.status = RunStatus.PENDING
        if run.version is None:
            run.version = 1
        self._runs[run.id] = run
        return run

    async def update_run(self, run_id, patch, expected_version=None):
        run = self._runs.get(run_id)
        if run is None:
            raise PersistenceError(
                f"Run {run_id} not found",
                context={"run_id": run_id, "operation": "update_run"}
            )
        if expected_version is not None and run.version != expected_version:
            return None
        for key, value in patch.items():
            setattr(run, key, value)
        run.version += 1
        return run

    async def find_run(self, run_id):
        return self._runs.get(run_id)

    def _runs_for(self, record_id: int) -> List[EnrichmentRun]:
        runs = [run for run in self._runs.values() if run.record_id == record_id]
        runs.sort(key=lambda run: (run.enriched_at, run.id), reverse=True)
        return runs

    async def find_latest_run(self, record_id):
        runs = self._runs_for(record_id)
        return runs[0] if runs else None

    async def find_latest_pending_run(self, record_id):
        for run in self._runs_for(record_id):
            if run.status == RunStatus.PENDING:
                return run
        return None

    async def find_runs_for(self, record_id):
        return self._runs_for(record_id)


class InMemoryQuotaStore(QuotaStore):

    def __init__(self):
        self._counters: Dict[str, QuotaCounter] = {}
        self._history: Dict[tuple, QuotaHistory] = {}

    async def ensure_counter(self, service, limit, today, alert_threshold):
        counter = self._counters.get(service)
        if counter is None:
            counter = QuotaCounter(
                service=service,
                used=0,
                limit=limit,
                last_reset_date=today,
                alert_threshold=alert_threshold,
            )
            self._counters[service] = counter
        if counter.last_reset_date < today:
            counter.used = 0
            counter.last_reset_date = today
        counter.limit = limit
        return counter

    async def try_consume(self, service, amount):
        counter = self._counters[service]
        if counter.used + amount > counter.limit:
            return False
        counter.used += amount
        return True

    async def reset(self, service, today):
        counter = self._counters.get(service)
        if counter is not None:
            counter.used = 0
            counter.last_reset_date = today

    async def set_alert_threshold(self, service, threshold):
        self._counters[service].alert_threshold = threshold

    async def set_last_error(self, service, message):
        self._counters[service].last_error = message

    async def add_history(self, service, day, used=0, success_count=0, error_count=0):
        row = self._history.get((service, day))
        if row is None:
            row = QuotaHistory(service=service, date=day, used=0, success_count=0, error_count=0)
            self._history[(service, day)] = row
        row.used += used
        row.success_count += success_count
        row.error_count += error_count

    async def history(self, service, since):
        rows = [
            row for (name, day), row in self._history.items()
            if name == service and day >= since
        ]
        return sorted(rows, key=lambda row: row.date)
