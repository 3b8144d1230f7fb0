"""
Unit tests for single-record enrichment
"""

import pytest

from core.exceptions import (
    AllProvidersFailedError,
    PersistenceError,
    ProviderError,
    RecordNotFoundError,
    ValidationError,
)
from enrichment.consensus import ConsensusAggregator, FieldMerger
from enrichment.providers.base import ProviderRegistry
from enrichment.review import FieldReviewLedger
from enrichment.runner import EnrichmentRunner
from models.base import RecordEnrichmentStatus, ReviewableField, RunStatus
from conftest import BrokenRunStore, FakeProvider, make_record


def build_runner(store, providers) -> EnrichmentRunner:
    aggregator = ConsensusAggregator(
        ProviderRegistry(providers),
        merger=FieldMerger(min_confidence=0.0, agreement_bonus=0.1, disagreement_penalty=0.9),
    )
    return EnrichmentRunner(aggregator, FieldReviewLedger(store, cooldown_hours=24))


class TestFullMode:
    """Test full-mode enrichment against every provider"""

    @pytest.mark.asyncio
    async def test_run_stored_with_merged_fields(self, runner, record):
        outcome = await runner.run(record.id)

        assert outcome.run is not None
        assert outcome.fields_found == 4
        assert set(outcome.run.field_statuses) == {"website", "industry", "emails", "phones"}
        assert outcome.run.website == "acme.example/"
        assert outcome.run.website_score == pytest.approx(0.8)
        assert outcome.run.industry == "Tecnología"
        assert outcome.run.mode == "full"
        assert outcome.run.providers_used == ["alpha", "beta"]
        assert record.enrichment_status == RecordEnrichmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_requested_fields_only(self, runner, record):
        outcome = await runner.run(record.id, fields=[ReviewableField.PHONES])

        assert list(outcome.run.field_statuses) == ["phones"]

    @pytest.mark.asyncio
    async def test_failed_provider_recorded_on_run(self, run_store, record, providers, failing_provider):
        runner = build_runner(run_store, providers + [failing_provider])

        outcome = await runner.run(record.id)

        assert outcome.run is not None
        assert outcome.run.provider_errors == [{
            "provider": "broken",
            "error": "Authentication failed for broken",
            "error_type": "ProviderAuthError",
        }]
        assert outcome.to_dict()["result"]["provider_errors"][0]["provider"] == "broken"

    @pytest.mark.asyncio
    async def test_nothing_found_stores_no_run(self, run_store, record, failing_provider):
        runner = build_runner(run_store, [failing_provider, FakeProvider("empty")])

        outcome = await runner.run(record.id)

        assert outcome.run is None
        assert outcome.to_dict()["run_id"] is None
        assert await run_store.find_latest_run(record.id) is None
        assert record.enrichment_status == RecordEnrichmentStatus.NONE

    @pytest.mark.asyncio
    async def test_no_providers_configured(self, run_store, record):
        runner = build_runner(run_store, [])

        with pytest.raises(ProviderError):
            await runner.run(record.id)


class TestQuickMode:

    @pytest.mark.asyncio
    async def test_first_answering_provider_wins(self, runner, record, providers):
        outcome = await runner.run(record.id, quick=True)

        assert outcome.run.mode == "quick"
        assert outcome.run.providers_used == ["alpha"]
        assert providers[1].calls == []
        assert set(outcome.run.field_statuses) == {"website", "industry", "emails"}

    @pytest.mark.asyncio
    async def test_named_provider(self, runner, record, providers):
        outcome = await runner.run(record.id, quick=True, provider="beta")

        assert outcome.run.providers_used == ["beta"]
        assert providers[0].calls == []

    @pytest.mark.asyncio
    async def test_falls_through_failed_provider(self, run_store, record, providers, failing_provider):
        runner = build_runner(run_store, [failing_provider] + providers)

        outcome = await runner.run(record.id, quick=True)

        assert outcome.run.providers_used == ["alpha"]
        assert outcome.result.provider_errors[0].provider == "broken"

    @pytest.mark.asyncio
    async def test_every_provider_failed(self, run_store, record, failing_provider):
        runner = build_runner(run_store, [failing_provider])

        with pytest.raises(AllProvidersFailedError):
            await runner.run(record.id, quick=True)

    @pytest.mark.asyncio
    async def test_unknown_provider(self, runner, record):
        with pytest.raises(ValidationError):
            await runner.run(record.id, quick=True, provider="gamma")


class TestRunnerValidation:

    @pytest.mark.asyncio
    async def test_missing_record(self, runner):
        with pytest.raises(RecordNotFoundError):
            await runner.run(404)

    @pytest.mark.asyncio
    async def test_nothing_enabled(self, runner, record):
        with pytest.raises(ValidationError):
            await runner.run(record.id, include_ai=False, include_external_lookups=False)

    @pytest.mark.asyncio
    async def test_lookups_only_without_configured_lookups(self, runner, record, providers):
        outcome = await runner.run(record.id, include_ai=False, include_external_lookups=True)

        assert outcome.run is None
        assert outcome.result.mode == "lookup"
        assert outcome.result.skipped_stages[0].reason == "no external lookups configured"
        assert providers[0].calls == []


class TestCooldownAndPersistence:

    @pytest.mark.asyncio
    async def test_second_run_warns_but_proceeds(self, runner, record, run_store):
        first = await runner.run(record.id)
        second = await runner.run(record.id)

        assert first.cooldown.should_warn is False
        assert second.cooldown.should_warn is True
        assert second.run.id != first.run.id
        assert second.to_dict()["cooldown_warning"] is True
        assert "hours_since_last_enrichment" in second.to_dict()
        assert len(await run_store.find_runs_for(record.id)) == 2

    @pytest.mark.asyncio
    async def test_store_failure_becomes_persistence_error(self, providers):
        store = BrokenRunStore()
        record = store.add_record(make_record())
        runner = build_runner(store, providers)

        with pytest.raises(PersistenceError) as exc_info:
            await runner.run(record.id)
        assert exc_info.value.context["record_id"] == record.id

    @pytest.mark.asyncio
    async def test_run_status_serialized(self, runner, record):
        outcome = await runner.run(record.id)

        data = outcome.to_dict()
        assert data["run_status"] == RunStatus.PENDING.value
        assert data["field_statuses"]["website"] == "PENDING"
