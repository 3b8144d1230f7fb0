"""
Unit tests for quota-gated external lookups
"""

import pytest
from unittest.mock import AsyncMock

from core.exceptions import ProviderError, QuotaExhaustedError
from enrichment.quota import QuotaLedger
from enrichment.stages.external_lookup import (
    DirectoryClient,
    DirectoryLookup,
    EmailVerificationLookup,
    EmailVerifier,
    ExternalLookupStage,
    guarded_call,
)
from enrichment.stores.memory import InMemoryQuotaStore
from enrichment.types import Candidate, EnrichmentContext, EnrichmentResult, FieldResult
from models.base import ReviewableField


class StubVerifier(EmailVerifier):

    def __init__(self, valid=()):
        self.valid = set(valid)
        self.checked = []

    async def verify(self, email):
        self.checked.append(email)
        return email in self.valid


class StubDirectory(DirectoryClient):

    def __init__(self, found=None, error=None):
        self.found = found or {}
        self.error = error

    async def search(self, context):
        if self.error:
            raise self.error
        return self.found


@pytest.fixture
def context():
    return EnrichmentContext(record_id=3, name="Acme", city="Quito")


@pytest.fixture
def quota():
    return QuotaLedger(InMemoryQuotaStore(), limits={"hunter": 10, "directory": 1})


def result_with(**fields) -> EnrichmentResult:
    result = EnrichmentResult(record_id=3)
    for name, (value, confidence) in fields.items():
        result.fields[ReviewableField(name)] = FieldResult(value=value, confidence=confidence, providers=["alpha"])
    return result


class TestGuardedCall:

    @pytest.mark.asyncio
    async def test_consumes_only_on_success(self, quota):
        call = AsyncMock(return_value="ok")

        assert await guarded_call(quota, "hunter", call) == "ok"
        assert (await quota.get_info("hunter")).used == 1

        failing = AsyncMock(side_effect=ProviderError("down"))
        with pytest.raises(ProviderError):
            await guarded_call(quota, "hunter", failing)

        assert (await quota.get_info("hunter")).used == 1
        history = await quota.get_history("hunter", days=1)
        assert history[0]["success_count"] == 1
        assert history[0]["error_count"] == 1

    @pytest.mark.asyncio
    async def test_exhausted_quota_skips_call(self, quota):
        await quota.consume("directory")
        call = AsyncMock()

        with pytest.raises(QuotaExhaustedError):
            await guarded_call(quota, "directory", call)
        call.assert_not_called()


class TestEmailVerification:
    """Test verified-first ordering and the score boost"""

    @pytest.mark.asyncio
    async def test_verified_emails_boost_score(self, context, quota):
        verifier = StubVerifier(valid={"sales@acme.example"})
        result = result_with(emails=(["info@acme.example", "sales@acme.example"], 0.6))

        used = await EmailVerificationLookup(verifier).apply(context, result, quota)

        emails = result.get(ReviewableField.EMAILS)
        assert used is True
        assert emails.value == ["sales@acme.example", "info@acme.example"]
        assert emails.confidence == pytest.approx(0.69)
        assert emails.source == "verified"

    @pytest.mark.asyncio
    async def test_at_most_five_emails_checked(self, context, quota):
        verifier = StubVerifier()
        result = result_with(emails=([f"user{i}@acme.example" for i in range(8)], 0.5))

        await EmailVerificationLookup(verifier).apply(context, result, quota)

        assert len(verifier.checked) == 5
        assert (await quota.get_info("hunter")).used == 5
        assert result.get(ReviewableField.EMAILS).confidence == 0.5

    @pytest.mark.asyncio
    async def test_quota_running_out_midway(self, context):
        quota = QuotaLedger(InMemoryQuotaStore(), limits={"hunter": 2})
        verifier = StubVerifier()
        result = result_with(emails=(["a@x.example", "b@x.example", "c@x.example"], 0.5))

        used = await EmailVerificationLookup(verifier).apply(context, result, quota)

        assert used is True
        assert verifier.checked == ["a@x.example", "b@x.example"]
        assert result.skipped_stages[0].reason == "quota exhausted after 2 of 3 emails"

    @pytest.mark.asyncio
    async def test_verifier_error_keeps_earlier_verdicts(self, context, quota):
        class FlakyVerifier(StubVerifier):
            async def verify(self, email):
                if email.startswith("z@"):
                    raise ProviderError("verifier hiccup", provider="hunter")
                return await super().verify(email)

        verifier = FlakyVerifier(valid={"a@x.example", "b@x.example"})
        result = result_with(emails=(["z@x.example", "a@x.example", "b@x.example"], 0.6))

        used = await EmailVerificationLookup(verifier).apply(context, result, quota)

        emails = result.get(ReviewableField.EMAILS)
        assert used is True
        assert emails.value == ["a@x.example", "b@x.example", "z@x.example"]
        assert emails.confidence == pytest.approx(0.69)
        assert (await quota.get_info("hunter")).used == 2
        assert result.skipped_stages[0].reason == "1 of 3 emails not verified: verifier hiccup"

    @pytest.mark.asyncio
    async def test_verifier_down_for_every_email(self, context, quota):
        verifier = AsyncMock(spec=EmailVerifier)
        verifier.verify.side_effect = ProviderError("verifier down", provider="hunter")
        result = result_with(emails=(["a@x.example"], 0.6))
        stage = ExternalLookupStage(quota, [EmailVerificationLookup(verifier)])

        await stage.run(context, result)

        assert [s.reason for s in result.skipped_stages] == ["failed: verifier down"]
        assert result.get(ReviewableField.EMAILS).confidence == 0.6
        assert (await quota.get_info("hunter")).used == 0

    @pytest.mark.asyncio
    async def test_no_emails_no_calls(self, context, quota):
        verifier = StubVerifier()

        used = await EmailVerificationLookup(verifier).apply(context, result_with(), quota)

        assert used is False
        assert verifier.checked == []


class TestDirectoryLookup:
    """Test gap filling from directory listings"""

    @pytest.mark.asyncio
    async def test_fills_missing_and_weak_fields(self, context, quota):
        client = StubDirectory(found={
            ReviewableField.ADDRESS: Candidate("Av. Amazonas 100", 0.9),
            ReviewableField.PHONES: Candidate(["+593 2 222 0000", "(02) 555-0101"], 0.85),
            ReviewableField.WEBSITE: Candidate("https://directory-site.example", 0.6),
        })
        result = result_with(
            address=("Somewhere", 0.5),
            phones=(["02 555 0101"], 0.6),
            website=("https://acme.example", 0.8),
        )

        used = await DirectoryLookup(client, stage="directory", service="directory").apply(context, result, quota)

        assert used is True
        assert result.get(ReviewableField.ADDRESS).value == "Av. Amazonas 100"
        assert result.get(ReviewableField.ADDRESS).source == "directory"
        assert result.get(ReviewableField.PHONES).value == ["02 555 0101", "+593 2 222 0000"]
        assert result.get(ReviewableField.PHONES).confidence == 0.85
        # Existing website kept
        assert result.get(ReviewableField.WEBSITE).value == "https://acme.example"

    @pytest.mark.asyncio
    async def test_strong_address_kept(self, context, quota):
        client = StubDirectory(found={ReviewableField.ADDRESS: Candidate("Other", 0.9)})
        result = result_with(address=("Calle 5", 0.85))

        used = await DirectoryLookup(client, stage="directory", service="directory").apply(context, result, quota)

        assert used is False
        assert result.get(ReviewableField.ADDRESS).value == "Calle 5"


class TestExternalLookupStage:
    """Test skip reporting"""

    @pytest.mark.asyncio
    async def test_exhausted_quota_recorded_as_skip(self, context, quota):
        await quota.consume("directory")
        stage = ExternalLookupStage(quota, [
            DirectoryLookup(StubDirectory(), stage="directory", service="directory"),
        ])
        result = result_with(website=("https://acme.example", 0.8))

        await stage.run(context, result)

        skip = result.skipped_stages[0]
        assert skip.stage == "directory"
        assert skip.reason == "daily quota exhausted"
        assert skip.service == "directory"
        assert result.external_data_used == []

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_next_lookup(self, context, quota):
        stage = ExternalLookupStage(quota, [
            DirectoryLookup(StubDirectory(error=ProviderError("directory down")), stage="directory", service="directory"),
            EmailVerificationLookup(StubVerifier(valid={"info@acme.example"})),
        ])
        result = result_with(emails=(["info@acme.example"], 0.6))

        await stage.run(context, result)

        assert result.skipped_stages[0].reason == "failed: directory down"
        assert result.external_data_used == ["email_verification"]

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded(self, context, quota):
        stage = ExternalLookupStage(quota, [
            DirectoryLookup(StubDirectory(error=KeyError("oops")), stage="directory", service="directory"),
        ])
        result = result_with()

        await stage.run(context, result)

        assert result.skipped_stages[0].reason == "failed: KeyError"
