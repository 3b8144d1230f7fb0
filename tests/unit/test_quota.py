"""
Unit tests for the quota ledger
"""

from datetime import datetime, timedelta

import pytest

from core.exceptions import QuotaExhaustedError, ValidationError
from enrichment.quota import QuotaLedger, daily_limits_from_settings
from enrichment.stores.memory import InMemoryQuotaStore
from conftest import FixedClock


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 10, 21, 30))


@pytest.fixture
def ledger(clock):
    return QuotaLedger(
        InMemoryQuotaStore(),
        limits={"hunter": 3, "serpapi": 10},
        alert_threshold=80.0,
        clock=clock,
    )


class TestConsume:
    """Test daily allowance accounting"""

    @pytest.mark.asyncio
    async def test_consume_until_limit(self, ledger):
        assert await ledger.consume("hunter") is True
        assert await ledger.consume("hunter", 2) is True
        assert await ledger.consume("hunter") is False

        info = await ledger.get_info("hunter")
        assert info.used == 3
        assert info.available == 0
        assert await ledger.has_quota("hunter") is False

    @pytest.mark.asyncio
    async def test_denied_consume_changes_nothing(self, ledger):
        await ledger.consume("hunter", 2)

        assert await ledger.consume("hunter", 2) is False

        info = await ledger.get_info("hunter")
        assert info.used == 2
        history = await ledger.get_history("hunter", days=1)
        assert history[0]["used"] == 2

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.consume("hunter", 0)

    @pytest.mark.asyncio
    async def test_unknown_service_rejected(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.consume("unknown")

    @pytest.mark.asyncio
    async def test_require_raises_when_exhausted(self, ledger):
        await ledger.consume("hunter", 3)

        with pytest.raises(QuotaExhaustedError) as exc_info:
            await ledger.require("hunter")
        assert exc_info.value.context["service"] == "hunter"

    @pytest.mark.asyncio
    async def test_counter_resets_on_new_day(self, ledger, clock):
        await ledger.consume("hunter", 3)
        assert await ledger.has_quota("hunter") is False

        clock.now = clock.now + timedelta(hours=3)  # 00:30 next day

        assert await ledger.has_quota("hunter") is True
        assert (await ledger.get_info("hunter")).used == 0


class TestReporting:
    """Test info, alerts and history"""

    @pytest.mark.asyncio
    async def test_info_fields(self, ledger):
        await ledger.consume("serpapi", 4)

        info = await ledger.get_info("serpapi")

        assert info.limit == 10
        assert info.available == 6
        assert info.percentage == 40.0
        assert info.reset_in == "2h 30m"
        assert info.to_dict()["service"] == "serpapi"

    @pytest.mark.asyncio
    async def test_alert_at_threshold(self, ledger):
        await ledger.consume("serpapi", 8)
        await ledger.consume("hunter", 1)

        alerts = await ledger.check_alerts()

        assert [a.service for a in alerts] == ["serpapi"]
        assert alerts[0].percentage == 80.0

    @pytest.mark.asyncio
    async def test_custom_threshold(self, ledger):
        await ledger.set_alert_threshold("hunter", 30)
        await ledger.consume("hunter", 1)

        alerts = await ledger.check_alerts()

        assert [a.service for a in alerts] == ["hunter"]

    @pytest.mark.asyncio
    async def test_threshold_bounds(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.set_alert_threshold("hunter", 0)
        with pytest.raises(ValidationError):
            await ledger.set_alert_threshold("hunter", 120)

    @pytest.mark.asyncio
    async def test_history_window_and_outcomes(self, ledger, clock):
        await ledger.consume("serpapi", 2)
        await ledger.record_outcome("serpapi", success=True)
        clock.now = clock.now + timedelta(days=1)
        await ledger.consume("serpapi")
        await ledger.record_outcome("serpapi", success=False, error="HTTP 500")

        history = await ledger.get_history("serpapi", days=2)

        assert [row["date"] for row in history] == ["2024-03-10", "2024-03-11"]
        assert [row["used"] for row in history] == [2, 1]
        assert history[0]["success_count"] == 1
        assert history[1]["error_count"] == 1
        assert await ledger.error_rate("serpapi", days=2) == 0.5

        assert len(await ledger.get_history("serpapi", days=1)) == 1

    @pytest.mark.asyncio
    async def test_history_days_bounds(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.get_history("serpapi", days=0)
        with pytest.raises(ValidationError):
            await ledger.get_history("serpapi", days=31)

    @pytest.mark.asyncio
    async def test_error_rate_without_calls(self, ledger):
        assert await ledger.error_rate("hunter") == 0.0

    @pytest.mark.asyncio
    async def test_reset_and_reset_all(self, ledger):
        await ledger.consume("hunter", 2)
        await ledger.consume("serpapi", 5)

        await ledger.reset("hunter")
        assert (await ledger.get_info("hunter")).used == 0
        assert (await ledger.get_info("serpapi")).used == 5

        await ledger.reset_all()
        assert all(info.used == 0 for info in await ledger.get_all_info())


def test_daily_limits_spread_monthly_caps():
    limits = daily_limits_from_settings()

    assert limits["pagespeed"] == 25000 // 30
    # Small monthly caps still allow one call a day
    assert limits["hunter"] == 1
