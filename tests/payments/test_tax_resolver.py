from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.services.tax_resolver import TaxResolver, select_tax_rate
from domain.commerce.entity import TaxRate


NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _rate(rate, region=None, *, days_ago=30, until=None, is_default=False, rate_id=None):
    return TaxRate(
        id=rate_id,
        country_code="US",
        region_code=region,
        rate_percentage=Decimal(rate),
        effective_from=NOW - timedelta(days=days_ago),
        effective_until=until,
        is_default=is_default,
    )


def test_region_match_beats_country_wide():
    rates = [_rate("5", rate_id=1), _rate("8.5", "CA", rate_id=2)]
    assert select_tax_rate(rates, "ca", NOW).id == 2
    assert select_tax_rate(rates, "NY", NOW).id == 1


def test_most_recent_effective_rate_wins():
    rates = [_rate("7", "CA", days_ago=400, rate_id=1), _rate("7.25", "CA", days_ago=10, rate_id=2)]
    assert select_tax_rate(rates, "CA", NOW).id == 2


def test_expired_and_future_rates_are_skipped():
    rates = [
        _rate("9", "CA", days_ago=100, until=NOW - timedelta(days=1), rate_id=1),
        _rate("10", "CA", days_ago=-5, rate_id=2),
    ]
    assert select_tax_rate(rates, "CA", NOW) is None


def test_default_flag_used_as_last_resort():
    rates = [_rate("6", "TX", rate_id=1), _rate("4", "WA", is_default=True, rate_id=2)]
    assert select_tax_rate(rates, "OR", NOW).id == 2


@pytest.mark.asyncio
async def test_resolver_reads_country_rates(uow_factory, seed_tax_rate):
    await seed_tax_rate("US", "5")
    ca = await seed_tax_rate("US", "8.5", region="CA")
    await seed_tax_rate("DE", "19")

    async with uow_factory(readonly=True) as uow:
        resolved = await TaxResolver().resolve(uow, "US", "CA", datetime.now(timezone.utc))
        missing = await TaxResolver().resolve(uow, None, None, datetime.now(timezone.utc))

    assert resolved.id == ca.id
    assert missing is None
