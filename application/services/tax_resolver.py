"""Tax rate selection for a billing jurisdiction."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from core.logging_config import get_logger
from domain.commerce.entity import TaxRate
from domain.common.unit_of_work import AbstractUnitOfWork


logger = get_logger(__name__)


def select_tax_rate(
    rates: Iterable[TaxRate],
    region: Optional[str],
    as_of: datetime,
) -> Optional[TaxRate]:
    """Pick the applicable rate.

    Precedence: effective region match, then effective country-wide rate
    (no region), then the country's effective default-flagged rate. Within a
    tier the most recent ``effective_from`` wins.
    """
    region = region.upper() if region else None
    effective = sorted(
        (r for r in rates if r.is_effective(as_of)),
        key=lambda r: (r.effective_from, r.id or 0),
        reverse=True,
    )
    if region:
        for rate in effective:
            if rate.region_code == region:
                return rate
    for rate in effective:
        if rate.region_code is None:
            return rate
    for rate in effective:
        if rate.is_default:
            return rate
    return None


class TaxResolver:

    async def resolve(
        self,
        uow: AbstractUnitOfWork,
        country: Optional[str],
        region: Optional[str],
        as_of: datetime,
    ) -> Optional[TaxRate]:
        if not country:
            return None
        rates = await uow.tax_rates.list_by_country(country)
        rate = select_tax_rate(rates, region, as_of)
        logger.debug(
            "tax_rate_resolved",
            country=country,
            region=region,
            tax_rate_id=rate.id if rate else None,
            rate=str(rate.rate_percentage) if rate else None,
        )
        return rate
