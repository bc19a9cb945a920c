from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from tracebridge.domain.trace import Trace
from tracebridge.services.conversion_rate_cache import ConversionRateCache, LineItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundingAssessment:
    usd_total: Decimal
    min_payout_usd: Decimal

    @property
    def enough(self) -> bool:
        return self.usd_total >= self.min_payout_usd


class FundingCheck:
    """Decides whether a Trace holds enough funds to be worth withdrawing."""

    def __init__(self, rates: ConversionRateCache, *, min_payout_usd: Decimal) -> None:
        self.rates = rates
        self.min_payout_usd = min_payout_usd

    async def assess(self, trace: Trace, when: datetime | None = None) -> FundingAssessment:
        items = [
            LineItem(currency=counter.symbol, value=counter.current_balance)
            for counter in trace.donation_counters
            if counter.current_balance > 0
        ]
        if not items:
            return FundingAssessment(usd_total=Decimal("0"), min_payout_usd=self.min_payout_usd)
        conversion = await self.rates.convert_multiple_rates(when, "USD", items)
        usd_total = sum((value.usd_value for value in conversion.usd_values), Decimal("0"))
        return FundingAssessment(usd_total=usd_total, min_payout_usd=self.min_payout_usd)

    async def is_amount_enough(self, trace: Trace, when: datetime | None = None) -> bool:
        assessment = await self.assess(trace, when)
        if not assessment.enough:
            logger.info(
                "trace_funding_below_min_payout",
                extra={
                    "extra": {
                        "trace_id": trace.id,
                        "usd_total": str(assessment.usd_total),
                        "min_payout_usd": str(assessment.min_payout_usd),
                    }
                },
            )
        return assessment.enough
