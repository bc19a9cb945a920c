from __future__ import annotations

from decimal import Decimal
from typing import Protocol


class ConversionRateError(RuntimeError):
    """Raised when a conversion rate cannot be fetched or applied."""


class RateFetcher(Protocol):
    async def fetch_rates(self, symbol: str, day_ms: int, to: str | None) -> dict[str, Decimal]:
        """Return ``{destination: rate}`` for one unit of ``symbol`` on that UTC day."""
        ...
