from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal, InvalidOperation

from tracebridge.obs.metrics import inc_counter
from tracebridge.ports_conversion_rates import ConversionRateError, RateFetcher

logger = logging.getLogger(__name__)

USD = "USD"

RateKey = tuple[str, int]


def start_of_day_utc(value: datetime | date | int | float | None = None) -> datetime:
    """Floor ``value`` to 00:00 UTC of its calendar day.

    Naive datetimes are taken as UTC; ints and floats are epoch milliseconds.
    """
    if value is None:
        moment = datetime.now(UTC)
    elif isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        moment = moment.astimezone(UTC)
    elif isinstance(value, date):
        moment = datetime.combine(value, time.min, tzinfo=UTC)
    else:
        moment = datetime.fromtimestamp(float(value) / 1000, tz=UTC)
    return datetime.combine(moment.date(), time.min, tzinfo=UTC)


def day_bucket_ms(value: datetime | date | int | float | None = None) -> int:
    return int(start_of_day_utc(value).timestamp() * 1000)


@dataclass(frozen=True)
class RateEntry:
    symbol: str
    day_ms: int
    rates: dict[str, Decimal]

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.day_ms / 1000, tz=UTC)


class ConversionRateStore:
    """Per (symbol, day) rate mappings; merged on write, never evicted."""

    def __init__(self) -> None:
        self._entries: dict[RateKey, dict[str, Decimal]] = {}

    def get(self, symbol: str, day_ms: int, to: str | None = None) -> RateEntry | None:
        rates = self._entries.get((symbol, day_ms))
        if rates is None or to is None or to not in rates:
            return None
        return RateEntry(symbol=symbol, day_ms=day_ms, rates=dict(rates))

    def add(self, symbol: str, day_ms: int, rates: dict[str, Decimal]) -> RateEntry:
        merged = {**self._entries.get((symbol, day_ms), {}), **rates}
        self._entries[(symbol, day_ms)] = merged
        return RateEntry(symbol=symbol, day_ms=day_ms, rates=dict(merged))

    def snapshot(self) -> dict[RateKey, dict[str, Decimal]]:
        return {key: dict(rates) for key, rates in self._entries.items()}

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class LineItem:
    currency: str
    value: Decimal


@dataclass(frozen=True)
class UsdValue:
    currency: str
    usd_value: Decimal


@dataclass(frozen=True)
class BatchConversion:
    total: Decimal
    rates: dict[str, Decimal]
    usd_values: tuple[UsdValue, ...]


class ConversionRateCache:
    def __init__(self, fetcher: RateFetcher, store: ConversionRateStore | None = None) -> None:
        self.fetcher = fetcher
        self.store = store or ConversionRateStore()
        self._locks: dict[RateKey, asyncio.Lock] = {}

    def _lock_for(self, key: RateKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_conversion_rates(
        self,
        when: datetime | date | int | float | None,
        symbol: str,
        to: str | None = None,
    ) -> RateEntry:
        symbol = symbol.strip().upper()
        to = to.strip().upper() if to else None
        day_ms = day_bucket_ms(when)

        cached = self.store.get(symbol, day_ms, to)
        if cached is not None:
            inc_counter("trace_conversion_cache_total", {"symbol": symbol, "result": "hit"})
            return cached

        async with self._lock_for((symbol, day_ms)):
            # a concurrent miss may have filled it while we waited
            cached = self.store.get(symbol, day_ms, to)
            if cached is not None:
                inc_counter("trace_conversion_cache_total", {"symbol": symbol, "result": "hit"})
                return cached

            inc_counter("trace_conversion_cache_total", {"symbol": symbol, "result": "miss"})
            try:
                fetched = await self.fetcher.fetch_rates(symbol, day_ms, to)
            except ConversionRateError:
                inc_counter("trace_conversion_cache_total", {"symbol": symbol, "result": "error"})
                raise
            except Exception as exc:
                inc_counter("trace_conversion_cache_total", {"symbol": symbol, "result": "error"})
                raise ConversionRateError(
                    f"unable to fetch conversion rates for {symbol}"
                ) from exc

            entry = self.store.add(symbol, day_ms, _normalize_rates(fetched))
            logger.debug(
                "conversion_rates_merged",
                extra={
                    "extra": {
                        "symbol": symbol,
                        "day_ms": day_ms,
                        "to": to,
                        "destinations": sorted(entry.rates),
                    }
                },
            )
            return entry

    async def convert_multiple_rates(
        self,
        when: datetime | date | int | float | None,
        symbol: str,
        items: list[LineItem],
    ) -> BatchConversion:
        """Total ``items`` in ``symbol`` and value each one in USD on the same day."""
        symbol = symbol.strip().upper()
        rates: dict[str, Decimal] = {}
        for item in items:
            entry = await self.get_conversion_rates(when, symbol, item.currency)
            rates.update(entry.rates)

        if symbol == USD:
            usd_rates = rates
        else:
            usd_rates = {}
            for item in items:
                entry = await self.get_conversion_rates(when, USD, item.currency)
                usd_rates.update(entry.rates)

        usd_values: list[UsdValue] = []
        for item in items:
            currency = item.currency.strip().upper()
            usd_rate = usd_rates.get(currency)
            if not usd_rate:
                raise ConversionRateError(f"no USD rate for {currency}")
            usd_values.append(UsdValue(currency=currency, usd_value=item.value / usd_rate))

        total = Decimal("0")
        for item in items:
            rate = rates.get(item.currency.strip().upper()) or Decimal("1")
            total += item.value / rate
        return BatchConversion(total=total, rates=rates, usd_values=tuple(usd_values))


def _normalize_rates(raw: dict[str, object]) -> dict[str, Decimal]:
    normalized: dict[str, Decimal] = {}
    for currency, value in raw.items():
        try:
            normalized[str(currency).strip().upper()] = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ConversionRateError(f"invalid rate for {currency}: {value!r}") from exc
    return normalized
