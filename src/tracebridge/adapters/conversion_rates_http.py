from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from tracebridge.adapters.retry import BackoffPolicy, async_retry, http_retry_classifier
from tracebridge.observability import get_instrumentation
from tracebridge.ports_conversion_rates import ConversionRateError

logger = logging.getLogger(__name__)


class HttpRateFetcher:
    """Reads daily conversion rates from the ``/conversionRates`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 10.0,
        policy: BackoffPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.policy = policy or BackoffPolicy()
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_rates(self, symbol: str, day_ms: int, to: str | None) -> dict[str, Decimal]:
        params: dict[str, Any] = {"date": day_ms, "symbol": symbol}
        if to is not None:
            params["to"] = to

        async def _call() -> dict[str, Any]:
            with get_instrumentation().span(
                "conversion_rates_fetch", attrs={"symbol": symbol, "to": to}
            ):
                response = await self._client.get("/conversionRates", params=params)
            response.raise_for_status()
            return response.json()

        retry_kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        try:
            payload = await async_retry(
                _call,
                max_attempts=self.policy.max_attempts,
                classify=http_retry_classifier(self.policy),
                **retry_kwargs,
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "conversion_rates_fetch_failed",
                extra={"extra": {"symbol": symbol, "to": to, "error_type": type(exc).__name__}},
            )
            raise ConversionRateError(f"unable to fetch conversion rates for {symbol}") from exc

        return parse_rates_payload(payload)


def parse_rates_payload(payload: object) -> dict[str, Decimal]:
    if not isinstance(payload, dict) or not isinstance(payload.get("rates"), dict):
        raise ConversionRateError("conversion rate response has no rates mapping")
    rates: dict[str, Decimal] = {}
    for currency, value in payload["rates"].items():
        try:
            rates[str(currency).upper()] = Decimal(str(value))
        except InvalidOperation as exc:
            raise ConversionRateError(f"invalid rate for {currency}: {value!r}") from exc
    return rates
