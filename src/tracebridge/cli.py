from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from tracebridge.config import Settings
from tracebridge.logging_context import with_logging_context
from tracebridge.logging_utils import setup_logging
from tracebridge.observability import configure_instrumentation
from tracebridge.ports_conversion_rates import ConversionRateError
from tracebridge.ports_records import RecordStoreError, TraceRecordStore
from tracebridge.security.redaction import redact_data
from tracebridge.services.conversion_rate_cache import ConversionRateCache
from tracebridge.services.service_factory import build_rate_cache, build_record_store

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tracebridge",
        epilog=(
            "Settings come from the environment or a .env file: STATE_DB_PATH, "
            "RECORD_STORE_URL, CONVERSION_API_URL, LOG_LEVEL."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("show-config", help="Print effective settings with secrets redacted")

    show_parser = subparsers.add_parser("trace-show", help="Print one off-chain Trace record")
    show_parser.add_argument("--trace-id", required=True, help="Stable Trace id")

    subparsers.add_parser(
        "trace-pending", help="List Trace records that still carry a pending transaction"
    )

    rates_parser = subparsers.add_parser("rates", help="Look up cached daily conversion rates")
    rates_parser.add_argument("--symbol", required=True, help="Base symbol, e.g. ETH")
    rates_parser.add_argument(
        "--date",
        default=None,
        help="ISO date or datetime (UTC); defaults to today",
    )
    rates_parser.add_argument("--to", default=None, help="Destination symbol, e.g. USD")

    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        service_name=settings.otel_service_name,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
    )

    with with_logging_context(action=args.command):
        if args.command == "show-config":
            return run_show_config(settings)
        if args.command == "trace-show":
            return asyncio.run(run_trace_show(settings, trace_id=args.trace_id))
        if args.command == "trace-pending":
            return asyncio.run(run_trace_pending(settings))
        if args.command == "rates":
            return asyncio.run(
                run_rates(settings, symbol=args.symbol, date=args.date, to=args.to)
            )
    parser.error(f"unknown command {args.command}")
    return 2


def run_show_config(settings: Settings) -> int:
    payload = settings.model_dump(mode="json", by_alias=True)
    print(json.dumps(redact_data(payload), indent=2, sort_keys=True))
    return 0


async def run_trace_show(
    settings: Settings, *, trace_id: str, store: TraceRecordStore | None = None
) -> int:
    store = store or build_record_store(settings)
    try:
        trace = await store.get(trace_id)
    except RecordStoreError as exc:
        logger.error("trace_show_failed", extra={"extra": {"trace_id": trace_id}})
        print(f"record store error: {exc}", file=sys.stderr)
        return 1
    finally:
        await _close(store)
    if trace is None:
        print(f"trace {trace_id} not found", file=sys.stderr)
        return 1
    record = trace.to_record()
    if trace.pending_tx_hash:
        record["pending_tx_url"] = settings.tx_url(trace.pending_tx_hash)
    print(json.dumps(record, indent=2, sort_keys=True))
    return 0


async def run_trace_pending(
    settings: Settings, *, store: TraceRecordStore | None = None
) -> int:
    store = store or build_record_store(settings)
    try:
        pending = await store.list_pending()
    except RecordStoreError as exc:
        print(f"record store error: {exc}", file=sys.stderr)
        return 1
    finally:
        await _close(store)
    for trace in pending:
        status = trace.pending_status.value if trace.pending_status else "?"
        print(
            f"{trace.id} {trace.status.value} -> {status} "
            f"{settings.tx_url(trace.pending_tx_hash or '')}"
        )
    print(f"pending_count={len(pending)}")
    return 0


async def run_rates(
    settings: Settings,
    *,
    symbol: str,
    date: str | None,
    to: str | None,
    cache: ConversionRateCache | None = None,
) -> int:
    try:
        when = _parse_when(date)
    except ValueError as exc:
        print(f"invalid --date: {exc}", file=sys.stderr)
        return 2

    cache = cache or build_rate_cache(settings)
    try:
        entry = await cache.get_conversion_rates(when, symbol, to)
    except ConversionRateError as exc:
        print(f"conversion rate lookup failed: {exc}", file=sys.stderr)
        return 1
    finally:
        await _close(cache.fetcher)

    rates: dict[str, Any] = {currency: str(rate) for currency, rate in sorted(entry.rates.items())}
    print(
        json.dumps(
            {"symbol": entry.symbol, "timestamp": entry.timestamp.isoformat(), "rates": rates},
            indent=2,
        )
    )
    return 0


def _parse_when(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.strip())
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


async def _close(resource: object) -> None:
    closer = getattr(resource, "aclose", None)
    if closer is not None:
        await closer()


if __name__ == "__main__":
    raise SystemExit(main())
