from __future__ import annotations

import logging

from tracebridge.adapters.conversion_rates_http import HttpRateFetcher
from tracebridge.adapters.records_http import HttpTraceRecordStore
from tracebridge.adapters.retry import BackoffPolicy
from tracebridge.config import Settings
from tracebridge.persistence.record_store import SqliteTraceRecordStore
from tracebridge.ports_chain import ChainClient
from tracebridge.ports_collaborators import (
    AnalyticsSink,
    Authenticator,
    BalanceChecker,
    ConfirmationPrompt,
    NotificationSink,
    ProofCollector,
)
from tracebridge.ports_records import TraceRecordStore
from tracebridge.services.conversion_rate_cache import ConversionRateCache
from tracebridge.services.funding_check import FundingCheck
from tracebridge.services.trace_service import TraceService
from tracebridge.services.transaction_pipeline import TransactionPipeline

logger = logging.getLogger(__name__)


def build_record_store(settings: Settings) -> TraceRecordStore:
    if settings.record_store_url is not None:
        secret = settings.record_store_token
        token = secret.get_secret_value() if secret is not None else None
        logger.info("record_store_selected", extra={"extra": {"backend": "http"}})
        return HttpTraceRecordStore(
            base_url=settings.record_store_url,
            token=token,
            timeout=settings.http_timeout_seconds,
        )
    logger.info(
        "record_store_selected",
        extra={"extra": {"backend": "sqlite", "db_path": settings.state_db_path}},
    )
    return SqliteTraceRecordStore(settings.state_db_path)


def build_rate_cache(settings: Settings) -> ConversionRateCache:
    fetcher = HttpRateFetcher(
        base_url=settings.conversion_api_url,
        timeout=settings.http_timeout_seconds,
        policy=BackoffPolicy(
            max_attempts=settings.rate_fetch_max_attempts,
            base_delay_ms=settings.rate_fetch_base_delay_ms,
            max_delay_ms=settings.rate_fetch_max_delay_ms,
        ),
    )
    return ConversionRateCache(fetcher)


def build_trace_service(
    settings: Settings,
    *,
    chain: ChainClient,
    authenticator: Authenticator,
    balance_checker: BalanceChecker | None = None,
    proof_collector: ProofCollector | None = None,
    confirmation_prompt: ConfirmationPrompt | None = None,
    analytics: AnalyticsSink | None = None,
    notifications: NotificationSink | None = None,
    store: TraceRecordStore | None = None,
    rates: ConversionRateCache | None = None,
) -> TraceService:
    pipeline = TransactionPipeline(
        chain=chain,
        store=store or build_record_store(settings),
        authenticator=authenticator,
        balance_checker=balance_checker,
        tx_explorer_url=settings.tx_explorer_url,
        require_fee_balance=settings.require_fee_balance,
    )
    funding = FundingCheck(
        rates or build_rate_cache(settings), min_payout_usd=settings.min_payout_usd
    )
    return TraceService(
        pipeline=pipeline,
        proof_collector=proof_collector,
        confirmation_prompt=confirmation_prompt,
        funding_check=funding,
        analytics=analytics,
        notifications=notifications,
    )
