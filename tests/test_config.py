from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from tracebridge.adapters.records_http import HttpTraceRecordStore
from tracebridge.config import Settings
from tracebridge.persistence.record_store import SqliteTraceRecordStore
from tracebridge.services.service_factory import (
    build_rate_cache,
    build_record_store,
    build_trace_service,
)


def test_defaults() -> None:
    settings = Settings()

    assert settings.record_store_url is None
    assert settings.conversion_api_url == "https://feathers.beta.giveth.io"
    assert settings.min_payout_usd == Decimal("2")
    assert settings.require_fee_balance is True
    assert settings.log_level == "INFO"
    assert settings.state_db_path.endswith("tracebridge_state.sqlite")


def test_loads_values_from_env_file(monkeypatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env.test"
    env_file.write_text(
        "\n".join(
            [
                "RECORD_STORE_URL=https://records.example/api/",
                "RECORD_STORE_TOKEN=s3cr3t-token-value",
                "MIN_PAYOUT_USD=5.5",
                "LOG_LEVEL=debug",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    settings = Settings(_env_file=str(env_file))

    assert settings.record_store_url == "https://records.example/api"
    assert settings.record_store_token is not None
    assert settings.record_store_token.get_secret_value() == "s3cr3t-token-value"
    assert settings.min_payout_usd == Decimal("5.5")
    assert settings.log_level == "DEBUG"


def test_blank_optional_urls_become_none(monkeypatch) -> None:
    monkeypatch.setenv("RECORD_STORE_URL", "   ")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")

    settings = Settings()

    assert settings.record_store_url is None
    assert settings.otel_exporter_otlp_endpoint is None


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("CONVERSION_API_URL", "ftp://rates.example"),
        ("HTTP_TIMEOUT_SECONDS", "0"),
        ("RATE_FETCH_MAX_ATTEMPTS", "0"),
        ("RATE_FETCH_BASE_DELAY_MS", "-1"),
        ("MIN_PAYOUT_USD", "-2"),
        ("LOG_LEVEL", "LOUD"),
        ("STATE_DB_PATH", "  "),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, field: str, value: str) -> None:
    monkeypatch.setenv(field, value)

    with pytest.raises(ValidationError):
        Settings()


def test_tx_url_appends_separator(monkeypatch) -> None:
    monkeypatch.setenv("TX_EXPLORER_URL", "https://explorer.example/tx")

    assert Settings().tx_url("0xabc") == "https://explorer.example/tx/0xabc"


def test_record_store_backend_follows_url(monkeypatch) -> None:
    assert isinstance(build_record_store(Settings()), SqliteTraceRecordStore)

    monkeypatch.setenv("RECORD_STORE_URL", "https://records.example")
    assert isinstance(build_record_store(Settings()), HttpTraceRecordStore)


def test_rate_cache_uses_retry_settings(monkeypatch) -> None:
    monkeypatch.setenv("RATE_FETCH_MAX_ATTEMPTS", "5")

    cache = build_rate_cache(Settings())

    assert cache.fetcher.policy.max_attempts == 5


def test_trace_service_is_wired_from_settings(harness, monkeypatch) -> None:
    monkeypatch.setenv("MIN_PAYOUT_USD", "7")
    monkeypatch.setenv("REQUIRE_FEE_BALANCE", "false")

    service = build_trace_service(
        Settings(),
        chain=harness.chain,
        authenticator=harness.auth,
        store=harness.store,
    )

    assert service.store is harness.store
    assert service.funding_check is not None
    assert service.funding_check.min_payout_usd == Decimal("7")
    assert service.pipeline.require_fee_balance is False
