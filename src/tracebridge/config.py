from __future__ import annotations

from decimal import Decimal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="tracebridge_state.db", alias="STATE_DB_PATH")

    record_store_url: str | None = Field(default=None, alias="RECORD_STORE_URL")
    record_store_token: SecretStr | None = Field(default=None, alias="RECORD_STORE_TOKEN")
    conversion_api_url: str = Field(
        default="https://feathers.beta.giveth.io", alias="CONVERSION_API_URL"
    )
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    rate_fetch_max_attempts: int = Field(default=3, alias="RATE_FETCH_MAX_ATTEMPTS")
    rate_fetch_base_delay_ms: int = Field(default=250, alias="RATE_FETCH_BASE_DELAY_MS")
    rate_fetch_max_delay_ms: int = Field(default=4000, alias="RATE_FETCH_MAX_DELAY_MS")

    tx_explorer_url: str = Field(default="https://etherscan.io/tx/", alias="TX_EXPLORER_URL")
    require_fee_balance: bool = Field(default=True, alias="REQUIRE_FEE_BALANCE")
    min_payout_usd: Decimal = Field(default=Decimal("2"), alias="MIN_PAYOUT_USD")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    otel_service_name: str = Field(default="tracebridge", alias="OTEL_SERVICE_NAME")
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )

    @field_validator("state_db_path")
    def validate_state_db_path(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("STATE_DB_PATH must not be empty")
        return cleaned

    @field_validator("record_store_url", "otel_exporter_otlp_endpoint", mode="before")
    def blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("record_store_url", "conversion_api_url")
    def validate_base_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("service URLs must start with http:// or https://")
        return value.rstrip("/")

    @field_validator("http_timeout_seconds")
    def validate_http_timeout_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("HTTP_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("rate_fetch_max_attempts")
    def validate_rate_fetch_max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("RATE_FETCH_MAX_ATTEMPTS must be >= 1")
        return value

    @field_validator("rate_fetch_base_delay_ms", "rate_fetch_max_delay_ms")
    def validate_delays(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retry delays must be >= 0")
        return value

    @field_validator("tx_explorer_url")
    def validate_tx_explorer_url(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("TX_EXPLORER_URL must not be empty")
        return cleaned if cleaned.endswith("/") else f"{cleaned}/"

    @field_validator("min_payout_usd")
    def validate_min_payout_usd(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("MIN_PAYOUT_USD must be >= 0")
        return value

    @field_validator("log_level")
    def validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return normalized

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.tx_explorer_url}{tx_hash}"
