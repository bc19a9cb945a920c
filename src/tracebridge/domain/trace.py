from __future__ import annotations

from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TraceStatus(StrEnum):
    PROPOSED = "Proposed"
    REJECTED = "Rejected"
    PENDING = "Pending"
    NEEDS_REVIEW = "NeedsReview"
    COMPLETED = "Completed"
    CANCELED = "Canceled"
    PAYMENTS_ONGOING = "PaymentsOngoing"
    PAID = "Paid"


DOWNSTREAM_STATUSES = frozenset(
    {TraceStatus.CANCELED, TraceStatus.PAYMENTS_ONGOING, TraceStatus.PAID}
)


class TraceFlavor(StrEnum):
    STANDARD = "Trace"
    BRIDGED = "BridgedTrace"
    LPP_CAPPED = "LPPCappedTrace"
    LP = "LPTrace"


class FormType(StrEnum):
    BOUNTY = "bounty"
    EXPENSE = "expense"
    PAYMENT = "payment"
    MILESTONE = "milestone"
    CUSTOM = "custom"


class CampaignStatus(StrEnum):
    ACTIVE = "Active"
    ARCHIVED = "Archived"
    CANCELED = "Canceled"


def normalize_address(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    return cleaned.lower()


def same_address(left: str | None, right: str | None) -> bool:
    a = normalize_address(left)
    return a is not None and a == normalize_address(right)


class Actor(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    address: str = Field(min_length=1)
    name: str | None = None


class Campaign(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    title: str = ""
    status: CampaignStatus = CampaignStatus.ACTIVE
    owner_address: str
    coowner_address: str | None = None
    delegate_addresses: tuple[str, ...] = ()

    @property
    def is_archived(self) -> bool:
        return self.status is CampaignStatus.ARCHIVED


class DonationCounter(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    symbol: str
    total_donated: Decimal = Decimal("0")
    current_balance: Decimal = Decimal("0")
    donation_count: int = Field(default=0, ge=0)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()


class Trace(BaseModel):
    """A funded unit of work under a Campaign.

    One record type for every flavor; ``flavor`` selects the contract wrapper and
    ``campaign_reviewer_address`` is only meaningful for LPP-capped Traces.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    id: str
    title: str = ""
    status: TraceStatus = TraceStatus.PROPOSED
    flavor: TraceFlavor = TraceFlavor.STANDARD
    form_type: FormType = FormType.MILESTONE
    owner_address: str
    recipient_address: str | None = None
    reviewer_address: str | None = None
    campaign: Campaign
    token_symbol: str = "ETH"
    max_amount: Decimal | None = None
    donation_counters: tuple[DonationCounter, ...] = ()
    pending_tx_hash: str | None = None
    pending_status: TraceStatus | None = None
    project_id: int | None = None
    plugin_address: str | None = None
    campaign_reviewer_address: str | None = None
    mined: bool = False

    @property
    def on_chain(self) -> bool:
        return self.project_id is not None and self.project_id > 0

    @property
    def is_busy(self) -> bool:
        return self.pending_tx_hash is not None

    def identity(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_address": self.owner_address,
            "recipient_address": self.recipient_address,
            "reviewer_address": self.reviewer_address,
            "campaign_id": self.campaign.id,
            "flavor": self.flavor.value,
        }

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Trace:
        return cls.model_validate(record)
