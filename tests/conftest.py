from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from tracebridge.config import Settings
from tracebridge.domain.actions import Proof, ProofRequest
from tracebridge.domain.trace import (
    Actor,
    Campaign,
    CampaignStatus,
    DonationCounter,
    Trace,
    TraceFlavor,
    TraceStatus,
)
from tracebridge.ports_chain import ChainCall, SigningDeclinedError, TxReceipt, TxSubmission
from tracebridge.ports_collaborators import BalanceStatus, ConfirmationKind, NotificationLevel
from tracebridge.ports_records import RecordNotFoundError, RecordStoreError
from tracebridge.services.trace_service import TraceService
from tracebridge.services.transaction_pipeline import TransactionPipeline

OWNER = "0xowner"
RECIPIENT = "0xrecipient"
REVIEWER = "0xreviewer"
CAMPAIGN_OWNER = "0xcampaignowner"
CAMPAIGN_COOWNER = "0xcoowner"
DELEGATE = "0xdelegate"
STRANGER = "0xstranger"


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "tracebridge_state.sqlite"))


def build_trace(**overrides: Any) -> Trace:
    campaign_overrides = overrides.pop("campaign", {})
    campaign = Campaign(
        id="campaign-1",
        title="Campaign",
        status=campaign_overrides.pop("status", CampaignStatus.ACTIVE),
        owner_address=CAMPAIGN_OWNER,
        coowner_address=CAMPAIGN_COOWNER,
        delegate_addresses=(DELEGATE,),
        **campaign_overrides,
    )
    base: dict[str, Any] = {
        "id": "trace-1",
        "title": "Build the bridge",
        "status": TraceStatus.PROPOSED,
        "flavor": TraceFlavor.STANDARD,
        "owner_address": OWNER,
        "recipient_address": RECIPIENT,
        "reviewer_address": REVIEWER,
        "campaign": campaign,
        "max_amount": Decimal("10"),
        "donation_counters": (
            DonationCounter(
                symbol="ETH",
                total_donated=Decimal("3"),
                current_balance=Decimal("3"),
                donation_count=2,
            ),
        ),
    }
    base.update(overrides)
    return Trace(**base)


@pytest.fixture
def make_trace():
    return build_trace


@pytest.fixture
def actors() -> dict[str, Actor]:
    return {
        "owner": Actor(address=OWNER, name="owner"),
        "recipient": Actor(address=RECIPIENT, name="recipient"),
        "reviewer": Actor(address=REVIEWER, name="reviewer"),
        "campaign_owner": Actor(address=CAMPAIGN_OWNER, name="campaign owner"),
        "coowner": Actor(address=CAMPAIGN_COOWNER, name="co-owner"),
        "delegate": Actor(address=DELEGATE, name="delegate"),
        "stranger": Actor(address=STRANGER, name="stranger"),
    }


class FakeChain:
    def __init__(self) -> None:
        self.sent: list[tuple[ChainCall, str]] = []
        self.send_error: Exception | None = None
        self.receipt_error: Exception | None = None
        self.receipt_success = True
        self.receipts: dict[str, TxReceipt] = {}
        self.calls_by_hash: dict[str, ChainCall] = {}
        self.next_project_id = 42

    async def send_transaction(self, call: ChainCall, *, sender: str) -> TxSubmission:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((call, sender))
        tx_hash = f"0xtx{len(self.sent)}"
        self.calls_by_hash[tx_hash] = call
        return TxSubmission(tx_hash=tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        if self.receipt_error is not None:
            raise self.receipt_error
        receipt = TxReceipt(
            tx_hash=tx_hash,
            success=self.receipt_success,
            block_number=1,
            logs=self._logs_for(tx_hash),
        )
        self.receipts[tx_hash] = receipt
        return receipt

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        return self.receipts.get(tx_hash)

    def decline_signing(self) -> None:
        self.send_error = SigningDeclinedError()

    def _logs_for(self, tx_hash: str) -> tuple[dict[str, object], ...]:
        call = self.calls_by_hash.get(tx_hash)
        if call is None or call.contract_address is not None or not self.receipt_success:
            return ()
        project_id = self.next_project_id
        self.next_project_id += 1
        return _deployment_logs(project_id, f"0xplugin{project_id}")


def _deployment_logs(
    project_id: int, plugin_address: str, *, event: str = "MilestoneDeployed"
) -> tuple[dict[str, object], ...]:
    return (
        {"event": "ProjectAdded", "args": {"idProject": project_id}},
        {"event": event, "args": {"idProject": project_id, "milestone": plugin_address}},
    )


class InMemoryRecordStore:
    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.events: list[tuple[str, str, dict[str, Any]]] = []
        self.patches: list[tuple[str, dict[str, Any]]] = []
        self.fail_patch_when: Any = None

    def seed(self, trace: Trace) -> None:
        self.records[trace.id] = trace.to_record()

    async def get(self, trace_id: str) -> Trace | None:
        record = self.records.get(trace_id)
        return Trace.from_record(record) if record is not None else None

    async def create(self, trace: Trace) -> Trace:
        if trace.id in self.records:
            raise RecordStoreError(f"trace {trace.id} already exists")
        self.records[trace.id] = trace.to_record()
        return trace

    async def patch(self, trace_id: str, fields: dict[str, Any]) -> Trace:
        if self.fail_patch_when is not None and self.fail_patch_when(fields):
            raise RecordStoreError("record store unavailable")
        if trace_id not in self.records:
            raise RecordNotFoundError(trace_id)
        self.patches.append((trace_id, dict(fields)))
        merged = {**self.records[trace_id], **fields}
        self.records[trace_id] = Trace.from_record(merged).to_record()
        return Trace.from_record(self.records[trace_id])

    async def remove(self, trace_id: str) -> None:
        if self.records.pop(trace_id, None) is None:
            raise RecordNotFoundError(trace_id)

    async def list_pending(self) -> list[Trace]:
        return [
            Trace.from_record(record)
            for record in self.records.values()
            if record.get("pending_tx_hash")
        ]

    async def record_event(self, trace_id: str, action: str, payload: dict[str, Any]) -> None:
        self.events.append((trace_id, action, dict(payload)))


class FakeAuthenticator:
    def __init__(self, allowed: bool = True) -> None:
        self.allowed = allowed
        self.calls = 0

    async def authenticate(self, actor: Actor) -> bool:
        self.calls += 1
        return self.allowed


class FakeBalanceChecker:
    def __init__(self, status: BalanceStatus = BalanceStatus.SUFFICIENT) -> None:
        self.status = status

    async def check_balance(self, actor: Actor) -> BalanceStatus:
        return self.status


class ScriptedProofCollector:
    def __init__(self, proof: Proof | None = None, *, dismiss: bool = False) -> None:
        self.proof = proof if proof is not None else Proof(message="looks good")
        self.dismiss = dismiss
        self.requests: list[ProofRequest] = []

    async def collect(self, request: ProofRequest, trace: Trace) -> Proof | None:
        self.requests.append(request)
        return None if self.dismiss else self.proof


class ScriptedPrompt:
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.kinds: list[ConfirmationKind] = []

    async def confirm(self, kind: ConfirmationKind, trace: Trace) -> bool:
        self.kinds.append(kind)
        return self.answer


class RecordingAnalytics:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, object]]] = []

    def track(self, event: str, properties: dict[str, object]) -> None:
        self.events.append((event, properties))


class RecordingNotifications:
    def __init__(self) -> None:
        self.messages: list[tuple[NotificationLevel, str, str | None]] = []

    def notify(
        self, level: NotificationLevel, message: str, *, tx_url: str | None = None
    ) -> None:
        self.messages.append((level, message, tx_url))

    def levels(self) -> list[NotificationLevel]:
        return [level for level, _, _ in self.messages]


class Harness:
    def __init__(self) -> None:
        self.chain = FakeChain()
        self.store = InMemoryRecordStore()
        self.auth = FakeAuthenticator()
        self.balance = FakeBalanceChecker()
        self.analytics = RecordingAnalytics()
        self.notifications = RecordingNotifications()
        self.pipeline = TransactionPipeline(
            chain=self.chain,
            store=self.store,
            authenticator=self.auth,
            balance_checker=self.balance,
            tx_explorer_url="https://explorer.test/tx/",
        )

    def proofs(self, proof: Proof | None = None, *, dismiss: bool = False) -> ScriptedProofCollector:
        return ScriptedProofCollector(proof, dismiss=dismiss)

    def prompt(self, answer: bool) -> ScriptedPrompt:
        return ScriptedPrompt(answer)

    def service(self, **kwargs: Any) -> TraceService:
        kwargs.setdefault("analytics", self.analytics)
        kwargs.setdefault("notifications", self.notifications)
        return TraceService(pipeline=self.pipeline, **kwargs)


@pytest.fixture
def harness() -> Harness:
    return Harness()
