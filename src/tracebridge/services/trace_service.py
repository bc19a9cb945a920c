from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from tracebridge.domain.actions import PROOF_REQUESTS, Proof, TraceAction, TransitionRequest
from tracebridge.domain.errors import (
    InvalidTransitionError,
    PatchReconciliationError,
    TraceError,
)
from tracebridge.domain.flavors import FlavorContract, contract_for
from tracebridge.domain.state_machine import TraceStateMachine
from tracebridge.domain.trace import Actor, FormType, Trace, TraceStatus
from tracebridge.logging_context import with_logging_context
from tracebridge.obs.metrics import inc_counter
from tracebridge.ports_chain import ChainCall, TxReceipt, TxRef
from tracebridge.ports_collaborators import (
    AnalyticsSink,
    ConfirmationKind,
    ConfirmationPrompt,
    NotificationLevel,
    NotificationSink,
    NullAnalyticsSink,
    NullNotificationSink,
    ProofCollector,
)
from tracebridge.ports_conversion_rates import ConversionRateError
from tracebridge.ports_records import TraceRecordStore
from tracebridge.services import permission_policy
from tracebridge.services.funding_check import FundingCheck
from tracebridge.services.transaction_pipeline import (
    ChainOperation,
    Confirmed,
    Failed,
    PipelineEvent,
    PipelineRun,
    StageHandlers,
    Submitted,
    TransactionPipeline,
    dispatch,
)

logger = logging.getLogger(__name__)

ANALYTICS_EVENTS: dict[TraceAction, str] = {
    TraceAction.ACCEPT: "Trace Accepted",
    TraceAction.REJECT: "Trace Rejected",
    TraceAction.REQUEST_MARK_COMPLETE: "Trace Marked Complete",
    TraceAction.APPROVE_COMPLETION: "Approved Trace",
    TraceAction.REJECT_COMPLETION: "Trace Rejected",
    TraceAction.DELETE: "Trace Delete",
}

PENDING_MESSAGES: dict[TraceAction, str] = {
    TraceAction.ACCEPT: "Accepting this Trace is pending...",
    TraceAction.REQUEST_MARK_COMPLETE: "Marking this Trace as complete is pending...",
    TraceAction.APPROVE_COMPLETION: "Approving this Trace's completion is pending...",
    TraceAction.REJECT_COMPLETION: "Rejecting this Trace's completion is pending...",
}

SUCCESS_MESSAGES: dict[TraceAction, str] = {
    TraceAction.PROPOSE: "The Trace has been proposed",
    TraceAction.ACCEPT: "The Trace has been accepted",
    TraceAction.REJECT: "The proposed Trace has been rejected",
    TraceAction.DELETE: "The proposed Trace has been deleted",
    TraceAction.REQUEST_MARK_COMPLETE: "The Trace has been marked as complete",
    TraceAction.APPROVE_COMPLETION: "The Trace has been approved",
    TraceAction.REJECT_COMPLETION: "The Trace's completion has been rejected",
}

_NAMED_EDIT_FORMS = frozenset(
    {FormType.BOUNTY, FormType.EXPENSE, FormType.PAYMENT, FormType.MILESTONE}
)
_DEPLOYMENT_KEYS = ("project_id", "plugin_address")


class TransitionOutcome(StrEnum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    BLOCKED = "blocked"
    DISMISSED = "dismissed"
    DECLINED = "declined"
    RECONCILIATION_PENDING = "reconciliation_pending"


@dataclass(frozen=True)
class EditTarget:
    path: str
    recipient_editable: bool = True


@dataclass(frozen=True)
class TransitionResult:
    action: TraceAction
    outcome: TransitionOutcome
    trace: Trace | None
    tx: TxRef | None = None
    error: TraceError | None = None
    events: tuple[PipelineEvent, ...] = ()
    reasons: tuple[str, ...] = ()
    edit_target: EditTarget | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is TransitionOutcome.CONFIRMED

    @property
    def status(self) -> TraceStatus | None:
        return self.trace.status if self.trace is not None else None


@dataclass
class _Guarded:
    trace: Trace
    actor: Actor
    action: TraceAction
    handlers: StageHandlers | None
    events: list[PipelineEvent] = field(default_factory=list)


class TraceService:
    """Runs user-invoked Trace transitions end to end.

    Each operation re-checks permissions and state legality, rejects a busy
    Trace, runs pre-flight checks, collects a proof when one is needed and then
    drives the transaction pipeline. The passed Trace is the in-memory copy; its
    status only moves forward once the pipeline confirms.
    """

    def __init__(
        self,
        *,
        pipeline: TransactionPipeline,
        proof_collector: ProofCollector | None = None,
        confirmation_prompt: ConfirmationPrompt | None = None,
        funding_check: FundingCheck | None = None,
        analytics: AnalyticsSink | None = None,
        notifications: NotificationSink | None = None,
        session_id: str | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.proof_collector = proof_collector
        self.confirmation_prompt = confirmation_prompt
        self.funding_check = funding_check
        self.analytics = analytics or NullAnalyticsSink()
        self.notifications = notifications or NullNotificationSink()
        self.session_id = session_id or uuid.uuid4().hex
        self._in_flight: set[str] = set()

    @property
    def store(self) -> TraceRecordStore:
        return self.pipeline.store

    def is_in_flight(self, trace_id: str) -> bool:
        return trace_id in self._in_flight

    async def propose_trace(
        self, trace: Trace, actor: Actor, *, handlers: StageHandlers | None = None
    ) -> TransitionResult:
        async def body(ctx: _Guarded) -> TransitionResult:
            operation = ChainOperation(
                action=TraceAction.PROPOSE,
                trace_id=trace.id,
                actor=actor,
                event_payload={"status": TraceStatus.PROPOSED.value},
                requires_fee_balance=False,
            )
            proposed = trace.model_copy(
                update={"status": TraceStatus.PROPOSED, "pending_tx_hash": None}
            )
            run = self.pipeline.run_offchain(
                operation, lambda: self.store.create(proposed), preflight_checked=True
            )
            return await self._follow(ctx, run, TraceStatus.PROPOSED)

        return await self._transition(
            TraceAction.PROPOSE, trace, actor, handlers, body, requires_fee_balance=False
        )

    async def accept_proposed_trace(
        self,
        trace: Trace,
        actor: Actor,
        proof: Proof | None = None,
        *,
        handlers: StageHandlers | None = None,
    ) -> TransitionResult:
        async def body(ctx: _Guarded) -> TransitionResult:
            call = await self._prepare_call(ctx)
            if isinstance(call, TransitionResult):
                return call
            collected = await self._collect_proof(ctx, proof)
            if isinstance(collected, TransitionResult):
                return collected
            return await self._run_on_chain(ctx, call, collected)

        return await self._transition(TraceAction.ACCEPT, trace, actor, handlers, body)

    async def reject_proposed_trace(
        self,
        trace: Trace,
        actor: Actor,
        proof: Proof | None = None,
        *,
        handlers: StageHandlers | None = None,
    ) -> TransitionResult:
        async def body(ctx: _Guarded) -> TransitionResult:
            collected = await self._collect_proof(ctx, proof)
            if isinstance(collected, TransitionResult):
                return collected
            fields = {"status": TraceStatus.REJECTED.value}
            operation = ChainOperation(
                action=TraceAction.REJECT,
                trace_id=trace.id,
                actor=actor,
                confirmed_patch=fields,
                event_payload={"message": collected.message},
                requires_fee_balance=False,
            )
            run = self.pipeline.run_offchain(
                operation, lambda: self.store.patch(trace.id, fields), preflight_checked=True
            )
            return await self._follow(ctx, run, TraceStatus.REJECTED)

        return await self._transition(
            TraceAction.REJECT, trace, actor, handlers, body, requires_fee_balance=False
        )

    async def delete_proposed_trace(
        self, trace: Trace, actor: Actor, *, handlers: StageHandlers | None = None
    ) -> TransitionResult:
        async def body(ctx: _Guarded) -> TransitionResult:
            if not await self._confirm(ConfirmationKind.DELETE, trace):
                return self._declined(ctx, "delete_not_confirmed")
            operation = ChainOperation(
                action=TraceAction.DELETE,
                trace_id=trace.id,
                actor=actor,
                requires_fee_balance=False,
            )
            run = self.pipeline.run_offchain(
                operation, lambda: self.store.remove(trace.id), preflight_checked=True
            )
            return await self._follow(ctx, run, None)

        return await self._transition(
            TraceAction.DELETE, trace, actor, handlers, body, requires_fee_balance=False
        )

    async def request_mark_complete(
        self,
        trace: Trace,
        actor: Actor,
        proof: Proof | None = None,
        evidence: tuple[str, ...] | list[str] | None = None,
        *,
        override_low_funding: bool = False,
        when: datetime | None = None,
        handlers: StageHandlers | None = None,
    ) -> TransitionResult:
        async def body(ctx: _Guarded) -> TransitionResult:
            call = await self._prepare_call(ctx)
            if isinstance(call, TransitionResult):
                return call
            if not trace.donation_counters or all(
                counter.donation_count == 0 for counter in trace.donation_counters
            ):
                if not await self._confirm(ConfirmationKind.NO_DONATIONS, trace):
                    return self._declined(ctx, "no_donations")
            elif self.funding_check is not None and not override_low_funding:
                if not await self._is_amount_enough(trace, when):
                    if not await self._confirm(ConfirmationKind.LOW_FUNDING, trace):
                        return self._declined(ctx, "low_funding")

            collected = await self._collect_proof(ctx, proof)
            if isinstance(collected, TransitionResult):
                return collected
            request = TransitionRequest(
                action=TraceAction.REQUEST_MARK_COMPLETE,
                trace=trace,
                actor=actor,
                proof=collected,
                evidence=tuple(evidence or ()),
            )
            return await self._run_on_chain(
                ctx, call, collected, evidence=request.all_evidence()
            )

        return await self._transition(
            TraceAction.REQUEST_MARK_COMPLETE, trace, actor, handlers, body
        )

    async def approve_trace_completion(
        self,
        trace: Trace,
        actor: Actor,
        proof: Proof | None = None,
        *,
        handlers: StageHandlers | None = None,
    ) -> TransitionResult:
        async def body(ctx: _Guarded) -> TransitionResult:
            call = await self._prepare_call(ctx)
            if isinstance(call, TransitionResult):
                return call
            collected = await self._collect_proof(ctx, proof)
            if isinstance(collected, TransitionResult):
                return collected
            return await self._run_on_chain(ctx, call, collected)

        return await self._transition(TraceAction.APPROVE_COMPLETION, trace, actor, handlers, body)

    async def reject_trace_completion(
        self,
        trace: Trace,
        actor: Actor,
        proof: Proof | None = None,
        *,
        handlers: StageHandlers | None = None,
    ) -> TransitionResult:
        async def body(ctx: _Guarded) -> TransitionResult:
            call = await self._prepare_call(ctx)
            if isinstance(call, TransitionResult):
                return call
            collected = await self._collect_proof(ctx, proof)
            if isinstance(collected, TransitionResult):
                return collected
            return await self._run_on_chain(ctx, call, collected)

        return await self._transition(TraceAction.REJECT_COMPLETION, trace, actor, handlers, body)

    async def edit_trace(self, trace: Trace, actor: Actor) -> TransitionResult:
        """Guard the edit affordance and resolve where editing happens; no transaction."""

        async def body(ctx: _Guarded) -> TransitionResult:
            return TransitionResult(
                action=TraceAction.EDIT,
                outcome=TransitionOutcome.CONFIRMED,
                trace=trace,
                edit_target=edit_target_for(trace),
            )

        return await self._transition(TraceAction.EDIT, trace, actor, None, body)

    async def refresh(self, trace: Trace) -> Trace | None:
        """Re-fetch the off-chain record; ``None`` when it was removed."""
        fresh = await self.store.get(trace.id)
        if fresh is not None and fresh.status is not trace.status:
            logger.info(
                "trace_refreshed_status_changed",
                extra={
                    "extra": {
                        "trace_id": trace.id,
                        "from": trace.status.value,
                        "to": fresh.status.value,
                    }
                },
            )
        return fresh

    async def _transition(
        self,
        action: TraceAction,
        trace: Trace,
        actor: Actor,
        handlers: StageHandlers | None,
        body: Callable[[_Guarded], Awaitable[TransitionResult]],
        *,
        requires_fee_balance: bool = True,
    ) -> TransitionResult:
        with with_logging_context(
            session_id=self.session_id,
            trace_id=trace.id,
            action=action.value,
            actor=actor.address,
        ):
            ctx = _Guarded(trace=trace, actor=actor, action=action, handlers=handlers)
            blocked = await self._guard(ctx)
            if blocked is not None:
                return blocked

            self._in_flight.add(trace.id)
            try:
                try:
                    await self.pipeline.preflight(actor, requires_fee_balance=requires_fee_balance)
                except TraceError as exc:
                    return await self._block(ctx, exc, (exc.kind.value,))
                return await body(ctx)
            finally:
                self._in_flight.discard(trace.id)

    async def _guard(self, ctx: _Guarded) -> TransitionResult | None:
        trace, action = ctx.trace, ctx.action
        if trace.is_busy or trace.id in self._in_flight:
            error = InvalidTransitionError(
                f"trace {trace.id} already has a transaction in flight", reason="busy"
            )
            return await self._block(ctx, error, ("BUSY",))

        decision = permission_policy.evaluate(action, ctx.actor, trace)
        if not decision.allowed:
            error = InvalidTransitionError(
                f"{action.value} is not permitted: {', '.join(decision.reasons)}",
                reason="not_permitted",
            )
            return await self._block(ctx, error, tuple(decision.reasons))

        try:
            TraceStateMachine.next_status(trace.status, action)
        except InvalidTransitionError as exc:
            return await self._block(ctx, exc, ("ILLEGAL_STATE",))
        return None

    async def _block(
        self, ctx: _Guarded, error: TraceError, reasons: tuple[str, ...]
    ) -> TransitionResult:
        for reason in reasons:
            inc_counter(
                "trace_transition_blocked_total",
                {"action": ctx.action.value, "reason": reason},
            )
        logger.info(
            "trace_transition_blocked",
            extra={"extra": {"error_kind": error.kind.value, "reasons": list(reasons)}},
        )
        event = Failed(error)
        ctx.events.append(event)
        await dispatch(event, ctx.handlers)
        return TransitionResult(
            action=ctx.action,
            outcome=TransitionOutcome.BLOCKED,
            trace=ctx.trace,
            error=error,
            events=tuple(ctx.events),
            reasons=reasons,
        )

    def _declined(self, ctx: _Guarded, reason: str) -> TransitionResult:
        logger.info("trace_transition_declined", extra={"extra": {"reason": reason}})
        return TransitionResult(
            action=ctx.action,
            outcome=TransitionOutcome.DECLINED,
            trace=ctx.trace,
            reasons=(reason,),
        )

    async def _is_amount_enough(self, trace: Trace, when: datetime | None) -> bool:
        assert self.funding_check is not None
        try:
            return await self.funding_check.is_amount_enough(trace, when)
        except ConversionRateError:
            # unknown funding is treated as low funding so the user still decides
            logger.warning("trace_funding_check_failed", exc_info=True)
            return False

    async def _confirm(self, kind: ConfirmationKind, trace: Trace) -> bool:
        if self.confirmation_prompt is None:
            return False
        return await self.confirmation_prompt.confirm(kind, trace)

    async def _collect_proof(
        self, ctx: _Guarded, proof: Proof | None
    ) -> Proof | TransitionResult:
        request = PROOF_REQUESTS[ctx.action]
        if proof is None and self.proof_collector is not None:
            proof = await self.proof_collector.collect(request, ctx.trace)
            if proof is None:
                logger.info("trace_proof_dismissed")
                return TransitionResult(
                    action=ctx.action, outcome=TransitionOutcome.DISMISSED, trace=ctx.trace
                )
        proof = proof or Proof()
        if request.required and proof.is_empty:
            error = InvalidTransitionError(
                f"{ctx.action.value} requires a non-empty comment", reason="proof_required"
            )
            return await self._block(ctx, error, ("PROOF_REQUIRED",))
        if not request.enable_attach_evidence:
            proof = proof.without_evidence()
        return proof

    async def _prepare_call(self, ctx: _Guarded) -> ChainCall | TransitionResult:
        """Build the contract call before any prompt so unsupported calls block early."""
        try:
            return contract_for(ctx.trace.flavor).build_call(ctx.action, ctx.trace, ctx.actor)
        except InvalidTransitionError as exc:
            return await self._block(ctx, exc, ((exc.reason or "invalid_call").upper(),))

    async def _run_on_chain(
        self,
        ctx: _Guarded,
        call: ChainCall,
        proof: Proof,
        *,
        evidence: tuple[str, ...] = (),
    ) -> TransitionResult:
        trace, action = ctx.trace, ctx.action
        target = TraceStateMachine.next_status(trace.status, action)
        contract = contract_for(trace.flavor)

        payload: dict[str, Any] = {"message": proof.message}
        if evidence:
            payload["evidence"] = list(evidence)
        operation = ChainOperation(
            action=action,
            trace_id=trace.id,
            actor=ctx.actor,
            call=call,
            optimistic_patch={"pending_status": target.value if target else None},
            confirmed_patch={
                "status": target.value if target else None,
                "pending_tx_hash": None,
                "pending_status": None,
                "mined": True,
                **contract.patch_fields(trace),
            },
            abort_patch={"pending_tx_hash": None, "pending_status": None},
            receipt_fields=lambda receipt: _deployment_fields(contract, action, trace, receipt),
            event_payload=payload,
        )
        run = self.pipeline.run(operation, preflight_checked=True)
        return await self._follow(ctx, run, target)

    async def _follow(
        self, ctx: _Guarded, run: PipelineRun, target: TraceStatus | None
    ) -> TransitionResult:
        trace, action = ctx.trace, ctx.action
        async for event in run:
            ctx.events.append(event)
            if isinstance(event, Submitted):
                self._on_submitted(trace, action, event)
            elif isinstance(event, Confirmed):
                self._on_confirmed(trace, action, event, target)
            else:
                self._on_failed(trace, action, event)
            await dispatch(event, ctx.handlers)

        terminal = await run.result()
        if isinstance(terminal, Confirmed):
            return TransitionResult(
                action=action,
                outcome=TransitionOutcome.CONFIRMED,
                trace=None if action is TraceAction.DELETE else trace,
                tx=terminal.tx,
                events=tuple(ctx.events),
            )
        assert isinstance(terminal, Failed)
        outcome = (
            TransitionOutcome.RECONCILIATION_PENDING
            if terminal.error.chain_advanced
            else TransitionOutcome.FAILED
        )
        return TransitionResult(
            action=action,
            outcome=outcome,
            trace=trace,
            tx=terminal.tx,
            error=terminal.error,
            events=tuple(ctx.events),
        )

    def _on_submitted(self, trace: Trace, action: TraceAction, event: Submitted) -> None:
        if event.tx is not None:
            trace.pending_tx_hash = event.tx.tx_hash
        analytics_event = ANALYTICS_EVENTS.get(action)
        if analytics_event is not None:
            properties: dict[str, object] = {
                "trace_id": trace.id,
                "title": trace.title,
                "campaign_id": trace.campaign.id,
                "flavor": trace.flavor.value,
            }
            if event.tx is not None:
                properties["tx_hash"] = event.tx.tx_hash
                properties["tx_url"] = event.tx.url
            self._track(analytics_event, properties)
        pending = PENDING_MESSAGES.get(action)
        if pending is not None and event.tx is not None:
            self._notify(NotificationLevel.INFO, pending, tx_url=event.tx.url)

    def _on_confirmed(
        self,
        trace: Trace,
        action: TraceAction,
        event: Confirmed,
        target: TraceStatus | None,
    ) -> None:
        if target is not None:
            trace.status = target
        if event.tx is not None:
            trace.pending_tx_hash = None
            trace.pending_status = None
            trace.mined = True
            for key in _DEPLOYMENT_KEYS:
                if event.fields.get(key) is not None:
                    setattr(trace, key, event.fields[key])
        logger.info(
            "trace_transition_confirmed",
            extra={"extra": {"status": target.value if target else None}},
        )
        self._notify(
            NotificationLevel.SUCCESS,
            SUCCESS_MESSAGES[action],
            tx_url=event.tx.url if event.tx is not None else None,
        )

    def _on_failed(self, trace: Trace, action: TraceAction, event: Failed) -> None:
        error = event.error
        tx_url = event.tx.url if event.tx is not None else None
        if isinstance(error, PatchReconciliationError):
            # chain is ahead of the record; stay busy until a refresh catches up
            self._notify(
                NotificationLevel.WARNING,
                "The transaction was mined but the Trace record is not updated yet. "
                "It will catch up on the next sync.",
                tx_url=tx_url,
            )
            return
        trace.pending_tx_hash = None
        if error.silent:
            return
        self._notify(
            NotificationLevel.ERROR,
            f"Something went wrong with {action.value.replace('_', ' ')}: {error}",
            tx_url=tx_url,
        )

    def _track(self, event: str, properties: dict[str, object]) -> None:
        try:
            self.analytics.track(event, properties)
        except Exception:  # noqa: BLE001
            logger.exception("analytics_track_failed", extra={"extra": {"event": event}})

    def _notify(
        self, level: NotificationLevel, message: str, *, tx_url: str | None = None
    ) -> None:
        try:
            self.notifications.notify(level, message, tx_url=tx_url)
        except Exception:  # noqa: BLE001
            logger.exception(
                "notification_failed", extra={"extra": {"level": level.value}}
            )


def edit_target_for(trace: Trace) -> EditTarget:
    recipient_editable = contract_for(trace.flavor).can_change_recipient(trace)
    if trace.form_type in _NAMED_EDIT_FORMS:
        path = f"/{trace.form_type.value}/{trace.id}/edit"
    else:
        path = f"/campaigns/{trace.campaign.id}/traces/{trace.id}/edit"
    return EditTarget(path=path, recipient_editable=recipient_editable)


def _deployment_fields(
    contract: FlavorContract, action: TraceAction, trace: Trace, receipt: TxReceipt
) -> dict[str, Any]:
    fields = contract.deployment_fields(trace, receipt)
    if action is TraceAction.ACCEPT and "plugin_address" not in fields:
        logger.warning(
            "trace_deployment_not_in_receipt",
            extra={"extra": {"trace_id": trace.id, "tx_hash": receipt.tx_hash}},
        )
    return fields
