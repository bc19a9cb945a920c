from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from tracebridge.domain.actions import TraceAction
from tracebridge.domain.errors import InvalidTransitionError
from tracebridge.domain.state_machine import EDITABLE_STATUSES
from tracebridge.domain.trace import Actor, Trace, TraceFlavor, TraceStatus
from tracebridge.ports_chain import ChainCall, TxReceipt


class FlavorContract(Protocol):
    flavor: TraceFlavor

    def has_reviewer(self, trace: Trace) -> bool: ...

    def reviewer_of(self, trace: Trace) -> str | None: ...

    def allows_edit(self, trace: Trace) -> bool: ...

    def can_change_recipient(self, trace: Trace) -> bool: ...

    def build_call(self, action: TraceAction, trace: Trace, actor: Actor) -> ChainCall: ...

    def patch_fields(self, trace: Trace) -> dict[str, Any]: ...

    def deployment_fields(self, trace: Trace, receipt: TxReceipt) -> dict[str, Any]: ...


class _MilestoneContract:
    """Plugins deployed from the milestone factory on accept."""

    flavor = TraceFlavor.STANDARD
    factory_method = "newBridgedMilestone"
    deploy_event = "MilestoneDeployed"
    methods: dict[TraceAction, str] = {
        TraceAction.REQUEST_MARK_COMPLETE: "requestReview",
        TraceAction.APPROVE_COMPLETION: "approveCompleted",
        TraceAction.REJECT_COMPLETION: "rejectCompleted",
    }

    def has_reviewer(self, trace: Trace) -> bool:
        return bool(trace.reviewer_address)

    def reviewer_of(self, trace: Trace) -> str | None:
        return trace.reviewer_address

    def allows_edit(self, trace: Trace) -> bool:
        return trace.status in EDITABLE_STATUSES

    def can_change_recipient(self, trace: Trace) -> bool:
        return trace.status in {TraceStatus.PROPOSED, TraceStatus.PENDING}

    def build_call(self, action: TraceAction, trace: Trace, actor: Actor) -> ChainCall:
        if action is TraceAction.ACCEPT:
            return ChainCall(
                contract_address=None,
                method=self.factory_method,
                args=(
                    trace.title,
                    trace.campaign.id,
                    trace.reviewer_address,
                    trace.recipient_address,
                    trace.owner_address,
                    trace.token_symbol,
                    str(trace.max_amount) if trace.max_amount is not None else None,
                ),
            )
        method = self.methods.get(action)
        if method is None:
            raise InvalidTransitionError(
                f"{action.value} has no contract call for {self.flavor.value}",
                reason="no_contract_call",
            )
        if not trace.plugin_address:
            raise InvalidTransitionError(
                f"trace {trace.id} has no deployed plugin", reason="not_on_chain"
            )
        return ChainCall(contract_address=trace.plugin_address, method=method)

    def patch_fields(self, trace: Trace) -> dict[str, Any]:
        return {}

    def deployment_fields(self, trace: Trace, receipt: TxReceipt) -> dict[str, Any]:
        """Read the new project id and plugin address from a factory receipt.

        The liquid pledging contract logs ``ProjectAdded(idProject)`` and the
        factory logs ``deploy_event(idProject, milestone)``. Receipts for calls
        on an already deployed plugin yield nothing.
        """
        if trace.on_chain:
            return {}
        fields: dict[str, Any] = {}
        for log in receipt.logs:
            args = log.get("args")
            if not isinstance(args, Mapping):
                continue
            event = log.get("event")
            if event == "ProjectAdded" and args.get("idProject") is not None:
                fields["project_id"] = int(args["idProject"])
            elif event == self.deploy_event:
                if args.get("idProject") is not None:
                    fields.setdefault("project_id", int(args["idProject"]))
                if args.get("milestone"):
                    fields["plugin_address"] = str(args["milestone"])
        return fields


class StandardContract(_MilestoneContract):
    flavor = TraceFlavor.STANDARD


class BridgedContract(_MilestoneContract):
    flavor = TraceFlavor.BRIDGED


class LPContract(_MilestoneContract):
    flavor = TraceFlavor.LP
    factory_method = "newLPMilestone"
    deploy_event = "LPMilestoneDeployed"


class LPPCappedContract(_MilestoneContract):
    """Deprecated capped plugin; existing Traces can finish but none can be deployed."""

    flavor = TraceFlavor.LPP_CAPPED
    methods = {
        TraceAction.REQUEST_MARK_COMPLETE: "requestMarkAsComplete",
        TraceAction.APPROVE_COMPLETION: "approveMilestoneCompleted",
        TraceAction.REJECT_COMPLETION: "rejectCompleteRequest",
    }

    def has_reviewer(self, trace: Trace) -> bool:
        return True

    def reviewer_of(self, trace: Trace) -> str | None:
        return trace.reviewer_address or trace.campaign_reviewer_address

    def allows_edit(self, trace: Trace) -> bool:
        return super().allows_edit(trace) and not trace.on_chain

    # two-step on the contract and not supported here
    def can_change_recipient(self, trace: Trace) -> bool:
        return False

    def build_call(self, action: TraceAction, trace: Trace, actor: Actor) -> ChainCall:
        if action is TraceAction.ACCEPT:
            raise InvalidTransitionError(
                "LPP capped plugins can no longer be deployed", reason="flavor_deprecated"
            )
        return super().build_call(action, trace, actor)

    def patch_fields(self, trace: Trace) -> dict[str, Any]:
        return {"campaign_reviewer_address": trace.campaign_reviewer_address}


_CONTRACTS: dict[TraceFlavor, FlavorContract] = {
    TraceFlavor.STANDARD: StandardContract(),
    TraceFlavor.BRIDGED: BridgedContract(),
    TraceFlavor.LP: LPContract(),
    TraceFlavor.LPP_CAPPED: LPPCappedContract(),
}


def contract_for(flavor: TraceFlavor) -> FlavorContract:
    return _CONTRACTS[flavor]
