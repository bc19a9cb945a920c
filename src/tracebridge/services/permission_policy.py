from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from tracebridge.domain.actions import TraceAction
from tracebridge.domain.flavors import contract_for
from tracebridge.domain.state_machine import TraceStateMachine
from tracebridge.domain.trace import Actor, CampaignStatus, Trace, TraceStatus, same_address


class PolicyBlockReason(StrEnum):
    NO_ACTOR = "NO_ACTOR"
    ILLEGAL_STATE = "ILLEGAL_STATE"
    NOT_OWNER = "NOT_OWNER"
    NOT_OWNER_OR_RECIPIENT = "NOT_OWNER_OR_RECIPIENT"
    NOT_CAMPAIGN_OWNER = "NOT_CAMPAIGN_OWNER"
    NOT_REVIEWER = "NOT_REVIEWER"
    CAMPAIGN_ARCHIVED = "CAMPAIGN_ARCHIVED"
    CAMPAIGN_INACTIVE = "CAMPAIGN_INACTIVE"
    ON_CHAIN = "ON_CHAIN"
    PLUGIN_FORBIDS_EDIT = "PLUGIN_FORBIDS_EDIT"


@dataclass(frozen=True)
class RoleFlags:
    is_owner: bool = False
    is_recipient: bool = False
    is_reviewer: bool = False
    is_campaign_owner: bool = False
    is_campaign_coowner: bool = False
    is_delegate: bool = False

    @property
    def manages_campaign(self) -> bool:
        return self.is_campaign_owner or self.is_campaign_coowner


@dataclass(frozen=True)
class PolicyDecision:
    action: TraceAction
    allowed: bool
    reasons: list[str]


def derive_role_flags(actor: Actor | None, trace: Trace) -> RoleFlags:
    if actor is None:
        return RoleFlags()
    address = actor.address
    campaign = trace.campaign
    return RoleFlags(
        is_owner=same_address(address, trace.owner_address),
        is_recipient=same_address(address, trace.recipient_address),
        is_reviewer=same_address(address, contract_for(trace.flavor).reviewer_of(trace)),
        is_campaign_owner=same_address(address, campaign.owner_address),
        is_campaign_coowner=same_address(address, campaign.coowner_address),
        is_delegate=any(same_address(address, d) for d in campaign.delegate_addresses),
    )


def _reasons(action: TraceAction, actor: Actor | None, trace: Trace) -> list[str]:
    if actor is None:
        return [PolicyBlockReason.NO_ACTOR.value]

    flags = derive_role_flags(actor, trace)
    reasons: list[str] = []
    if not TraceStateMachine.is_legal(trace.status, action):
        reasons.append(PolicyBlockReason.ILLEGAL_STATE.value)

    if action is TraceAction.PROPOSE:
        if not flags.is_owner:
            reasons.append(PolicyBlockReason.NOT_OWNER.value)
        if trace.campaign.status is not CampaignStatus.ACTIVE:
            reasons.append(PolicyBlockReason.CAMPAIGN_INACTIVE.value)
    elif action in {TraceAction.ACCEPT, TraceAction.REJECT}:
        if not flags.manages_campaign:
            reasons.append(PolicyBlockReason.NOT_CAMPAIGN_OWNER.value)
        if action is TraceAction.ACCEPT and trace.campaign.is_archived:
            reasons.append(PolicyBlockReason.CAMPAIGN_ARCHIVED.value)
    elif action is TraceAction.DELETE:
        if not flags.is_owner:
            reasons.append(PolicyBlockReason.NOT_OWNER.value)
        if trace.on_chain:
            reasons.append(PolicyBlockReason.ON_CHAIN.value)
    elif action is TraceAction.REQUEST_MARK_COMPLETE:
        if not (flags.is_owner or flags.is_recipient):
            reasons.append(PolicyBlockReason.NOT_OWNER_OR_RECIPIENT.value)
    elif action in {TraceAction.APPROVE_COMPLETION, TraceAction.REJECT_COMPLETION}:
        if contract_for(trace.flavor).has_reviewer(trace):
            if not flags.is_reviewer:
                reasons.append(PolicyBlockReason.NOT_REVIEWER.value)
        elif not flags.manages_campaign:
            reasons.append(PolicyBlockReason.NOT_CAMPAIGN_OWNER.value)
    elif action is TraceAction.EDIT:
        if not flags.is_owner:
            reasons.append(PolicyBlockReason.NOT_OWNER.value)
        if not contract_for(trace.flavor).allows_edit(trace):
            reasons.append(PolicyBlockReason.PLUGIN_FORBIDS_EDIT.value)
    return reasons


def evaluate(action: TraceAction, actor: Actor | None, trace: Trace) -> PolicyDecision:
    reasons = _reasons(action, actor, trace)
    return PolicyDecision(action=action, allowed=not reasons, reasons=reasons)


def can_propose(actor: Actor | None, trace: Trace) -> bool:
    return evaluate(TraceAction.PROPOSE, actor, trace).allowed


def can_accept_or_reject(actor: Actor | None, trace: Trace) -> bool:
    """Whether the accept/reject affordance applies; accept is further hidden when archived."""
    if actor is None or trace.status is not TraceStatus.PROPOSED:
        return False
    return derive_role_flags(actor, trace).manages_campaign


def can_accept(actor: Actor | None, trace: Trace) -> bool:
    return evaluate(TraceAction.ACCEPT, actor, trace).allowed


def can_request_complete(actor: Actor | None, trace: Trace) -> bool:
    return evaluate(TraceAction.REQUEST_MARK_COMPLETE, actor, trace).allowed


def can_approve_or_reject_completion(actor: Actor | None, trace: Trace) -> bool:
    return evaluate(TraceAction.APPROVE_COMPLETION, actor, trace).allowed


def can_edit(actor: Actor | None, trace: Trace) -> bool:
    return evaluate(TraceAction.EDIT, actor, trace).allowed


def can_delete(actor: Actor | None, trace: Trace) -> bool:
    return evaluate(TraceAction.DELETE, actor, trace).allowed


def can_change_recipient(actor: Actor | None, trace: Trace) -> bool:
    return can_edit(actor, trace) and contract_for(trace.flavor).can_change_recipient(trace)
