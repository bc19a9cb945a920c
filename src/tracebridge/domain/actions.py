from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from tracebridge.domain.trace import Actor, Trace


class TraceAction(StrEnum):
    PROPOSE = "propose"
    ACCEPT = "accept"
    REJECT = "reject"
    DELETE = "delete"
    REQUEST_MARK_COMPLETE = "request_mark_complete"
    APPROVE_COMPLETION = "approve_completion"
    REJECT_COMPLETION = "reject_completion"
    EDIT = "edit"


@dataclass(frozen=True)
class Proof:
    message: str = ""
    evidence: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.message.strip()

    def without_evidence(self) -> Proof:
        return Proof(message=self.message)


@dataclass(frozen=True)
class ProofRequest:
    title: str
    description: str
    required: bool
    cta: str
    enable_attach_evidence: bool = False
    placeholder: str = ""


@dataclass(frozen=True)
class TransitionRequest:
    action: TraceAction
    trace: Trace
    actor: Actor
    proof: Proof | None = None
    evidence: tuple[str, ...] = ()

    @property
    def message(self) -> str:
        return self.proof.message if self.proof is not None else ""

    def all_evidence(self) -> tuple[str, ...]:
        attached = self.proof.evidence if self.proof is not None else ()
        return tuple(dict.fromkeys((*attached, *self.evidence)))


PROOF_REQUESTS: dict[TraceAction, ProofRequest] = {
    TraceAction.ACCEPT: ProofRequest(
        title="Accept proposed Trace",
        description=(
            "Your acceptance of this Trace will be recorded as a publicly visible comment "
            "and emailed to the Trace owner."
        ),
        required=False,
        cta="Submit",
    ),
    TraceAction.REJECT: ProofRequest(
        title="Reject proposed Trace",
        description="Optionally explain why you reject this proposed Trace.",
        required=False,
        cta="Reject proposal",
        placeholder="Optionally explain why you reject this proposal...",
    ),
    TraceAction.REQUEST_MARK_COMPLETE: ProofRequest(
        title="Mark Trace complete",
        description=(
            "Describe what you've done to finish the work of this Trace and attach proof "
            "if necessary."
        ),
        required=False,
        cta="Mark Complete",
        enable_attach_evidence=True,
        placeholder="Describe what you've done...",
    ),
    TraceAction.APPROVE_COMPLETION: ProofRequest(
        title="Approve Trace completion",
        description="Optionally explain why you approve the completion of this Trace.",
        required=False,
        cta="Approve completion",
    ),
    TraceAction.REJECT_COMPLETION: ProofRequest(
        title="Reject Trace completion",
        description="Explain why you rejected the completion of this Trace.",
        required=True,
        cta="Reject completion",
        placeholder="Explain why you rejected the completion of this Trace...",
    ),
}
