from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tracebridge.ports_chain import TxRef


class TraceErrorKind(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_TRANSITION = "invalid_transition"
    USER_DECLINED_SIGNING = "user_declined_signing"
    CHAIN_REVERT = "chain_revert"
    NETWORK_ERROR = "network_error"
    PATCH_RECONCILIATION_ERROR = "patch_reconciliation_error"


class TraceError(RuntimeError):
    """Base class for every failure surfaced by a Trace transition."""

    kind: TraceErrorKind = TraceErrorKind.NETWORK_ERROR
    recoverable: bool = True
    silent: bool = False
    chain_advanced: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        reason: str | None = None,
        tx: TxRef | None = None,
    ) -> None:
        super().__init__(message or self.kind.value)
        self.reason = reason
        self.tx = tx

    def with_tx(self, tx: TxRef | None) -> TraceError:
        if self.tx is None:
            self.tx = tx
        return self


class UnauthenticatedError(TraceError):
    kind = TraceErrorKind.UNAUTHENTICATED


class InsufficientBalanceError(TraceError):
    kind = TraceErrorKind.INSUFFICIENT_BALANCE


class InvalidTransitionError(TraceError):
    """Guard or state mismatch; nothing was submitted."""

    kind = TraceErrorKind.INVALID_TRANSITION
    recoverable = False


class UserDeclinedSigningError(TraceError):
    kind = TraceErrorKind.USER_DECLINED_SIGNING
    silent = True


class ChainRevertError(TraceError):
    kind = TraceErrorKind.CHAIN_REVERT
    recoverable = False


class ChainNetworkError(TraceError):
    kind = TraceErrorKind.NETWORK_ERROR


class PatchReconciliationError(TraceError):
    """The transaction was mined but the off-chain mirror could not be updated.

    On-chain state is ahead of the off-chain record until the next sync.
    """

    kind = TraceErrorKind.PATCH_RECONCILIATION_ERROR
    chain_advanced = True


ERROR_BY_KIND: dict[TraceErrorKind, type[TraceError]] = {
    TraceErrorKind.UNAUTHENTICATED: UnauthenticatedError,
    TraceErrorKind.INSUFFICIENT_BALANCE: InsufficientBalanceError,
    TraceErrorKind.INVALID_TRANSITION: InvalidTransitionError,
    TraceErrorKind.USER_DECLINED_SIGNING: UserDeclinedSigningError,
    TraceErrorKind.CHAIN_REVERT: ChainRevertError,
    TraceErrorKind.NETWORK_ERROR: ChainNetworkError,
    TraceErrorKind.PATCH_RECONCILIATION_ERROR: PatchReconciliationError,
}


def error_for_kind(
    kind: TraceErrorKind,
    message: str = "",
    *,
    reason: str | None = None,
    tx: TxRef | None = None,
) -> TraceError:
    return ERROR_BY_KIND[kind](message, reason=reason, tx=tx)
