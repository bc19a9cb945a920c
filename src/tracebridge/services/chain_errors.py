from __future__ import annotations

from tracebridge.domain.errors import TraceError, TraceErrorKind, error_for_kind
from tracebridge.ports_chain import USER_REJECTED_CODE, ChainClientError, SigningDeclinedError, TxRef

# EIP-1474 code used by nodes when gas estimation hits a revert
EXECUTION_REVERTED_CODE = 3


def classify_chain_error(exc: BaseException) -> TraceErrorKind:
    if isinstance(exc, TraceError):
        return exc.kind
    if isinstance(exc, SigningDeclinedError):
        return TraceErrorKind.USER_DECLINED_SIGNING
    code = exc.code if isinstance(exc, ChainClientError) else getattr(exc, "code", None)
    if code == USER_REJECTED_CODE:
        return TraceErrorKind.USER_DECLINED_SIGNING
    if code == EXECUTION_REVERTED_CODE or "execution reverted" in str(exc).lower():
        return TraceErrorKind.CHAIN_REVERT
    return TraceErrorKind.NETWORK_ERROR


def to_trace_error(exc: BaseException, *, tx: TxRef | None = None) -> TraceError:
    if isinstance(exc, TraceError):
        return exc.with_tx(tx)
    error = error_for_kind(classify_chain_error(exc), str(exc) or type(exc).__name__, tx=tx)
    error.__cause__ = exc
    return error
