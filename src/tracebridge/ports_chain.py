from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

# EIP-1193 "user rejected request"
USER_REJECTED_CODE = 4001


@dataclass(frozen=True)
class ChainCall:
    contract_address: str | None
    method: str
    args: tuple[object, ...] = ()
    value: int = 0


@dataclass(frozen=True)
class TxRef:
    tx_hash: str
    url: str | None = None


@dataclass(frozen=True)
class TxSubmission:
    tx_hash: str


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    success: bool
    block_number: int | None = None
    logs: tuple[dict[str, object], ...] = field(default_factory=tuple)


class ChainClientError(RuntimeError):
    """Raised by chain clients; ``code`` follows JSON-RPC / EIP-1193 provider errors."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class SigningDeclinedError(ChainClientError):
    def __init__(self, message: str = "user declined to sign") -> None:
        super().__init__(message, code=USER_REJECTED_CODE)


class ChainClient(Protocol):
    async def send_transaction(self, call: ChainCall, *, sender: str) -> TxSubmission:
        """Resolve once the transaction is accepted into the pending pool."""
        ...

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        """Suspend until the transaction is mined; relies on the client's own timeouts."""
        ...


class ReceiptLookup(Protocol):
    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        """Return ``None`` while the transaction is not mined yet."""
        ...
