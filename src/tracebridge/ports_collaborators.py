from __future__ import annotations

from enum import StrEnum
from typing import Protocol

from tracebridge.domain.actions import Proof, ProofRequest
from tracebridge.domain.trace import Actor, Trace


class BalanceStatus(StrEnum):
    SUFFICIENT = "sufficient"
    NO_BALANCE = "no_balance"


class ConfirmationKind(StrEnum):
    NO_DONATIONS = "no_donations"
    LOW_FUNDING = "low_funding"
    DELETE = "delete"


class NotificationLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Authenticator(Protocol):
    async def authenticate(self, actor: Actor) -> bool: ...


class BalanceChecker(Protocol):
    async def check_balance(self, actor: Actor) -> BalanceStatus: ...


class ProofCollector(Protocol):
    async def collect(self, request: ProofRequest, trace: Trace) -> Proof | None:
        """Return ``None`` when the modal is dismissed."""
        ...


class ConfirmationPrompt(Protocol):
    async def confirm(self, kind: ConfirmationKind, trace: Trace) -> bool: ...


class AnalyticsSink(Protocol):
    def track(self, event: str, properties: dict[str, object]) -> None: ...


class NotificationSink(Protocol):
    def notify(
        self, level: NotificationLevel, message: str, *, tx_url: str | None = None
    ) -> None: ...


class NullAnalyticsSink:
    def track(self, event: str, properties: dict[str, object]) -> None:
        return None


class NullNotificationSink:
    def notify(
        self, level: NotificationLevel, message: str, *, tx_url: str | None = None
    ) -> None:
        return None
