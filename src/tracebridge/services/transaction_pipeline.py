from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tracebridge.domain.actions import TraceAction
from tracebridge.domain.errors import (
    ChainRevertError,
    InsufficientBalanceError,
    PatchReconciliationError,
    TraceError,
    UnauthenticatedError,
)
from tracebridge.domain.trace import Actor
from tracebridge.logging_context import bind_tx_hash
from tracebridge.obs.metrics import inc_counter, observe_histogram
from tracebridge.observability import get_instrumentation
from tracebridge.ports_chain import ChainCall, ChainClient, TxReceipt, TxRef
from tracebridge.ports_collaborators import Authenticator, BalanceChecker, BalanceStatus
from tracebridge.ports_records import TraceRecordStore
from tracebridge.services.chain_errors import to_trace_error

logger = logging.getLogger(__name__)


class PipelineStage(StrEnum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class Submitted:
    tx: TxRef | None
    stage = PipelineStage.SUBMITTED


@dataclass(frozen=True)
class Confirmed:
    tx: TxRef | None
    # fields merged into the record on confirmation
    fields: Mapping[str, Any] = field(default_factory=dict)
    stage = PipelineStage.CONFIRMED


@dataclass(frozen=True)
class Failed:
    error: TraceError
    tx: TxRef | None = None
    stage = PipelineStage.FAILED


PipelineEvent = Submitted | Confirmed | Failed


class PipelineOrderError(RuntimeError):
    """An event was emitted out of order or after the terminal event."""


class StageTracker:
    """Allows ``submitted`` at most once, then exactly one terminal event."""

    def __init__(self) -> None:
        self._submitted = False
        self._terminal: PipelineEvent | None = None

    @property
    def terminal(self) -> PipelineEvent | None:
        return self._terminal

    def advance(self, event: PipelineEvent) -> None:
        if self._terminal is not None:
            raise PipelineOrderError(
                f"{event.stage.value} emitted after terminal {self._terminal.stage.value}"
            )
        if isinstance(event, Submitted):
            if self._submitted:
                raise PipelineOrderError("submitted emitted twice")
            self._submitted = True
            return
        if isinstance(event, Confirmed) and not self._submitted:
            raise PipelineOrderError("confirmed emitted before submitted")
        self._terminal = event


@dataclass(frozen=True)
class ChainOperation:
    """One transition to push through the pipeline.

    ``call`` is ``None`` for off-chain-only operations. Patch bodies are merged
    into the off-chain record: ``optimistic_patch`` once submitted,
    ``confirmed_patch`` once mined, ``abort_patch`` when the run fails after the
    optimistic patch landed.
    ``receipt_fields`` reads extra confirmed fields from the mined receipt.
    """

    action: TraceAction
    trace_id: str
    actor: Actor
    call: ChainCall | None = None
    optimistic_patch: dict[str, Any] | None = None
    confirmed_patch: dict[str, Any] = field(default_factory=dict)
    abort_patch: dict[str, Any] | None = None
    receipt_fields: Callable[[TxReceipt], dict[str, Any]] | None = None
    event_payload: dict[str, Any] = field(default_factory=dict)
    requires_fee_balance: bool = True


class PipelineRun:
    """Typed event stream for a single pipeline invocation.

    Iterate with ``async for`` to observe stages as they happen; ``result()``
    waits for the terminal event.
    """

    def __init__(self, action: TraceAction) -> None:
        self.action = action
        self.events: list[PipelineEvent] = []
        self._tracker = StageTracker()
        self._queue: asyncio.Queue[PipelineEvent] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._drained = False

    def _start(self, body: Callable[[PipelineRun], Awaitable[None]]) -> PipelineRun:
        async def guarded() -> None:
            try:
                await body(self)
            except Exception as exc:  # noqa: BLE001
                logger.exception("trace_pipeline_crashed")
                if self._tracker.terminal is None:
                    self.emit(Failed(to_trace_error(exc)))

        self._task = asyncio.create_task(guarded())
        return self

    def emit(self, event: PipelineEvent) -> None:
        self._tracker.advance(event)
        self.events.append(event)
        inc_counter(
            "trace_pipeline_stage_total",
            {"action": self.action.value, "stage": event.stage.value},
        )
        self._queue.put_nowait(event)

    @property
    def terminal(self) -> PipelineEvent | None:
        return self._tracker.terminal

    def __aiter__(self) -> AsyncIterator[PipelineEvent]:
        return self

    async def __anext__(self) -> PipelineEvent:
        if self._drained:
            raise StopAsyncIteration
        event = await self._queue.get()
        if not isinstance(event, Submitted):
            self._drained = True
        return event

    async def result(self) -> PipelineEvent:
        if self._task is not None:
            await self._task
        terminal = self._tracker.terminal
        if terminal is None:
            raise PipelineOrderError("pipeline finished without a terminal event")
        return terminal


@dataclass(frozen=True)
class StageHandlers:
    on_submitted: Callable[[Submitted], Any] | None = None
    on_confirmed: Callable[[Confirmed], Any] | None = None
    on_error: Callable[[Failed], Any] | None = None


async def dispatch(event: PipelineEvent, handlers: StageHandlers | None) -> None:
    """Call the handler for ``event``; a failing handler never stops the run."""
    if handlers is None:
        return
    if isinstance(event, Submitted):
        handler = handlers.on_submitted
    elif isinstance(event, Confirmed):
        handler = handlers.on_confirmed
    else:
        handler = handlers.on_error
    if handler is None:
        return
    try:
        outcome = handler(event)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:  # noqa: BLE001
        logger.exception(
            "trace_stage_handler_failed", extra={"extra": {"stage": event.stage.value}}
        )


async def drive(run: PipelineRun, handlers: StageHandlers | None) -> PipelineEvent:
    async for event in run:
        await dispatch(event, handlers)
    return await run.result()


class TransactionPipeline:
    def __init__(
        self,
        *,
        chain: ChainClient,
        store: TraceRecordStore,
        authenticator: Authenticator,
        balance_checker: BalanceChecker | None = None,
        tx_explorer_url: str = "https://etherscan.io/tx/",
        require_fee_balance: bool = True,
    ) -> None:
        self.chain = chain
        self.store = store
        self.authenticator = authenticator
        self.balance_checker = balance_checker
        self.tx_explorer_url = tx_explorer_url
        self.require_fee_balance = require_fee_balance

    def tx_ref(self, tx_hash: str) -> TxRef:
        return TxRef(tx_hash=tx_hash, url=f"{self.tx_explorer_url}{tx_hash}")

    async def preflight(self, actor: Actor, *, requires_fee_balance: bool = True) -> None:
        """Raise before any chain call when the actor cannot transact."""
        try:
            authenticated = await self.authenticator.authenticate(actor)
        except TraceError:
            raise
        except Exception as exc:
            raise to_trace_error(exc) from exc
        if not authenticated:
            raise UnauthenticatedError(f"{actor.address} is not signed in")

        if not (requires_fee_balance and self.require_fee_balance):
            return
        if self.balance_checker is None:
            return
        try:
            status = await self.balance_checker.check_balance(actor)
        except TraceError:
            raise
        except Exception as exc:
            raise to_trace_error(exc) from exc
        if status is BalanceStatus.NO_BALANCE:
            raise InsufficientBalanceError(f"{actor.address} has no balance to pay fees")

    def run(self, operation: ChainOperation, *, preflight_checked: bool = False) -> PipelineRun:
        if operation.call is None:
            raise ValueError("run() needs a chain call; use run_offchain() instead")

        async def body(run: PipelineRun) -> None:
            await self._execute(run, operation, preflight_checked=preflight_checked)

        return PipelineRun(operation.action)._start(body)

    def run_offchain(
        self,
        operation: ChainOperation,
        apply: Callable[[], Awaitable[Any]],
        *,
        preflight_checked: bool = False,
    ) -> PipelineRun:
        async def body(run: PipelineRun) -> None:
            await self._execute_offchain(
                run, operation, apply, preflight_checked=preflight_checked
            )

        return PipelineRun(operation.action)._start(body)

    async def _execute(
        self, run: PipelineRun, operation: ChainOperation, *, preflight_checked: bool
    ) -> None:
        assert operation.call is not None
        started = time.monotonic()
        attrs = {"action": operation.action.value, "trace_id": operation.trace_id}
        with get_instrumentation().span("trace_pipeline_run", attrs=attrs):
            if not preflight_checked:
                try:
                    await self.preflight(
                        operation.actor, requires_fee_balance=operation.requires_fee_balance
                    )
                except TraceError as exc:
                    self._fail(run, exc, started)
                    return

            try:
                submission = await self.chain.send_transaction(
                    operation.call, sender=operation.actor.address
                )
            except Exception as exc:  # noqa: BLE001
                self._fail(run, to_trace_error(exc), started)
                return

            tx = self.tx_ref(submission.tx_hash)
            bind_tx_hash(tx.tx_hash)
            logger.info(
                "trace_tx_submitted",
                extra={"extra": {"trace_id": operation.trace_id, "tx_hash": tx.tx_hash}},
            )
            run.emit(Submitted(tx))
            optimistic_applied = await self._apply_optimistic(operation, tx)

            try:
                receipt = await self.chain.wait_for_receipt(tx.tx_hash)
            except Exception as exc:  # noqa: BLE001
                await self._abort(operation, optimistic_applied)
                self._fail(run, to_trace_error(exc, tx=tx), started)
                return

            if not receipt.success:
                await self._abort(operation, optimistic_applied)
                self._fail(
                    run,
                    ChainRevertError(f"transaction {tx.tx_hash} reverted", tx=tx),
                    started,
                )
                return

            confirmed = dict(operation.confirmed_patch)
            try:
                if operation.receipt_fields is not None:
                    confirmed.update(operation.receipt_fields(receipt))
                await self.store.patch(operation.trace_id, confirmed)
            except Exception as exc:  # noqa: BLE001
                error = PatchReconciliationError(
                    f"transaction {tx.tx_hash} mined but the off-chain record was not updated",
                    reason="patch-error",
                    tx=tx,
                )
                error.__cause__ = exc
                self._fail(run, error, started)
                return

            await self._record_event(operation, tx)
            self._finish(run, Confirmed(tx, fields=confirmed), started, outcome="confirmed")

    async def _execute_offchain(
        self,
        run: PipelineRun,
        operation: ChainOperation,
        apply: Callable[[], Awaitable[Any]],
        *,
        preflight_checked: bool,
    ) -> None:
        started = time.monotonic()
        attrs = {"action": operation.action.value, "trace_id": operation.trace_id}
        with get_instrumentation().span("trace_pipeline_offchain", attrs=attrs):
            if not preflight_checked:
                try:
                    await self.preflight(
                        operation.actor, requires_fee_balance=operation.requires_fee_balance
                    )
                except TraceError as exc:
                    self._fail(run, exc, started)
                    return

            run.emit(Submitted(None))
            try:
                await apply()
            except Exception as exc:  # noqa: BLE001
                self._fail(run, to_trace_error(exc), started)
                return
            await self._record_event(operation, None)
            self._finish(run, Confirmed(None), started, outcome="confirmed")

    async def _apply_optimistic(self, operation: ChainOperation, tx: TxRef) -> bool:
        if operation.optimistic_patch is None:
            return False
        try:
            await self.store.patch(
                operation.trace_id, {**operation.optimistic_patch, "pending_tx_hash": tx.tx_hash}
            )
        except Exception:  # noqa: BLE001
            logger.warning(
                "trace_optimistic_patch_failed",
                extra={"extra": {"trace_id": operation.trace_id, "tx_hash": tx.tx_hash}},
                exc_info=True,
            )
            return False
        return True

    async def _abort(self, operation: ChainOperation, optimistic_applied: bool) -> None:
        if not optimistic_applied or operation.abort_patch is None:
            return
        try:
            await self.store.patch(operation.trace_id, operation.abort_patch)
        except Exception:  # noqa: BLE001
            logger.warning(
                "trace_abort_patch_failed",
                extra={"extra": {"trace_id": operation.trace_id}},
                exc_info=True,
            )

    async def _record_event(self, operation: ChainOperation, tx: TxRef | None) -> None:
        payload = dict(operation.event_payload)
        payload["actor"] = operation.actor.address
        if tx is not None:
            payload["tx_hash"] = tx.tx_hash
        try:
            await self.store.record_event(operation.trace_id, operation.action.value, payload)
        except Exception:  # noqa: BLE001
            logger.warning(
                "trace_event_record_failed",
                extra={"extra": {"trace_id": operation.trace_id}},
                exc_info=True,
            )

    def _fail(self, run: PipelineRun, error: TraceError, started: float) -> None:
        inc_counter(
            "trace_pipeline_errors_total",
            {"action": run.action.value, "kind": error.kind.value},
        )
        log = logger.info if error.silent else logger.warning
        log(
            "trace_pipeline_failed",
            extra={
                "extra": {
                    "error_kind": error.kind.value,
                    "reason": error.reason,
                    "error_message": str(error),
                    "chain_advanced": error.chain_advanced,
                }
            },
        )
        self._finish(run, Failed(error, error.tx), started, outcome="failed")

    def _finish(
        self, run: PipelineRun, event: PipelineEvent, started: float, *, outcome: str
    ) -> None:
        observe_histogram(
            "trace_pipeline_duration_ms",
            (time.monotonic() - started) * 1000,
            {"action": run.action.value, "outcome": outcome},
        )
        run.emit(event)
