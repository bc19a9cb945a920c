from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from tracebridge.domain.flavors import contract_for
from tracebridge.domain.trace import Trace
from tracebridge.obs.metrics import set_gauge
from tracebridge.ports_chain import ReceiptLookup, TxReceipt
from tracebridge.ports_records import TraceRecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    apply_confirmed: list[tuple[str, dict[str, Any]]]
    clear_reverted: list[str]
    still_pending: list[str]
    missing_target: list[str]


class TraceReconciler:
    """Catches off-chain records up with transactions the chain already settled."""

    def resolve(
        self,
        *,
        records: list[Trace],
        receipts: dict[str, TxReceipt],
    ) -> ReconcileResult:
        apply_confirmed: list[tuple[str, dict[str, Any]]] = []
        clear_reverted: list[str] = []
        still_pending: list[str] = []
        missing_target: list[str] = []
        for record in records:
            if record.pending_tx_hash is None:
                continue
            receipt = receipts.get(record.pending_tx_hash)
            if receipt is None:
                still_pending.append(record.id)
                continue
            if not receipt.success:
                clear_reverted.append(record.id)
                continue
            if record.pending_status is None:
                missing_target.append(record.id)
                continue
            fields: dict[str, Any] = {
                "status": record.pending_status.value,
                "pending_tx_hash": None,
                "pending_status": None,
                "mined": True,
            }
            # an accept mined while the record lagged still carries the deployment
            fields.update(contract_for(record.flavor).deployment_fields(record, receipt))
            apply_confirmed.append((record.id, fields))
        return ReconcileResult(
            apply_confirmed=apply_confirmed,
            clear_reverted=clear_reverted,
            still_pending=still_pending,
            missing_target=missing_target,
        )


async def reconcile_pending(
    store: TraceRecordStore,
    chain: ReceiptLookup,
    *,
    reconciler: TraceReconciler | None = None,
) -> ReconcileResult:
    records = await store.list_pending()
    receipts: dict[str, TxReceipt] = {}
    for record in records:
        assert record.pending_tx_hash is not None
        receipt = await chain.get_receipt(record.pending_tx_hash)
        if receipt is not None:
            receipts[record.pending_tx_hash] = receipt

    result = (reconciler or TraceReconciler()).resolve(records=records, receipts=receipts)
    for trace_id, fields in result.apply_confirmed:
        await store.patch(trace_id, fields)
        await store.record_event(trace_id, "reconcile_confirmed", {"status": fields["status"]})
    for trace_id in result.clear_reverted:
        await store.patch(trace_id, {"pending_tx_hash": None, "pending_status": None})
        await store.record_event(trace_id, "reconcile_reverted", {})
    if result.missing_target:
        logger.warning(
            "reconcile_missing_pending_status",
            extra={"extra": {"trace_ids": result.missing_target}},
        )

    set_gauge(
        "trace_records_pending",
        len(result.still_pending) + len(result.missing_target),
        {"store": type(store).__name__},
    )
    logger.info(
        "reconcile_pending_done",
        extra={
            "extra": {
                "confirmed": len(result.apply_confirmed),
                "reverted": len(result.clear_reverted),
                "still_pending": len(result.still_pending),
            }
        },
    )
    return result
