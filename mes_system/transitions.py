"""Pure state-graph functions for every flow type.

Each flow exposes ``can_<action>(state)`` predicates that are total over the
flow's state enum and ``next_state_on_<action>()`` producers. None of these
functions read the clock, raise, or mutate their arguments; handlers apply
timestamps and decide what an illegal edge means for the caller.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Mapping, Optional, Tuple

from .domain import (
    BatchState,
    Disposition,
    InboundState,
    ItemStatus,
    ModuleState,
    PurchaseOrderState,
    QcDecision,
    SerializedItem,
    SkuState,
)

# ----------------------------------------------------------------------
# SKU blueprint (S1)
# ----------------------------------------------------------------------
def can_submit_sku(current: SkuState) -> bool:
    return current == SkuState.DRAFT


def can_approve_sku(current: SkuState) -> bool:
    return current == SkuState.REVIEW


def can_reject_sku(current: SkuState) -> bool:
    return current == SkuState.REVIEW


def can_activate_sku(current: SkuState) -> bool:
    return current == SkuState.APPROVED


def can_retire_sku(current: SkuState) -> bool:
    return current == SkuState.ACTIVE


def can_edit_sku(current: SkuState) -> bool:
    return current == SkuState.DRAFT


def next_state_on_sku_submit() -> SkuState:
    return SkuState.REVIEW


def next_state_on_sku_approve() -> SkuState:
    return SkuState.APPROVED


def next_state_on_sku_reject() -> SkuState:
    return SkuState.DRAFT


def next_state_on_sku_activate() -> SkuState:
    return SkuState.ACTIVE


def next_state_on_sku_retire() -> SkuState:
    return SkuState.OBSOLETE


# ----------------------------------------------------------------------
# Purchase orders (S2)
# ----------------------------------------------------------------------
def can_submit_po(current: PurchaseOrderState) -> bool:
    return current == PurchaseOrderState.DRAFT


def can_approve_po(current: PurchaseOrderState) -> bool:
    return current == PurchaseOrderState.SUBMITTED


def can_reject_po(current: PurchaseOrderState) -> bool:
    return current == PurchaseOrderState.SUBMITTED


def can_amend_po(current: PurchaseOrderState) -> bool:
    return current == PurchaseOrderState.APPROVED


def can_issue_po(current: PurchaseOrderState) -> bool:
    return current == PurchaseOrderState.APPROVED


def can_close_po(current: PurchaseOrderState) -> bool:
    return current == PurchaseOrderState.APPROVED


def next_state_on_po_submit() -> PurchaseOrderState:
    return PurchaseOrderState.SUBMITTED


def next_state_on_po_approve() -> PurchaseOrderState:
    return PurchaseOrderState.APPROVED


def next_state_on_po_reject() -> PurchaseOrderState:
    return PurchaseOrderState.REJECTED


def next_state_on_po_amend() -> PurchaseOrderState:
    return PurchaseOrderState.DRAFT


def next_state_on_po_issue() -> PurchaseOrderState:
    return PurchaseOrderState.APPROVED


def next_state_on_po_close() -> PurchaseOrderState:
    return PurchaseOrderState.CLOSED


# ----------------------------------------------------------------------
# Inbound receipt (S3)
# ----------------------------------------------------------------------
def can_serialize(current: InboundState) -> bool:
    return current == InboundState.RECEIVED


def can_submit_for_qc(current: InboundState) -> bool:
    return current == InboundState.SERIALIZED


def can_complete_qc(current: InboundState) -> bool:
    return current == InboundState.QC_PENDING


def can_release(current: InboundState) -> bool:
    return current == InboundState.DISPOSITION


def can_block(current: InboundState) -> bool:
    return current == InboundState.DISPOSITION


def can_scrap(current: InboundState) -> bool:
    return current in (InboundState.DISPOSITION, InboundState.BLOCKED)


def next_state_on_serialize() -> InboundState:
    return InboundState.SERIALIZED


def next_state_on_submit_qc() -> InboundState:
    return InboundState.QC_PENDING


def next_state_on_qc_decision(decision: QcDecision) -> InboundState:
    # Every decision lands in Disposition; finalization is an explicit step.
    return InboundState.DISPOSITION


def next_state_on_block() -> InboundState:
    return InboundState.BLOCKED


def next_state_on_release(items: Iterable[SerializedItem]) -> InboundState:
    return resolve_disposition_state(items)


def next_state_on_scrap(items: Iterable[SerializedItem], current: InboundState) -> InboundState:
    resolved = resolve_disposition_state(items)
    if resolved == InboundState.DISPOSITION and current == InboundState.BLOCKED:
        return InboundState.BLOCKED
    return resolved


def classify_qc_results(
    items: Iterable[SerializedItem],
    decision: QcDecision,
    *,
    item_results: Optional[Mapping[str, ItemStatus]] = None,
    pass_quantity: Optional[int] = None,
) -> List[SerializedItem]:
    """Assign a QC status to every item.

    Per-item results take precedence; items missing from them fall back to the
    lot-wide decision. ``pass_quantity`` splits the lot by position (first N
    pass) and is only consulted when no per-item results are supplied.
    """

    lot_status = ItemStatus.PASSED if decision == QcDecision.PASS else ItemStatus.BLOCKED
    classified: List[SerializedItem] = []
    for index, item in enumerate(items):
        if item_results:
            status = item_results.get(item.serial_number, lot_status)
        elif pass_quantity is not None:
            status = ItemStatus.PASSED if index < pass_quantity else ItemStatus.BLOCKED
        else:
            status = lot_status
        classified.append(replace(item, status=status))
    return classified


def release_passed_items(items: Iterable[SerializedItem]) -> Tuple[List[SerializedItem], int]:
    """Release every PASSED item that has no disposition yet."""

    released = 0
    result: List[SerializedItem] = []
    for item in items:
        if item.status == ItemStatus.PASSED and item.disposition is None:
            item = replace(item, disposition=Disposition.RELEASED)
            released += 1
        result.append(item)
    return result, released


def scrap_rejected_items(items: Iterable[SerializedItem]) -> Tuple[List[SerializedItem], int]:
    """Scrap every BLOCKED or FAILED item that has no disposition yet."""

    scrapped = 0
    result: List[SerializedItem] = []
    for item in items:
        if (
            item.status in (ItemStatus.BLOCKED, ItemStatus.FAILED)
            and item.disposition is None
        ):
            item = replace(item, disposition=Disposition.SCRAPPED)
            scrapped += 1
        result.append(item)
    return result, scrapped


def hold_passed_items(items: Iterable[SerializedItem]) -> Tuple[List[SerializedItem], int]:
    """Put undispositioned PASSED items on hold ahead of a lot-level block."""

    held = 0
    result: List[SerializedItem] = []
    for item in items:
        if item.status == ItemStatus.PASSED and item.disposition is None:
            item = replace(item, status=ItemStatus.BLOCKED)
            held += 1
        result.append(item)
    return result, held


def resolve_disposition_state(items: Iterable[SerializedItem]) -> InboundState:
    """Aggregate state of a receipt from its items' dispositions."""

    dispositions = [item.disposition for item in items]
    if not dispositions or any(value is None for value in dispositions):
        return InboundState.DISPOSITION
    if all(value == Disposition.RELEASED for value in dispositions):
        return InboundState.RELEASED
    if all(value == Disposition.SCRAPPED for value in dispositions):
        return InboundState.SCRAPPED
    return InboundState.COMPLETED


# ----------------------------------------------------------------------
# Batch planning (S4)
# ----------------------------------------------------------------------
def can_edit_batch(current: BatchState) -> bool:
    return current == BatchState.DRAFT


def can_approve_batch(current: BatchState) -> bool:
    return current == BatchState.DRAFT


def can_start_batch(current: BatchState) -> bool:
    return current == BatchState.APPROVED


def can_complete_batch(current: BatchState) -> bool:
    return current == BatchState.IN_PROGRESS


def can_assemble_from_batch(current: BatchState) -> bool:
    return current == BatchState.IN_PROGRESS


def next_state_on_batch_approve() -> BatchState:
    return BatchState.APPROVED


def next_state_on_batch_start() -> BatchState:
    return BatchState.IN_PROGRESS


def next_state_on_batch_complete() -> BatchState:
    return BatchState.COMPLETED


# ----------------------------------------------------------------------
# Module assembly (S5)
# ----------------------------------------------------------------------
def can_add_cells(current: ModuleState) -> bool:
    return current == ModuleState.IN_ASSEMBLY


def can_serialize_module(current: ModuleState) -> bool:
    return current == ModuleState.IN_ASSEMBLY


def can_complete_module(current: ModuleState) -> bool:
    return current == ModuleState.IN_ASSEMBLY


def next_state_on_module_complete() -> ModuleState:
    return ModuleState.PENDING_QA


__all__ = [name for name in dir() if name.startswith(("can_", "next_state_on_"))] + [
    "classify_qc_results",
    "hold_passed_items",
    "release_passed_items",
    "resolve_disposition_state",
    "scrap_rejected_items",
]
