"""Stage context aggregates consumed by the stage guards.

Contexts are read-only summaries of upstream readiness. They are derived from
the flow store on demand and never written back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .allocation import released_cell_pool
from .domain import (
    BatchState,
    FlowType,
    InboundState,
    ModuleState,
    PurchaseOrderState,
    SkuState,
)


class Stage(str, Enum):
    S1 = "S1"
    S2 = "S2"
    S3 = "S3"
    S4 = "S4"
    S5 = "S5"


STAGE_FLOWS = {
    Stage.S1: FlowType.SKU,
    Stage.S2: FlowType.PURCHASE_ORDER,
    Stage.S3: FlowType.INBOUND,
    Stage.S4: FlowType.BATCH,
    Stage.S5: FlowType.MODULE,
}


class Dependency(str, Enum):
    OK = "OK"
    BLOCKED = "BLOCKED"


def _dependency(ready: bool) -> Dependency:
    return Dependency.OK if ready else Dependency.BLOCKED


@dataclass(frozen=True, slots=True)
class S1Context:
    """SKU blueprint stage."""

    total_sku_count: int = 0
    draft_sku_count: int = 0
    review_sku_count: int = 0
    active_sku_count: int = 0


@dataclass(frozen=True, slots=True)
class S2Context:
    """Commercial procurement stage."""

    blueprint_dependency: Dependency = Dependency.OK
    open_po_count: int = 0
    pending_approval_count: int = 0
    approved_po_count: int = 0


@dataclass(frozen=True, slots=True)
class S3Context:
    """Inbound receipt, serialization and QC stage."""

    procurement_dependency: Dependency = Dependency.OK
    inbound_shipment_count: int = 0
    items_awaiting_serialization_count: int = 0
    lots_awaiting_inspection_count: int = 0
    lots_in_disposition_count: int = 0
    serialized_items_count: int = 0
    last_receipt_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class S4Context:
    """Batch planning stage."""

    inbound_dependency: Dependency = Dependency.OK
    released_cell_count: int = 0
    unallocated_cell_count: int = 0
    draft_batch_count: int = 0
    active_batch_count: int = 0


@dataclass(frozen=True, slots=True)
class S5Context:
    """Module assembly stage."""

    batch_dependency: Dependency = Dependency.OK
    active_batch_count: int = 0
    modules_in_assembly_count: int = 0
    modules_pending_qa_count: int = 0


def build_s1_context(store) -> S1Context:
    skus = store.list(FlowType.SKU)
    return S1Context(
        total_sku_count=len(skus),
        draft_sku_count=sum(1 for sku in skus if sku.state == SkuState.DRAFT),
        review_sku_count=sum(1 for sku in skus if sku.state == SkuState.REVIEW),
        active_sku_count=sum(1 for sku in skus if sku.state == SkuState.ACTIVE),
    )


def build_s2_context(store) -> S2Context:
    orders = store.list(FlowType.PURCHASE_ORDER)
    active_skus = [sku for sku in store.list(FlowType.SKU) if sku.state == SkuState.ACTIVE]
    return S2Context(
        blueprint_dependency=_dependency(bool(active_skus)),
        open_po_count=sum(1 for po in orders if po.state == PurchaseOrderState.DRAFT),
        pending_approval_count=sum(
            1 for po in orders if po.state == PurchaseOrderState.SUBMITTED
        ),
        approved_po_count=sum(1 for po in orders if po.state == PurchaseOrderState.APPROVED),
    )


def build_s3_context(store) -> S3Context:
    receipts = store.list(FlowType.INBOUND)
    procured = any(
        po.state in (PurchaseOrderState.APPROVED, PurchaseOrderState.CLOSED)
        for po in store.list(FlowType.PURCHASE_ORDER)
    )
    return S3Context(
        procurement_dependency=_dependency(procured),
        inbound_shipment_count=len(receipts),
        items_awaiting_serialization_count=sum(
            receipt.draft.quantity_received
            for receipt in receipts
            if receipt.state == InboundState.RECEIVED
        ),
        lots_awaiting_inspection_count=sum(
            1
            for receipt in receipts
            if receipt.state in (InboundState.SERIALIZED, InboundState.QC_PENDING)
        ),
        lots_in_disposition_count=sum(
            1 for receipt in receipts if receipt.state == InboundState.DISPOSITION
        ),
        serialized_items_count=sum(len(receipt.serialized_items) for receipt in receipts),
        last_receipt_at=max((receipt.created_at for receipt in receipts), default=None),
    )


def build_s4_context(store) -> S4Context:
    batches = store.list(FlowType.BATCH)
    released = released_cell_pool(store.list(FlowType.INBOUND))
    allocated = {serial for batch in batches for serial in batch.draft.allocated_inventory_ids}
    return S4Context(
        inbound_dependency=_dependency(bool(released)),
        released_cell_count=len(released),
        unallocated_cell_count=sum(1 for serial in released if serial not in allocated),
        draft_batch_count=sum(1 for batch in batches if batch.state == BatchState.DRAFT),
        active_batch_count=sum(1 for batch in batches if batch.state == BatchState.IN_PROGRESS),
    )


def build_s5_context(store) -> S5Context:
    batches = store.list(FlowType.BATCH)
    modules = store.list(FlowType.MODULE)
    active = sum(1 for batch in batches if batch.state == BatchState.IN_PROGRESS)
    return S5Context(
        batch_dependency=_dependency(active > 0),
        active_batch_count=active,
        modules_in_assembly_count=sum(
            1 for module in modules if module.state == ModuleState.IN_ASSEMBLY
        ),
        modules_pending_qa_count=sum(
            1 for module in modules if module.state == ModuleState.PENDING_QA
        ),
    )


_BUILDERS = {
    Stage.S1: build_s1_context,
    Stage.S2: build_s2_context,
    Stage.S3: build_s3_context,
    Stage.S4: build_s4_context,
    Stage.S5: build_s5_context,
}


def build_stage_context(stage: Stage, store):
    return _BUILDERS[stage](store)


__all__ = [
    "Dependency",
    "S1Context",
    "S2Context",
    "S3Context",
    "S4Context",
    "S5Context",
    "STAGE_FLOWS",
    "Stage",
    "build_stage_context",
]
