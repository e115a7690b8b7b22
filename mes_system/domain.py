"""Core data structures for the battery-pack manufacturing flow engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowType(str, Enum):
    """Discriminator tag for every workflow the engine runs."""

    SKU = "sku"
    PURCHASE_ORDER = "purchase_order"
    INBOUND = "inbound"
    BATCH = "batch"
    MODULE = "module"


class UserRole(str, Enum):
    """Acting roles supplied by the identity layer."""

    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    MANAGEMENT = "MANAGEMENT"
    PROCUREMENT = "PROCUREMENT"
    STORES = "STORES"
    QA_ENGINEER = "QA_ENGINEER"
    SUPERVISOR = "SUPERVISOR"
    OPERATOR = "OPERATOR"
    PLANNER = "PLANNER"
    ENGINEERING = "ENGINEERING"
    COMPLIANCE = "COMPLIANCE"


class SkuState(str, Enum):
    """Lifecycle of a SKU blueprint (S1)."""

    DRAFT = "Draft"
    REVIEW = "Review"
    APPROVED = "Approved"
    ACTIVE = "Active"
    OBSOLETE = "Obsolete"


class PurchaseOrderState(str, Enum):
    """Lifecycle of a purchase order (S2)."""

    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CLOSED = "Closed"


class InboundState(str, Enum):
    """Lifecycle of a material receipt (S3)."""

    RECEIVED = "Received"
    SERIALIZED = "Serialized"
    QC_PENDING = "QCPending"
    DISPOSITION = "Disposition"
    RELEASED = "Released"
    BLOCKED = "Blocked"
    SCRAPPED = "Scrapped"
    COMPLETED = "Completed"


class BatchState(str, Enum):
    """Lifecycle of a production batch (S4)."""

    DRAFT = "Draft"
    APPROVED = "Approved"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


class ModuleState(str, Enum):
    """Lifecycle of a module assembly session (S5)."""

    IN_ASSEMBLY = "InAssembly"
    PENDING_QA = "PendingQA"
    COMPLETED = "Completed"


class ItemStatus(str, Enum):
    """QC status of a single serialized item."""

    PENDING_QC = "PENDING_QC"
    PASSED = "PASSED"
    BLOCKED = "BLOCKED"
    FAILED = "FAILED"


class Disposition(str, Enum):
    """Terminal decision applied to a serialized item."""

    RELEASED = "RELEASED"
    SCRAPPED = "SCRAPPED"


class QcDecision(str, Enum):
    """Lot-wide QC decision used when no per-item result is supplied."""

    PASS = "PASS"
    FAIL = "FAIL"
    SCRAP = "SCRAP"


# ----------------------------------------------------------------------
# Draft payloads
# ----------------------------------------------------------------------
@dataclass(slots=True)
class SkuDraft:
    """Pack definition including the build parameters used for allocation."""

    sku_code: str
    sku_name: str
    chemistry: str = ""
    form_factor: str = ""
    nominal_voltage: float = 0.0
    capacity_ah: float = 0.0
    cells_per_module: int = 0
    notes: str = ""


@dataclass(slots=True)
class PurchaseOrderDraft:
    po_number: str
    supplier_name: str
    material_code: str
    quantity: int
    uom: str = "Units"
    notes: str = ""


@dataclass(slots=True)
class ReceiptDraft:
    """Goods receipt note captured by stores."""

    grn_number: str
    supplier_name: str
    material_code: str
    quantity_received: int
    po_number: str = ""
    supplier_lot_number: str = ""
    uom: str = "Units"
    received_date: Optional[date] = None
    notes: str = ""


@dataclass(slots=True)
class BatchDraft:
    batch_name: str
    sku_code: str
    planned_quantity: int
    allocated_inventory_ids: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ModuleDraft:
    batch_id: str
    sku_code: str
    cell_serials: List[str] = field(default_factory=list)
    module_serial: Optional[str] = None
    assembly_station: str = ""


@dataclass(slots=True)
class SerializedItem:
    """A single serialized unit belonging to a receipt."""

    serial_number: str
    status: ItemStatus = ItemStatus.PENDING_QC
    disposition: Optional[Disposition] = None
    po_number: str = ""
    supplier_lot_number: str = ""


# ----------------------------------------------------------------------
# Flow instances
# ----------------------------------------------------------------------
@dataclass(slots=True)
class FlowInstance:
    """Envelope shared by every flow type."""

    flow_id: ClassVar[FlowType]

    instance_id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"flow_id": self.flow_id.value, **asdict(self)}


@dataclass(slots=True)
class SkuFlow(FlowInstance):
    flow_id: ClassVar[FlowType] = FlowType.SKU

    state: SkuState = SkuState.DRAFT
    draft: SkuDraft = field(default_factory=lambda: SkuDraft(sku_code="", sku_name=""))
    revision: int = 0
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    retired_at: Optional[datetime] = None


@dataclass(slots=True)
class PurchaseOrderFlow(FlowInstance):
    flow_id: ClassVar[FlowType] = FlowType.PURCHASE_ORDER

    state: PurchaseOrderState = PurchaseOrderState.DRAFT
    draft: PurchaseOrderDraft = field(
        default_factory=lambda: PurchaseOrderDraft(
            po_number="", supplier_name="", material_code="", quantity=0
        )
    )
    revision: int = 0
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    closed_at: Optional[datetime] = None
    amendment_count: int = 0


@dataclass(slots=True)
class InboundFlow(FlowInstance):
    flow_id: ClassVar[FlowType] = FlowType.INBOUND

    state: InboundState = InboundState.RECEIVED
    draft: ReceiptDraft = field(
        default_factory=lambda: ReceiptDraft(
            grn_number="", supplier_name="", material_code="", quantity_received=0
        )
    )
    revision: int = 0
    serialized_items: List[SerializedItem] = field(default_factory=list)
    qc_by: Optional[str] = None
    qc_at: Optional[datetime] = None
    qc_remarks: str = ""
    blocked_by: Optional[str] = None
    blocked_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    scrapped_at: Optional[datetime] = None
    scrap_reason: str = ""


@dataclass(slots=True)
class BatchFlow(FlowInstance):
    flow_id: ClassVar[FlowType] = FlowType.BATCH

    state: BatchState = BatchState.DRAFT
    draft: BatchDraft = field(
        default_factory=lambda: BatchDraft(batch_name="", sku_code="", planned_quantity=0)
    )
    revision: int = 0
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass(slots=True)
class ModuleFlow(FlowInstance):
    flow_id: ClassVar[FlowType] = FlowType.MODULE

    state: ModuleState = ModuleState.IN_ASSEMBLY
    draft: ModuleDraft = field(
        default_factory=lambda: ModuleDraft(batch_id="", sku_code="")
    )
    revision: int = 0
    assembled_by: Optional[str] = None
    completed_at: Optional[datetime] = None


AnyFlowInstance = Union[SkuFlow, PurchaseOrderFlow, InboundFlow, BatchFlow, ModuleFlow]

FLOW_CLASSES: Dict[FlowType, Type[FlowInstance]] = {
    FlowType.SKU: SkuFlow,
    FlowType.PURCHASE_ORDER: PurchaseOrderFlow,
    FlowType.INBOUND: InboundFlow,
    FlowType.BATCH: BatchFlow,
    FlowType.MODULE: ModuleFlow,
}

FLOW_STATES: Dict[FlowType, Type[Enum]] = {
    FlowType.SKU: SkuState,
    FlowType.PURCHASE_ORDER: PurchaseOrderState,
    FlowType.INBOUND: InboundState,
    FlowType.BATCH: BatchState,
    FlowType.MODULE: ModuleState,
}

INSTANCE_PREFIXES: Dict[FlowType, str] = {
    FlowType.SKU: "SKU",
    FlowType.PURCHASE_ORDER: "PO",
    FlowType.INBOUND: "INB",
    FlowType.BATCH: "BATCH",
    FlowType.MODULE: "ASSY",
}


def flow_class(flow_type: FlowType) -> Type[FlowInstance]:
    try:
        return FLOW_CLASSES[flow_type]
    except KeyError as exc:
        raise TypeError(f"Unhandled flow type {flow_type!r}") from exc


__all__ = [
    "AnyFlowInstance",
    "BatchDraft",
    "BatchFlow",
    "BatchState",
    "Disposition",
    "FLOW_CLASSES",
    "FLOW_STATES",
    "FlowInstance",
    "FlowType",
    "INSTANCE_PREFIXES",
    "InboundFlow",
    "InboundState",
    "ItemStatus",
    "ModuleDraft",
    "ModuleFlow",
    "ModuleState",
    "PurchaseOrderDraft",
    "PurchaseOrderFlow",
    "PurchaseOrderState",
    "QcDecision",
    "ReceiptDraft",
    "SerializedItem",
    "SkuDraft",
    "SkuFlow",
    "SkuState",
    "UserRole",
    "flow_class",
    "utcnow",
]
