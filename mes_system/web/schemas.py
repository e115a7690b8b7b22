"""Request bodies accepted by the HTTP boundary.

Each model validates field presence and ranges before a handler runs and
converts itself to the matching draft record of the domain.
"""

from __future__ import annotations

from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..domain import (
    ItemStatus,
    PurchaseOrderDraft,
    QcDecision,
    ReceiptDraft,
    SkuDraft,
    UserRole,
)


class RoleRequest(BaseModel):
    """Every mutating request names the acting role."""

    model_config = ConfigDict(extra="ignore")

    role: UserRole
    actor: Optional[str] = None


class InstanceRequest(RoleRequest):
    id: str = Field(min_length=1)


# ----------------------------------------------------------------------
# SKU
# ----------------------------------------------------------------------
class SkuFields(BaseModel):
    sku_code: str = Field(min_length=1)
    sku_name: str = Field(min_length=1)
    chemistry: str = ""
    form_factor: str = ""
    nominal_voltage: float = Field(default=0.0, ge=0)
    capacity_ah: float = Field(default=0.0, ge=0)
    cells_per_module: int = Field(gt=0)
    notes: str = ""

    def to_draft(self) -> SkuDraft:
        return SkuDraft(
            sku_code=self.sku_code,
            sku_name=self.sku_name,
            chemistry=self.chemistry,
            form_factor=self.form_factor,
            nominal_voltage=self.nominal_voltage,
            capacity_ah=self.capacity_ah,
            cells_per_module=self.cells_per_module,
            notes=self.notes,
        )


class SkuCreateRequest(SkuFields, RoleRequest):
    pass


class SkuUpdateRequest(SkuFields, InstanceRequest):
    pass


# ----------------------------------------------------------------------
# Purchase orders
# ----------------------------------------------------------------------
class PurchaseOrderCreateRequest(RoleRequest):
    po_number: str = Field(min_length=1)
    supplier_name: str = Field(min_length=1)
    material_code: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    uom: str = "Units"
    notes: str = ""

    def to_draft(self) -> PurchaseOrderDraft:
        return PurchaseOrderDraft(
            po_number=self.po_number,
            supplier_name=self.supplier_name,
            material_code=self.material_code,
            quantity=self.quantity,
            uom=self.uom,
            notes=self.notes,
        )


# ----------------------------------------------------------------------
# Inbound
# ----------------------------------------------------------------------
class InboundCreateRequest(RoleRequest):
    grn_number: str = Field(min_length=1)
    supplier_name: str = Field(min_length=1)
    material_code: str = ""
    quantity_received: int = Field(gt=0)
    po_number: str = ""
    supplier_lot_number: str = ""
    uom: str = "Units"
    received_date: Optional[date] = None
    notes: str = ""

    def to_draft(self) -> ReceiptDraft:
        return ReceiptDraft(
            grn_number=self.grn_number,
            supplier_name=self.supplier_name,
            material_code=self.material_code,
            quantity_received=self.quantity_received,
            po_number=self.po_number,
            supplier_lot_number=self.supplier_lot_number,
            uom=self.uom,
            received_date=self.received_date,
            notes=self.notes,
        )


class SerializeRequest(InstanceRequest):
    serials: Optional[List[str]] = None


class QcRequest(InstanceRequest):
    decision: QcDecision = QcDecision.PASS
    remarks: str = ""
    qc_user: Optional[str] = None
    item_results: Optional[Dict[str, ItemStatus]] = None
    pass_quantity: Optional[int] = Field(default=None, ge=0)


class ScrapRequest(InstanceRequest):
    reason: str = ""


# ----------------------------------------------------------------------
# Batches and modules
# ----------------------------------------------------------------------
class BatchCreateRequest(RoleRequest):
    batch_name: str = Field(min_length=1)
    sku_code: str = Field(min_length=1)
    planned_quantity: int = Field(gt=0)


class BatchUpdateRequest(InstanceRequest):
    batch_name: Optional[str] = None
    sku_code: Optional[str] = None
    planned_quantity: Optional[int] = Field(default=None, gt=0)


class CellsRequest(InstanceRequest):
    serials: List[str] = Field(min_length=1)


class CellRequest(InstanceRequest):
    serial: str = Field(min_length=1)


class ModuleCreateRequest(RoleRequest):
    batch_id: str = Field(min_length=1)
    assembly_station: str = ""
    sku_code: Optional[str] = None


__all__ = [
    "BatchCreateRequest",
    "BatchUpdateRequest",
    "CellRequest",
    "CellsRequest",
    "InboundCreateRequest",
    "InstanceRequest",
    "ModuleCreateRequest",
    "PurchaseOrderCreateRequest",
    "QcRequest",
    "RoleRequest",
    "ScrapRequest",
    "SerializeRequest",
    "SkuCreateRequest",
    "SkuUpdateRequest",
]
