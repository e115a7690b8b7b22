"""Exact-match allocation of cells to batches and modules.

A batch of ``planned_quantity`` modules needs ``planned_quantity *
cells_per_module`` cells, where ``cells_per_module`` comes from the Active SKU
the batch references. A module needs exactly ``cells_per_module`` cells drawn
from its batch's allocation. In both cases selection is manual and the
reconciler rejects a unit at insertion time when it would overshoot the
requirement, duplicate an existing selection, or come from outside the
eligible pool. No path warns about an overshoot after the fact.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, Iterable, List, Optional

from .domain import (
    BatchFlow,
    Disposition,
    FlowType,
    InboundFlow,
    ModuleFlow,
    SkuFlow,
    SkuState,
)
from .exceptions import AllocationError

INELIGIBLE_MESSAGES = {
    "batch": "Cell {serial} is not released inventory available to this batch",
    "module": "Cell {serial} is not allocated to this batch",
}


def required_cells(planned_quantity: int, cells_per_module: int) -> int:
    if planned_quantity <= 0 or cells_per_module <= 0:
        return 0
    return planned_quantity * cells_per_module


@dataclass(slots=True)
class CellAllocation:
    """Required-versus-selected bookkeeping for one batch or module."""

    required: int
    selected: List[str] = field(default_factory=list)
    label: str = "batch"

    @property
    def required_cells(self) -> int:
        return self.required

    @property
    def allocated_count(self) -> int:
        return len(self.selected)

    @property
    def remaining(self) -> int:
        return max(self.required - self.allocated_count, 0)

    @property
    def is_complete(self) -> bool:
        return self.allocated_count == self.required and self.required > 0

    @property
    def is_over(self) -> bool:
        return self.allocated_count > self.required

    def add(self, serial: str, eligible: Optional[AbstractSet[str]] = None) -> None:
        serial = serial.strip()
        if not serial:
            raise AllocationError("Cell serial is required")
        if serial in self.selected:
            raise AllocationError(f"Cell {serial} already selected")
        if eligible is not None and serial not in eligible:
            raise AllocationError(INELIGIBLE_MESSAGES[self.label].format(serial=serial))
        if self.allocated_count >= self.required:
            raise AllocationError(
                f"Cannot allocate more than {self.required} cells"
            )
        self.selected.append(serial)

    def add_many(self, serials: Iterable[str], eligible: Optional[AbstractSet[str]] = None) -> None:
        """Add all serials or none of them."""

        trial = CellAllocation(required=self.required, selected=list(self.selected), label=self.label)
        for serial in serials:
            trial.add(serial, eligible)
        self.selected = trial.selected

    def remove(self, serial: str) -> None:
        serial = serial.strip()
        try:
            self.selected.remove(serial)
        except ValueError as exc:
            raise AllocationError(f"Cell {serial} is not selected") from exc

    def ensure_complete(self) -> None:
        if not self.is_complete:
            raise AllocationError(
                f"Allocation Mismatch. Required: {self.required}, "
                f"Allocated: {self.allocated_count}",
                details={"required": self.required, "allocated": self.allocated_count},
            )

    def summary(self) -> dict:
        return {
            "required_cells": self.required,
            "allocated_count": self.allocated_count,
            "remaining": self.remaining,
            "is_complete": self.is_complete,
        }


# ----------------------------------------------------------------------
# Eligible pools
# ----------------------------------------------------------------------
def find_active_sku(skus: Iterable[SkuFlow], sku_code: str) -> Optional[SkuFlow]:
    for sku in skus:
        if sku.draft.sku_code == sku_code and sku.state == SkuState.ACTIVE:
            return sku
    return None


def released_cell_pool(receipts: Iterable[InboundFlow]) -> List[str]:
    """Serials released by upstream QC, in receipt order.

    The lot state is ignored: items released before their lot was blocked
    stay in the pool.
    """

    pool: List[str] = []
    for receipt in receipts:
        pool.extend(
            item.serial_number
            for item in receipt.serialized_items
            if item.disposition == Disposition.RELEASED
        )
    return pool


def batch_eligible_pool(store, batch: BatchFlow) -> List[str]:
    """Released serials not already committed to another batch."""

    taken = {
        serial
        for other in store.list(FlowType.BATCH)
        if other.instance_id != batch.instance_id
        for serial in other.draft.allocated_inventory_ids
    }
    return [
        serial
        for serial in released_cell_pool(store.list(FlowType.INBOUND))
        if serial not in taken
    ]


def module_eligible_pool(store, module: ModuleFlow, batch: BatchFlow) -> List[str]:
    """Cells allocated to the module's batch and not consumed by another module."""

    consumed = {
        serial
        for other in store.list(FlowType.MODULE)
        if other.instance_id != module.instance_id
        for serial in other.draft.cell_serials
    }
    return [serial for serial in batch.draft.allocated_inventory_ids if serial not in consumed]


def batch_allocation(batch: BatchFlow, cells_per_module: int) -> CellAllocation:
    return CellAllocation(
        required=required_cells(batch.draft.planned_quantity, cells_per_module),
        selected=list(batch.draft.allocated_inventory_ids),
        label="batch",
    )


def module_allocation(module: ModuleFlow, cells_per_module: int) -> CellAllocation:
    return CellAllocation(
        required=max(cells_per_module, 0),
        selected=list(module.draft.cell_serials),
        label="module",
    )


__all__ = [
    "CellAllocation",
    "batch_allocation",
    "batch_eligible_pool",
    "find_active_sku",
    "module_allocation",
    "module_eligible_pool",
    "released_cell_pool",
    "required_cells",
]
