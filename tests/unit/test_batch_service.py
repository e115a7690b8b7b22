"""Unit tests for batch planning handlers."""

import pytest

from mes_system.domain import BatchState, InboundState, UserRole
from mes_system.exceptions import (
    AllocationError,
    BadRequestError,
    ForbiddenError,
    StateConflictError,
)

ADMIN = UserRole.SYSTEM_ADMIN


@pytest.fixture
def draft_batch(service, make_active_sku, make_released_cells):
    sku = make_active_sku(cells_per_module=12)
    cells = make_released_cells(40)
    batch = service.create_batch(UserRole.PLANNER, "B-100", sku.draft.sku_code, 3)
    return batch, cells


def test_exact_allocation_then_approval(service, draft_batch) -> None:
    """A 3 x 12 batch takes exactly 36 cells; the 37th is refused."""
    batch, cells = draft_batch
    allocated = service.allocate_cells(UserRole.PLANNER, batch.instance_id, cells[:36])
    assert len(allocated.draft.allocated_inventory_ids) == 36
    with pytest.raises(AllocationError, match="Cannot allocate more than 36 cells"):
        service.allocate_cells(UserRole.PLANNER, batch.instance_id, [cells[36]])
    summary = service.allocation_summary(batch.instance_id)
    assert summary["is_complete"] and summary["remaining"] == 0

    approved = service.approve_batch(UserRole.SUPERVISOR, batch.instance_id, actor="sup.kim")
    assert approved.state == BatchState.APPROVED
    assert approved.approved_by == "sup.kim"


def test_approval_with_short_allocation_names_counts(service, draft_batch) -> None:
    batch, cells = draft_batch
    service.allocate_cells(ADMIN, batch.instance_id, cells[:35])
    with pytest.raises(AllocationError, match="Required: 36, Allocated: 35"):
        service.approve_batch(ADMIN, batch.instance_id)
    assert service.store.get(batch.instance_id).state == BatchState.DRAFT


def test_rejected_bulk_allocation_changes_nothing(service, draft_batch) -> None:
    batch, cells = draft_batch
    with pytest.raises(AllocationError):
        service.allocate_cells(ADMIN, batch.instance_id, cells[:37])
    assert service.store.get(batch.instance_id).draft.allocated_inventory_ids == []


def test_cells_must_be_released_and_free(service, draft_batch, make_receipt) -> None:
    batch, cells = draft_batch
    pending = make_receipt(1, "GRN-PENDING")
    with pytest.raises(AllocationError, match="not released inventory"):
        service.allocate_cells(
            ADMIN, batch.instance_id, [pending.serialized_items[0].serial_number]
        )
    other = service.create_batch(ADMIN, "B-101", batch.draft.sku_code, 1)
    service.allocate_cells(ADMIN, other.instance_id, [cells[0]])
    with pytest.raises(AllocationError, match="not released inventory"):
        service.allocate_cells(ADMIN, batch.instance_id, [cells[0]])
    assert cells[0] not in service.eligible_cells(batch.instance_id)


def test_deallocate_frees_cells(service, draft_batch) -> None:
    batch, cells = draft_batch
    service.allocate_cells(ADMIN, batch.instance_id, cells[:2])
    updated = service.deallocate_cells(ADMIN, batch.instance_id, [cells[0]])
    assert updated.draft.allocated_inventory_ids == [cells[1]]
    with pytest.raises(AllocationError, match="is not selected"):
        service.deallocate_cells(ADMIN, batch.instance_id, [cells[0]])


def test_reducing_plan_below_allocation_is_refused(service, draft_batch) -> None:
    batch, cells = draft_batch
    service.allocate_cells(ADMIN, batch.instance_id, cells[:24])
    with pytest.raises(AllocationError, match="Required: 12, Allocated: 24"):
        service.update_batch(ADMIN, batch.instance_id, planned_quantity=1)
    updated = service.update_batch(ADMIN, batch.instance_id, planned_quantity=2, batch_name="B-2")
    assert (updated.draft.planned_quantity, updated.draft.batch_name) == (2, "B-2")


def test_batch_requires_active_sku(service) -> None:
    with pytest.raises(BadRequestError, match="is not Active"):
        service.create_batch(ADMIN, "B-X", "SKU-MISSING", 1)


def test_planner_cannot_approve(service, draft_batch) -> None:
    batch, _ = draft_batch
    with pytest.raises(ForbiddenError, match="Requires Supervisor Role"):
        service.approve_batch(UserRole.PLANNER, batch.instance_id)


def test_lifecycle_edges(service, draft_batch) -> None:
    batch, cells = draft_batch
    with pytest.raises(StateConflictError, match="Batch not approved"):
        service.start_batch(ADMIN, batch.instance_id)
    service.allocate_cells(ADMIN, batch.instance_id, cells[:36])
    service.approve_batch(ADMIN, batch.instance_id)
    with pytest.raises(StateConflictError, match="Draft"):
        service.allocate_cells(ADMIN, batch.instance_id, [cells[36]])
    started = service.start_batch(ADMIN, batch.instance_id)
    assert started.state == BatchState.IN_PROGRESS and started.started_at is not None
    completed = service.complete_batch(ADMIN, batch.instance_id)
    assert completed.state == BatchState.COMPLETED
    with pytest.raises(StateConflictError):
        service.complete_batch(ADMIN, batch.instance_id)


def test_released_cells_survive_a_later_block(service, make_active_sku, make_receipt) -> None:
    """Cells released before their lot is blocked can still be approved into a batch."""
    sku = make_active_sku(cells_per_module=1)
    receipt = make_receipt(4)
    service.complete_inbound_qc(ADMIN, receipt.instance_id, pass_quantity=3)
    released = service.release_inbound(UserRole.STORES, receipt.instance_id)
    cells = [item.serial_number for item in released.serialized_items[:3]]

    batch = service.create_batch(UserRole.PLANNER, "B-HOLD", sku.draft.sku_code, 2)
    service.allocate_cells(UserRole.PLANNER, batch.instance_id, cells[:2])
    blocked = service.block_inbound(UserRole.QA_ENGINEER, receipt.instance_id)
    assert blocked.state == InboundState.BLOCKED

    assert service.eligible_cells(batch.instance_id) == [cells[2]]
    approved = service.approve_batch(UserRole.SUPERVISOR, batch.instance_id)
    assert approved.state == BatchState.APPROVED
