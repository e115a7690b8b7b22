"""Unit tests for module assembly handlers."""

import pytest

from mes_system.domain import FlowType, ModuleState, UserRole
from mes_system.exceptions import (
    AllocationError,
    BadRequestError,
    RecordNotFoundError,
    StateConflictError,
)
from mes_system.guards import ActionState

OPERATOR = UserRole.OPERATOR


def test_twelve_cells_serialize_and_complete(service, make_running_batch) -> None:
    """Scan 12, refuse the 13th, serialize, complete into PendingQA."""
    batch, cells = make_running_batch(planned_quantity=2, cells_per_module=12)
    module = service.create_module(OPERATOR, batch.instance_id, assembly_station="ST-1")
    assert module.draft.sku_code == batch.draft.sku_code

    for serial in cells[:12]:
        module = service.scan_cell(OPERATOR, module.instance_id, serial)
    assert len(module.draft.cell_serials) == 12
    with pytest.raises(AllocationError, match="Cannot allocate more than 12 cells"):
        service.scan_cell(OPERATOR, module.instance_id, cells[12])

    serialized = service.serialize_module(OPERATOR, module.instance_id)
    suffix = batch.instance_id.split("-")[-1]
    assert serialized.draft.module_serial == f"MOD-2024-{suffix}-0001"

    completed = service.complete_module(OPERATOR, module.instance_id, actor="op.ana")
    assert completed.state == ModuleState.PENDING_QA
    assert completed.assembled_by == "op.ana"


def test_second_module_gets_next_sequence(service, make_running_batch) -> None:
    batch, cells = make_running_batch(planned_quantity=2, cells_per_module=2)
    first = service.create_module(OPERATOR, batch.instance_id)
    service.add_cells(OPERATOR, first.instance_id, cells[:2])
    service.serialize_module(OPERATOR, first.instance_id)
    second = service.create_module(OPERATOR, batch.instance_id)
    service.add_cells(OPERATOR, second.instance_id, cells[2:4])
    assert service.serialize_module(OPERATOR, second.instance_id).draft.module_serial.endswith("-0002")


def test_cells_must_come_from_the_batch(service, make_running_batch, make_released_cells) -> None:
    batch, cells = make_running_batch(planned_quantity=2, cells_per_module=2)
    outside = make_released_cells(1, "GRN-OUTSIDE")
    first = service.create_module(OPERATOR, batch.instance_id)
    with pytest.raises(AllocationError, match="not allocated to this batch"):
        service.scan_cell(OPERATOR, first.instance_id, outside[0])
    service.scan_cell(OPERATOR, first.instance_id, cells[0])
    second = service.create_module(OPERATOR, batch.instance_id)
    with pytest.raises(AllocationError, match="not allocated to this batch"):
        service.scan_cell(OPERATOR, second.instance_id, cells[0])


def test_add_cells_rejects_duplicates_all_or_nothing(service, make_running_batch) -> None:
    batch, cells = make_running_batch(planned_quantity=1, cells_per_module=3)
    module = service.create_module(OPERATOR, batch.instance_id)
    service.scan_cell(OPERATOR, module.instance_id, cells[0])
    with pytest.raises(AllocationError, match="already selected"):
        service.add_cells(OPERATOR, module.instance_id, cells[:3])
    with pytest.raises(AllocationError, match="already selected"):
        service.add_cells(OPERATOR, module.instance_id, [cells[1], cells[1]])
    assert service.store.get(module.instance_id).draft.cell_serials == [cells[0]]
    module = service.add_cells(OPERATOR, module.instance_id, cells[1:3])
    assert module.draft.cell_serials == cells[:3]


def test_remove_cell(service, make_running_batch) -> None:
    batch, cells = make_running_batch(planned_quantity=1, cells_per_module=2)
    module = service.create_module(OPERATOR, batch.instance_id)
    service.add_cells(OPERATOR, module.instance_id, cells[:2])
    assert service.remove_cell(OPERATOR, module.instance_id, cells[0]).draft.cell_serials == [cells[1]]
    service.scan_cell(OPERATOR, module.instance_id, f"  {cells[0]} ")
    padded = service.remove_cell(OPERATOR, module.instance_id, f" {cells[0]}\t")
    assert padded.draft.cell_serials == [cells[1]]


def test_serialize_needs_full_module(service, make_running_batch) -> None:
    batch, cells = make_running_batch(planned_quantity=1, cells_per_module=3)
    module = service.create_module(OPERATOR, batch.instance_id)
    service.scan_cell(OPERATOR, module.instance_id, cells[0])
    with pytest.raises(AllocationError, match="Required: 3, Allocated: 1"):
        service.serialize_module(OPERATOR, module.instance_id)
    with pytest.raises(BadRequestError, match="Module not serialized"):
        service.complete_module(OPERATOR, module.instance_id)


def test_serialized_module_is_sealed(service, make_running_batch) -> None:
    batch, cells = make_running_batch(planned_quantity=1, cells_per_module=1)
    module = service.create_module(OPERATOR, batch.instance_id)
    service.scan_cell(OPERATOR, module.instance_id, cells[0])
    actions = service.record_actions(FlowType.MODULE, module.instance_id, OPERATOR)
    assert actions["SCAN_CELL"].enabled and actions["SERIALIZE_MODULE"].enabled
    assert actions["COMPLETE_MODULE"] == ActionState(False, "Module not serialized")

    service.serialize_module(OPERATOR, module.instance_id)
    actions = service.record_actions(FlowType.MODULE, module.instance_id, OPERATOR)
    assert actions["SCAN_CELL"] == ActionState(False, "Module already serialized")
    assert actions["SERIALIZE_MODULE"] == ActionState(False, "Module already serialized")
    assert actions["COMPLETE_MODULE"].enabled
    with pytest.raises(StateConflictError, match="already serialized"):
        service.remove_cell(OPERATOR, module.instance_id, cells[0])
    with pytest.raises(StateConflictError, match="already serialized"):
        service.serialize_module(OPERATOR, module.instance_id)
    service.complete_module(OPERATOR, module.instance_id)
    with pytest.raises(StateConflictError):
        service.complete_module(OPERATOR, module.instance_id)


def test_module_needs_batch_in_progress(service, make_active_sku) -> None:
    sku = make_active_sku()
    batch = service.create_batch(UserRole.PLANNER, "B-D", sku.draft.sku_code, 1)
    with pytest.raises(StateConflictError, match="InProgress"):
        service.create_module(OPERATOR, batch.instance_id)
    with pytest.raises(RecordNotFoundError, match="Batch not found"):
        service.create_module(OPERATOR, "BATCH-NOPE")
    with pytest.raises(BadRequestError, match="Batch ID is required"):
        service.create_module(OPERATOR, "")
