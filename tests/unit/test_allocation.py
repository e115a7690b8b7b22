"""Unit tests for the exact-match cell allocation bookkeeping."""

import pytest

from mes_system.allocation import CellAllocation, required_cells
from mes_system.exceptions import AllocationError


def test_required_cells_is_planned_times_cells_per_module() -> None:
    assert required_cells(3, 12) == 36
    assert required_cells(0, 12) == 0
    assert required_cells(3, 0) == 0


def test_thirty_seventh_cell_is_rejected() -> None:
    """A 3 x 12 plan accepts 36 cells and refuses the next one."""
    allocation = CellAllocation(required=required_cells(3, 12))
    allocation.add_many(f"C-{index}" for index in range(36))
    assert allocation.is_complete
    with pytest.raises(AllocationError, match="Cannot allocate more than 36 cells"):
        allocation.add("C-36")
    assert allocation.allocated_count == 36
    assert not allocation.is_over


def test_duplicate_and_ineligible_cells_are_rejected() -> None:
    allocation = CellAllocation(required=4)
    allocation.add("A", {"A", "B"})
    with pytest.raises(AllocationError, match="already selected"):
        allocation.add("A", {"A", "B"})
    with pytest.raises(AllocationError, match="not released inventory"):
        allocation.add("Z", {"A", "B"})


def test_module_label_changes_ineligible_message() -> None:
    allocation = CellAllocation(required=2, label="module")
    with pytest.raises(AllocationError, match="not allocated to this batch"):
        allocation.add("Z", set())


def test_add_many_is_all_or_nothing() -> None:
    allocation = CellAllocation(required=2)
    with pytest.raises(AllocationError):
        allocation.add_many(["A", "B", "C"])
    assert allocation.selected == []


def test_ensure_complete_reports_counts() -> None:
    allocation = CellAllocation(required=3, selected=["A"])
    with pytest.raises(AllocationError) as excinfo:
        allocation.ensure_complete()
    assert excinfo.value.message == "Allocation Mismatch. Required: 3, Allocated: 1"
    assert excinfo.value.details == {"required": 3, "allocated": 1}


def test_zero_requirement_is_never_complete() -> None:
    assert not CellAllocation(required=0).is_complete


def test_remove_unknown_cell() -> None:
    allocation = CellAllocation(required=2, selected=["A"])
    allocation.remove("A")
    assert allocation.summary() == {
        "required_cells": 2,
        "allocated_count": 0,
        "remaining": 2,
        "is_complete": False,
    }
    with pytest.raises(AllocationError, match="is not selected"):
        allocation.remove("A")
