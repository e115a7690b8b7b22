"""Unit tests for the pure state-graph functions."""

import pytest

from mes_system import transitions as t
from mes_system.domain import (
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

INBOUND_EDGES = {
    t.can_serialize: {InboundState.RECEIVED},
    t.can_submit_for_qc: {InboundState.SERIALIZED},
    t.can_complete_qc: {InboundState.QC_PENDING},
    t.can_release: {InboundState.DISPOSITION},
    t.can_block: {InboundState.DISPOSITION},
    t.can_scrap: {InboundState.DISPOSITION, InboundState.BLOCKED},
}

BATCH_EDGES = {
    t.can_edit_batch: {BatchState.DRAFT},
    t.can_approve_batch: {BatchState.DRAFT},
    t.can_start_batch: {BatchState.APPROVED},
    t.can_complete_batch: {BatchState.IN_PROGRESS},
    t.can_assemble_from_batch: {BatchState.IN_PROGRESS},
}

SKU_EDGES = {
    t.can_submit_sku: {SkuState.DRAFT},
    t.can_approve_sku: {SkuState.REVIEW},
    t.can_reject_sku: {SkuState.REVIEW},
    t.can_activate_sku: {SkuState.APPROVED},
    t.can_retire_sku: {SkuState.ACTIVE},
}

PO_EDGES = {
    t.can_submit_po: {PurchaseOrderState.DRAFT},
    t.can_approve_po: {PurchaseOrderState.SUBMITTED},
    t.can_reject_po: {PurchaseOrderState.SUBMITTED},
    t.can_amend_po: {PurchaseOrderState.APPROVED},
    t.can_close_po: {PurchaseOrderState.APPROVED},
}


@pytest.mark.parametrize(
    "edges, states",
    [
        (INBOUND_EDGES, InboundState),
        (BATCH_EDGES, BatchState),
        (SKU_EDGES, SkuState),
        (PO_EDGES, PurchaseOrderState),
    ],
)
def test_predicates_are_total_and_match_edge_table(edges, states) -> None:
    """Every predicate answers for every state and is true only on legal edges."""
    for predicate, allowed in edges.items():
        for state in states:
            assert predicate(state) is (state in allowed), (predicate.__name__, state)


def test_module_predicates() -> None:
    for state in ModuleState:
        expected = state == ModuleState.IN_ASSEMBLY
        assert t.can_add_cells(state) is expected
        assert t.can_complete_module(state) is expected
    assert t.next_state_on_module_complete() == ModuleState.PENDING_QA


def test_amend_returns_po_to_draft() -> None:
    assert t.next_state_on_po_amend() == PurchaseOrderState.DRAFT
    assert t.next_state_on_sku_reject() == SkuState.DRAFT


@pytest.mark.parametrize("decision", list(QcDecision))
def test_every_qc_decision_lands_in_disposition(decision) -> None:
    assert t.next_state_on_qc_decision(decision) == InboundState.DISPOSITION


def _items(*statuses):
    return [
        SerializedItem(serial_number=f"S-{index}", status=status)
        for index, status in enumerate(statuses)
    ]


def test_classify_prefers_item_results_over_lot_decision() -> None:
    items = _items(ItemStatus.PENDING_QC, ItemStatus.PENDING_QC, ItemStatus.PENDING_QC)
    result = t.classify_qc_results(
        items, QcDecision.PASS, item_results={"S-1": ItemStatus.FAILED}
    )
    assert [item.status for item in result] == [
        ItemStatus.PASSED,
        ItemStatus.FAILED,
        ItemStatus.PASSED,
    ]
    assert all(item.status == ItemStatus.PENDING_QC for item in items)


def test_classify_pass_quantity_splits_by_position() -> None:
    items = _items(*([ItemStatus.PENDING_QC] * 5))
    result = t.classify_qc_results(items, QcDecision.PASS, pass_quantity=3)
    assert [item.status for item in result] == [ItemStatus.PASSED] * 3 + [ItemStatus.BLOCKED] * 2


def test_fail_decision_blocks_every_item() -> None:
    result = t.classify_qc_results(_items(ItemStatus.PENDING_QC), QcDecision.FAIL)
    assert result[0].status == ItemStatus.BLOCKED


def test_release_then_scrap_dispositions_every_item() -> None:
    """Release followed by scrap leaves no item without a disposition."""
    items = _items(ItemStatus.PASSED, ItemStatus.BLOCKED, ItemStatus.FAILED, ItemStatus.PASSED)
    items, released = t.release_passed_items(items)
    assert released == 2
    assert t.resolve_disposition_state(items) == InboundState.DISPOSITION
    items, scrapped = t.scrap_rejected_items(items)
    assert scrapped == 2
    assert all(item.disposition is not None for item in items)
    assert t.resolve_disposition_state(items) == InboundState.COMPLETED


def test_release_is_idempotent_on_dispositioned_items() -> None:
    items, _ = t.release_passed_items(_items(ItemStatus.PASSED))
    again, released = t.release_passed_items(items)
    assert released == 0
    assert again == items


def test_resolve_disposition_state_aggregates() -> None:
    released = [SerializedItem("A", ItemStatus.PASSED, Disposition.RELEASED)]
    scrapped = [SerializedItem("B", ItemStatus.FAILED, Disposition.SCRAPPED)]
    assert t.resolve_disposition_state([]) == InboundState.DISPOSITION
    assert t.resolve_disposition_state(released) == InboundState.RELEASED
    assert t.resolve_disposition_state(scrapped) == InboundState.SCRAPPED
    assert t.resolve_disposition_state(released + scrapped) == InboundState.COMPLETED


def test_hold_then_scrap_from_blocked() -> None:
    items = _items(ItemStatus.PASSED, ItemStatus.FAILED)
    items, held = t.hold_passed_items(items)
    assert held == 1
    assert all(item.status != ItemStatus.PASSED for item in items)
    assert t.next_state_on_scrap(items[:0], InboundState.BLOCKED) == InboundState.BLOCKED
    items, _ = t.scrap_rejected_items(items)
    assert t.next_state_on_scrap(items, InboundState.BLOCKED) == InboundState.SCRAPPED
