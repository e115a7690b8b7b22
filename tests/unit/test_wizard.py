"""Unit tests for wizard step derivation."""

from datetime import datetime, timezone

import pytest

from mes_system.domain import (
    BatchFlow,
    BatchState,
    FlowType,
    InboundFlow,
    InboundState,
    ModuleState,
    PurchaseOrderState,
    SkuState,
    UserRole,
)
from mes_system.wizard import (
    BatchStep,
    InboundStep,
    WizardModel,
    resolve_inbound_step,
    resolve_step,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)

STATES = {
    FlowType.INBOUND: InboundState,
    FlowType.BATCH: BatchState,
    FlowType.SKU: SkuState,
    FlowType.PURCHASE_ORDER: PurchaseOrderState,
    FlowType.MODULE: ModuleState,
}


@pytest.mark.parametrize(
    "state, step",
    [
        (None, InboundStep.RECEIPT),
        (InboundState.RECEIVED, InboundStep.SERIALIZATION),
        (InboundState.SERIALIZED, InboundStep.SERIALIZATION),
        (InboundState.QC_PENDING, InboundStep.QC),
        (InboundState.DISPOSITION, InboundStep.DISPOSITION),
        (InboundState.BLOCKED, InboundStep.DISPOSITION),
        (InboundState.COMPLETED, InboundStep.DISPOSITION),
    ],
)
def test_inbound_steps(state, step) -> None:
    assert resolve_inbound_step(state) == step


@pytest.mark.parametrize("flow_type", list(FlowType))
def test_every_state_resolves_to_one_step(flow_type) -> None:
    """Resolution is deterministic for every reachable state."""
    for state in STATES[flow_type]:
        assert resolve_step(flow_type, state) == resolve_step(flow_type, state)


def test_sync_resolves_step_from_fetched_instance() -> None:
    model = WizardModel.blank(FlowType.BATCH, UserRole.PLANNER)
    assert model.step == BatchStep.DRAFT
    batch = BatchFlow(
        instance_id="BATCH-1",
        created_at=NOW,
        updated_at=NOW,
        state=BatchState.IN_PROGRESS,
        revision=4,
    )
    model.sync(batch)
    assert (model.instance_id, model.step, model.revision) == ("BATCH-1", BatchStep.EXECUTION, 4)
    assert model.sync(batch).step == BatchStep.EXECUTION


def test_sync_rejects_other_flow_types() -> None:
    model = WizardModel.blank(FlowType.BATCH, UserRole.PLANNER)
    with pytest.raises(ValueError):
        model.sync(InboundFlow(instance_id="INB-1", created_at=NOW, updated_at=NOW))
