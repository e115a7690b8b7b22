"""Wizard steps derived from flow state.

Steps are a view over ``state`` and are never stored. ``WizardModel.sync``
rebuilds the whole view from a freshly fetched instance so a client can never
stay on a step its data no longer supports.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .domain import (
    AnyFlowInstance,
    BatchState,
    FlowType,
    InboundState,
    ModuleState,
    PurchaseOrderState,
    SkuState,
    UserRole,
)


class InboundStep(str, Enum):
    RECEIPT = "RECEIPT"
    SERIALIZATION = "SERIALIZATION"
    QC = "QC"
    DISPOSITION = "DISPOSITION"


class BatchStep(str, Enum):
    DRAFT = "DRAFT"
    EXECUTION = "EXECUTION"
    COMPLETION = "COMPLETION"


class SkuStep(str, Enum):
    DEFINITION = "DEFINITION"
    REVIEW = "REVIEW"
    ACTIVATION = "ACTIVATION"
    SUMMARY = "SUMMARY"


class PurchaseOrderStep(str, Enum):
    DRAFT = "DRAFT"
    APPROVAL = "APPROVAL"
    ISSUED = "ISSUED"
    CLOSED = "CLOSED"


class ModuleStep(str, Enum):
    AGGREGATION = "AGGREGATION"
    COMPLETION = "COMPLETION"


def resolve_inbound_step(state) -> InboundStep:
    if state in (InboundState.RECEIVED, InboundState.SERIALIZED):
        # A Received instance already has its receipt; the next task is serials.
        return InboundStep.SERIALIZATION
    if state == InboundState.QC_PENDING:
        return InboundStep.QC
    if state in (
        InboundState.DISPOSITION,
        InboundState.RELEASED,
        InboundState.BLOCKED,
        InboundState.SCRAPPED,
        InboundState.COMPLETED,
    ):
        return InboundStep.DISPOSITION
    return InboundStep.RECEIPT


def resolve_batch_step(state) -> BatchStep:
    if state in (BatchState.APPROVED, BatchState.IN_PROGRESS):
        return BatchStep.EXECUTION
    if state == BatchState.COMPLETED:
        return BatchStep.COMPLETION
    return BatchStep.DRAFT


def resolve_sku_step(state) -> SkuStep:
    if state == SkuState.REVIEW:
        return SkuStep.REVIEW
    if state == SkuState.APPROVED:
        return SkuStep.ACTIVATION
    if state in (SkuState.ACTIVE, SkuState.OBSOLETE):
        return SkuStep.SUMMARY
    return SkuStep.DEFINITION


def resolve_po_step(state) -> PurchaseOrderStep:
    if state == PurchaseOrderState.SUBMITTED:
        return PurchaseOrderStep.APPROVAL
    if state == PurchaseOrderState.APPROVED:
        return PurchaseOrderStep.ISSUED
    if state in (PurchaseOrderState.CLOSED, PurchaseOrderState.REJECTED):
        return PurchaseOrderStep.CLOSED
    return PurchaseOrderStep.DRAFT


def resolve_module_step(state) -> ModuleStep:
    if state in (ModuleState.PENDING_QA, ModuleState.COMPLETED):
        return ModuleStep.COMPLETION
    return ModuleStep.AGGREGATION


_RESOLVERS = {
    FlowType.INBOUND: resolve_inbound_step,
    FlowType.BATCH: resolve_batch_step,
    FlowType.SKU: resolve_sku_step,
    FlowType.PURCHASE_ORDER: resolve_po_step,
    FlowType.MODULE: resolve_module_step,
}


def resolve_step(flow_type: FlowType, state) -> Enum:
    return _RESOLVERS[flow_type](state)


@dataclass(slots=True)
class WizardModel:
    """Client-side view model of one flow instance."""

    flow_type: FlowType
    role: UserRole
    step: Enum
    instance_id: Optional[str] = None
    state: Optional[Enum] = None
    draft: Any = None
    revision: int = 0

    @classmethod
    def blank(cls, flow_type: FlowType, role: UserRole) -> "WizardModel":
        return cls(flow_type=flow_type, role=role, step=resolve_step(flow_type, None))

    def sync(self, instance: AnyFlowInstance) -> "WizardModel":
        if instance.flow_id != self.flow_type:
            raise ValueError(
                f"Cannot sync a {self.flow_type.value} wizard from a {instance.flow_id.value} flow"
            )
        self.instance_id = instance.instance_id
        self.state = instance.state
        self.step = resolve_step(self.flow_type, instance.state)
        self.draft = instance.draft
        self.revision = instance.revision
        return self


__all__ = [
    "BatchStep",
    "InboundStep",
    "ModuleStep",
    "PurchaseOrderStep",
    "SkuStep",
    "WizardModel",
    "resolve_batch_step",
    "resolve_inbound_step",
    "resolve_module_step",
    "resolve_po_step",
    "resolve_sku_step",
    "resolve_step",
]
