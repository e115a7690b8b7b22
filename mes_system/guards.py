"""Role and context guards for every stage of the plant.

Two tiers are provided:

* stage guards (``get_sN_action_state``) decide from the acting role and the
  stage context whether an action is available at all;
* record guards (``validate_*_item_action``) decide from the acting role and a
  single record's state whether the action may be applied to that record.

Both tiers resolve the role once into a capability set
(:func:`capabilities_for`). ``SYSTEM_ADMIN`` holds every capability, including
the one that lifts stage-wide dependency blockers. Record-state requirements
are never lifted. Guards are pure and may be called speculatively.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional, Tuple, Union

from .context import Dependency, S1Context, S2Context, S3Context, S4Context, S5Context, Stage
from .domain import (
    BatchState,
    FlowType,
    InboundState,
    ModuleState,
    PurchaseOrderState,
    SkuState,
    UserRole,
)


class Capability(str, Enum):
    DESIGN_SKU = "DESIGN_SKU"
    APPROVE_SKU = "APPROVE_SKU"
    PROCURE = "PROCURE"
    APPROVE_PROCUREMENT = "APPROVE_PROCUREMENT"
    RECEIVE_MATERIAL = "RECEIVE_MATERIAL"
    SERIALIZE_MATERIAL = "SERIALIZE_MATERIAL"
    INSPECT_QUALITY = "INSPECT_QUALITY"
    RELEASE_INVENTORY = "RELEASE_INVENTORY"
    HOLD_INVENTORY = "HOLD_INVENTORY"
    SCRAP_INVENTORY = "SCRAP_INVENTORY"
    PLAN_PRODUCTION = "PLAN_PRODUCTION"
    DIRECT_PLANT = "DIRECT_PLANT"
    SUPERVISE_LINE = "SUPERVISE_LINE"
    ASSEMBLE = "ASSEMBLE"
    OVERRIDE_DEPENDENCIES = "OVERRIDE_DEPENDENCIES"
    ADMINISTER = "ADMINISTER"


ROLE_CAPABILITIES: Mapping[UserRole, FrozenSet[Capability]] = {
    UserRole.SYSTEM_ADMIN: frozenset(Capability),
    UserRole.MANAGEMENT: frozenset(
        {
            Capability.APPROVE_SKU,
            Capability.APPROVE_PROCUREMENT,
            Capability.DIRECT_PLANT,
            Capability.SUPERVISE_LINE,
        }
    ),
    UserRole.PROCUREMENT: frozenset({Capability.PROCURE}),
    UserRole.STORES: frozenset(
        {
            Capability.RECEIVE_MATERIAL,
            Capability.SERIALIZE_MATERIAL,
            Capability.RELEASE_INVENTORY,
        }
    ),
    UserRole.QA_ENGINEER: frozenset({Capability.INSPECT_QUALITY, Capability.HOLD_INVENTORY}),
    UserRole.SUPERVISOR: frozenset(
        {
            Capability.RECEIVE_MATERIAL,
            Capability.SERIALIZE_MATERIAL,
            Capability.INSPECT_QUALITY,
            Capability.RELEASE_INVENTORY,
            Capability.HOLD_INVENTORY,
            Capability.SCRAP_INVENTORY,
            Capability.SUPERVISE_LINE,
            Capability.ASSEMBLE,
        }
    ),
    UserRole.OPERATOR: frozenset({Capability.SERIALIZE_MATERIAL, Capability.ASSEMBLE}),
    UserRole.PLANNER: frozenset({Capability.PLAN_PRODUCTION}),
    UserRole.ENGINEERING: frozenset({Capability.DESIGN_SKU}),
    UserRole.COMPLIANCE: frozenset({Capability.APPROVE_SKU}),
}

ROLE_LABELS: Mapping[Capability, str] = {
    Capability.DESIGN_SKU: "Requires Engineering Role",
    Capability.APPROVE_SKU: "Requires Compliance Role",
    Capability.PROCURE: "Requires Procurement Role",
    Capability.APPROVE_PROCUREMENT: "Requires Management Role",
    Capability.RECEIVE_MATERIAL: "Requires Stores Role",
    Capability.SERIALIZE_MATERIAL: "Requires Stores/Ops Role",
    Capability.INSPECT_QUALITY: "Requires QA Role",
    Capability.RELEASE_INVENTORY: "Requires Stores Role",
    Capability.HOLD_INVENTORY: "Requires QA/Sup Role",
    Capability.SCRAP_INVENTORY: "Requires Supervisor Role",
    Capability.PLAN_PRODUCTION: "Requires Production Planner Role",
    Capability.DIRECT_PLANT: "Requires Plant Director Role",
    Capability.SUPERVISE_LINE: "Requires Supervisor Role",
    Capability.ASSEMBLE: "Requires Operator Role",
    Capability.OVERRIDE_DEPENDENCIES: "Requires System Admin Role",
    Capability.ADMINISTER: "Requires System Admin Role",
}

UNKNOWN_ACTION = "Unknown action"


@dataclass(frozen=True, slots=True)
class ActionState:
    """Outcome of a guard evaluation; ``reason`` is set whenever disabled."""

    enabled: bool
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.enabled and not self.reason:
            raise ValueError("A disabled action must carry a reason")

    def to_dict(self) -> Dict[str, object]:
        if self.enabled:
            return {"enabled": True}
        return {"enabled": False, "reason": self.reason}


ENABLED = ActionState(True)


def denied(reason: str) -> ActionState:
    return ActionState(False, reason)


def capabilities_for(role: UserRole) -> FrozenSet[Capability]:
    return ROLE_CAPABILITIES.get(role, frozenset())


def has_capability(role: UserRole, capability: Capability) -> bool:
    return capability in capabilities_for(role)


def role_requirement(role: UserRole, capability: Capability) -> Optional[str]:
    """Return the denial reason if ``role`` lacks ``capability``."""

    if has_capability(role, capability):
        return None
    return ROLE_LABELS[capability]


# ----------------------------------------------------------------------
# Action tables
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StageRule:
    capability: Capability
    blocked_by_dependency: bool = False


@dataclass(frozen=True, slots=True)
class RecordRule:
    capability: Capability
    allowed_states: FrozenSet[Enum]
    state_reason: str


S1_ACTIONS: Mapping[str, StageRule] = {
    "CREATE_SKU": StageRule(Capability.DESIGN_SKU),
    "EDIT_SKU": StageRule(Capability.DESIGN_SKU),
    "SUBMIT_SKU_FOR_REVIEW": StageRule(Capability.DESIGN_SKU),
    "APPROVE_SKU": StageRule(Capability.APPROVE_SKU),
    "REJECT_SKU": StageRule(Capability.APPROVE_SKU),
    "ACTIVATE_SKU": StageRule(Capability.APPROVE_SKU),
    "RETIRE_SKU": StageRule(Capability.APPROVE_SKU),
}

S2_ACTIONS: Mapping[str, StageRule] = {
    "CREATE_PO": StageRule(Capability.PROCURE, blocked_by_dependency=True),
    "SUBMIT_PO_FOR_APPROVAL": StageRule(Capability.PROCURE),
    "APPROVE_PO": StageRule(Capability.APPROVE_PROCUREMENT),
    "REJECT_PO": StageRule(Capability.APPROVE_PROCUREMENT),
    "ISSUE_PO_TO_VENDOR": StageRule(Capability.PROCURE),
    "CLOSE_PROCUREMENT_CYCLE": StageRule(Capability.APPROVE_PROCUREMENT),
    "AMEND_PO": StageRule(Capability.PROCURE),
}

S3_ACTIONS: Mapping[str, StageRule] = {
    "RECORD_RECEIPT": StageRule(Capability.RECEIVE_MATERIAL, blocked_by_dependency=True),
    "VERIFY_SERIALIZATION": StageRule(Capability.SERIALIZE_MATERIAL, blocked_by_dependency=True),
    "START_QC": StageRule(Capability.INSPECT_QUALITY, blocked_by_dependency=True),
    "COMPLETE_QC": StageRule(Capability.INSPECT_QUALITY, blocked_by_dependency=True),
    "RELEASE_INVENTORY": StageRule(Capability.RELEASE_INVENTORY, blocked_by_dependency=True),
    "BLOCK_INVENTORY": StageRule(Capability.HOLD_INVENTORY, blocked_by_dependency=True),
    "SCRAP_INVENTORY": StageRule(Capability.SCRAP_INVENTORY, blocked_by_dependency=True),
}

S4_ACTIONS: Mapping[str, StageRule] = {
    "CREATE_BATCH_PLAN": StageRule(Capability.PLAN_PRODUCTION, blocked_by_dependency=True),
    "EDIT_BATCH_PLAN": StageRule(Capability.PLAN_PRODUCTION),
    "LOCK_BATCH_PLAN": StageRule(Capability.DIRECT_PLANT),
    "RELEASE_BATCHES_TO_LINE": StageRule(Capability.DIRECT_PLANT, blocked_by_dependency=True),
}

S5_ACTIONS: Mapping[str, StageRule] = {
    "START_ASSEMBLY": StageRule(Capability.ASSEMBLE, blocked_by_dependency=True),
    "SCAN_CELL": StageRule(Capability.ASSEMBLE),
    "SERIALIZE_MODULE": StageRule(Capability.ASSEMBLE),
    "COMPLETE_MODULE": StageRule(Capability.ASSEMBLE),
}

DEPENDENCY_REASONS: Mapping[Stage, str] = {
    Stage.S2: "S1 Blueprint Not Ready",
    Stage.S3: "Procurement Dependency Blocked",
    Stage.S4: "Inbound Logistics (S3) Not Ready",
    Stage.S5: "Batch Planning (S4) Not Ready",
}

SKU_RECORD_ACTIONS: Mapping[str, RecordRule] = {
    "EDIT_SKU": RecordRule(
        Capability.DESIGN_SKU, frozenset({SkuState.DRAFT}), "SKU must be in Draft state"
    ),
    "SUBMIT_SKU_FOR_REVIEW": RecordRule(
        Capability.DESIGN_SKU, frozenset({SkuState.DRAFT}), "SKU must be in Draft state"
    ),
    "APPROVE_SKU": RecordRule(
        Capability.APPROVE_SKU, frozenset({SkuState.REVIEW}), "SKU not pending review"
    ),
    "REJECT_SKU": RecordRule(
        Capability.APPROVE_SKU, frozenset({SkuState.REVIEW}), "SKU not pending review"
    ),
    "ACTIVATE_SKU": RecordRule(
        Capability.APPROVE_SKU, frozenset({SkuState.APPROVED}), "SKU not approved"
    ),
    "RETIRE_SKU": RecordRule(
        Capability.APPROVE_SKU, frozenset({SkuState.ACTIVE}), "Only Active SKUs can be retired"
    ),
}

PO_RECORD_ACTIONS: Mapping[str, RecordRule] = {
    "SUBMIT_PO_FOR_APPROVAL": RecordRule(
        Capability.PROCURE, frozenset({PurchaseOrderState.DRAFT}), "PO must be in Draft state"
    ),
    "APPROVE_PO": RecordRule(
        Capability.APPROVE_PROCUREMENT,
        frozenset({PurchaseOrderState.SUBMITTED}),
        "PO not pending approval",
    ),
    "REJECT_PO": RecordRule(
        Capability.APPROVE_PROCUREMENT,
        frozenset({PurchaseOrderState.SUBMITTED}),
        "PO not pending approval",
    ),
    "AMEND_PO": RecordRule(
        Capability.PROCURE,
        frozenset({PurchaseOrderState.APPROVED}),
        "Only Approved POs can be amended",
    ),
    "CLOSE_PROCUREMENT_CYCLE": RecordRule(
        Capability.APPROVE_PROCUREMENT,
        frozenset({PurchaseOrderState.APPROVED}),
        "PO not active/approved",
    ),
    "ISSUE_PO_TO_VENDOR": RecordRule(
        Capability.PROCURE, frozenset({PurchaseOrderState.APPROVED}), "PO not approved"
    ),
}

RECEIPT_RECORD_ACTIONS: Mapping[str, RecordRule] = {
    "VERIFY_SERIALIZATION": RecordRule(
        Capability.SERIALIZE_MATERIAL, frozenset({InboundState.RECEIVED}), "Material not received"
    ),
    "START_QC": RecordRule(
        Capability.INSPECT_QUALITY,
        frozenset({InboundState.SERIALIZED}),
        "Serialization not verified",
    ),
    "COMPLETE_QC": RecordRule(
        Capability.INSPECT_QUALITY,
        frozenset({InboundState.QC_PENDING}),
        "QC Inspection not active",
    ),
    "RELEASE_INVENTORY": RecordRule(
        Capability.RELEASE_INVENTORY,
        frozenset({InboundState.DISPOSITION}),
        "Pending QC Disposition",
    ),
    "BLOCK_INVENTORY": RecordRule(
        Capability.HOLD_INVENTORY,
        frozenset({InboundState.DISPOSITION}),
        "Pending QC Disposition",
    ),
    "SCRAP_INVENTORY": RecordRule(
        Capability.SCRAP_INVENTORY,
        frozenset({InboundState.DISPOSITION, InboundState.BLOCKED}),
        "Pending QC Disposition",
    ),
}

BATCH_RECORD_ACTIONS: Mapping[str, RecordRule] = {
    "EDIT_BATCH_PLAN": RecordRule(
        Capability.PLAN_PRODUCTION, frozenset({BatchState.DRAFT}), "Batch must be in Draft state"
    ),
    "ALLOCATE_CELLS": RecordRule(
        Capability.PLAN_PRODUCTION, frozenset({BatchState.DRAFT}), "Batch must be in Draft state"
    ),
    "APPROVE_BATCH": RecordRule(
        Capability.SUPERVISE_LINE, frozenset({BatchState.DRAFT}), "Batch must be in Draft state"
    ),
    "START_BATCH": RecordRule(
        Capability.SUPERVISE_LINE, frozenset({BatchState.APPROVED}), "Batch not approved"
    ),
    "COMPLETE_BATCH": RecordRule(
        Capability.SUPERVISE_LINE, frozenset({BatchState.IN_PROGRESS}), "Batch not in progress"
    ),
}

MODULE_RECORD_ACTIONS: Mapping[str, RecordRule] = {
    "SCAN_CELL": RecordRule(
        Capability.ASSEMBLE, frozenset({ModuleState.IN_ASSEMBLY}), "Module not in assembly state"
    ),
    "SERIALIZE_MODULE": RecordRule(
        Capability.ASSEMBLE, frozenset({ModuleState.IN_ASSEMBLY}), "Module not in assembly state"
    ),
    "COMPLETE_MODULE": RecordRule(
        Capability.ASSEMBLE, frozenset({ModuleState.IN_ASSEMBLY}), "Module not in assembly state"
    ),
}

# A serialized module's cells are frozen.
SEALED_MODULE_ACTIONS = frozenset({"SCAN_CELL", "SERIALIZE_MODULE"})
SEALED_MODULE_REASON = "Module already serialized"
UNSERIALIZED_MODULE_REASON = "Module not serialized"

RECORD_ACTIONS: Mapping[FlowType, Mapping[str, RecordRule]] = {
    FlowType.SKU: SKU_RECORD_ACTIONS,
    FlowType.PURCHASE_ORDER: PO_RECORD_ACTIONS,
    FlowType.INBOUND: RECEIPT_RECORD_ACTIONS,
    FlowType.BATCH: BATCH_RECORD_ACTIONS,
    FlowType.MODULE: MODULE_RECORD_ACTIONS,
}

STAGE_ACTIONS: Mapping[Stage, Mapping[str, StageRule]] = {
    Stage.S1: S1_ACTIONS,
    Stage.S2: S2_ACTIONS,
    Stage.S3: S3_ACTIONS,
    Stage.S4: S4_ACTIONS,
    Stage.S5: S5_ACTIONS,
}


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------
def _evaluate_stage(
    stage: Stage,
    role: UserRole,
    dependency: Optional[Dependency],
    action: str,
) -> ActionState:
    rule = STAGE_ACTIONS[stage].get(action)
    if rule is None:
        return denied(UNKNOWN_ACTION)
    if (
        rule.blocked_by_dependency
        and dependency == Dependency.BLOCKED
        and not has_capability(role, Capability.OVERRIDE_DEPENDENCIES)
    ):
        return denied(DEPENDENCY_REASONS[stage])
    missing_role = role_requirement(role, rule.capability)
    if missing_role:
        return denied(missing_role)
    return ENABLED


def _evaluate_record(
    rules: Mapping[str, RecordRule],
    role: UserRole,
    status: Union[Enum, str],
    action: str,
) -> ActionState:
    rule = rules.get(action)
    if rule is None:
        return denied(UNKNOWN_ACTION)
    missing_role = role_requirement(role, rule.capability)
    if missing_role:
        return denied(missing_role)
    allowed = {state.value for state in rule.allowed_states}
    status_value = status.value if isinstance(status, Enum) else status
    if status_value not in allowed:
        return denied(rule.state_reason)
    return ENABLED


def get_s1_action_state(role: UserRole, context: S1Context, action: str) -> ActionState:
    return _evaluate_stage(Stage.S1, role, None, action)


def get_s2_action_state(role: UserRole, context: S2Context, action: str) -> ActionState:
    return _evaluate_stage(Stage.S2, role, context.blueprint_dependency, action)


def get_s3_action_state(role: UserRole, context: S3Context, action: str) -> ActionState:
    return _evaluate_stage(Stage.S3, role, context.procurement_dependency, action)


def get_s4_action_state(role: UserRole, context: S4Context, action: str) -> ActionState:
    return _evaluate_stage(Stage.S4, role, context.inbound_dependency, action)


def get_s5_action_state(role: UserRole, context: S5Context, action: str) -> ActionState:
    return _evaluate_stage(Stage.S5, role, context.batch_dependency, action)


_STAGE_GUARDS = {
    Stage.S1: get_s1_action_state,
    Stage.S2: get_s2_action_state,
    Stage.S3: get_s3_action_state,
    Stage.S4: get_s4_action_state,
    Stage.S5: get_s5_action_state,
}


def get_stage_action_state(stage: Stage, role: UserRole, context, action: str) -> ActionState:
    return _STAGE_GUARDS[stage](role, context, action)


def validate_sku_item_action(role: UserRole, sku_status, action: str) -> ActionState:
    return _evaluate_record(SKU_RECORD_ACTIONS, role, sku_status, action)


def validate_po_item_action(role: UserRole, po_status, action: str) -> ActionState:
    return _evaluate_record(PO_RECORD_ACTIONS, role, po_status, action)


def validate_receipt_item_action(role: UserRole, receipt_status, action: str) -> ActionState:
    return _evaluate_record(RECEIPT_RECORD_ACTIONS, role, receipt_status, action)


def validate_batch_item_action(role: UserRole, batch_status, action: str) -> ActionState:
    return _evaluate_record(BATCH_RECORD_ACTIONS, role, batch_status, action)


def validate_module_item_action(
    role: UserRole,
    module_status,
    action: str,
    serialized: Optional[bool] = None,
) -> ActionState:
    """Record guard for a module, optionally aware of its serial seal.

    ``serialized`` is whether the module already carries a module serial.
    Left as ``None`` only role and status are checked.
    """

    state = _evaluate_record(MODULE_RECORD_ACTIONS, role, module_status, action)
    if not state.enabled or serialized is None:
        return state
    if serialized and action in SEALED_MODULE_ACTIONS:
        return denied(SEALED_MODULE_REASON)
    if not serialized and action == "COMPLETE_MODULE":
        return denied(UNSERIALIZED_MODULE_REASON)
    return state


def validate_item_action(flow_type: FlowType, role: UserRole, status, action: str) -> ActionState:
    return _evaluate_record(RECORD_ACTIONS[flow_type], role, status, action)


def stage_action_states(stage: Stage, role: UserRole, context) -> Dict[str, ActionState]:
    return {
        action: get_stage_action_state(stage, role, context, action)
        for action in STAGE_ACTIONS[stage]
    }


def record_action_states(flow_type: FlowType, role: UserRole, status) -> Dict[str, ActionState]:
    return {
        action: validate_item_action(flow_type, role, status, action)
        for action in RECORD_ACTIONS[flow_type]
    }


def module_action_states(
    role: UserRole, module_status, serialized: bool
) -> Dict[str, ActionState]:
    return {
        action: validate_module_item_action(role, module_status, action, serialized)
        for action in MODULE_RECORD_ACTIONS
    }


def record_rule(flow_type: FlowType, action: str) -> Tuple[Capability, str]:
    rule = RECORD_ACTIONS[flow_type][action]
    return rule.capability, rule.state_reason


__all__ = [
    "ActionState",
    "Capability",
    "ROLE_CAPABILITIES",
    "ROLE_LABELS",
    "SEALED_MODULE_REASON",
    "UNKNOWN_ACTION",
    "capabilities_for",
    "get_s1_action_state",
    "get_s2_action_state",
    "get_s3_action_state",
    "get_s4_action_state",
    "get_s5_action_state",
    "get_stage_action_state",
    "has_capability",
    "module_action_states",
    "record_action_states",
    "record_rule",
    "role_requirement",
    "stage_action_states",
    "validate_batch_item_action",
    "validate_item_action",
    "validate_module_item_action",
    "validate_po_item_action",
    "validate_receipt_item_action",
    "validate_sku_item_action",
]
