"""Flow handlers: the service layer that advances flow instances.

Every handler follows the same read, compute, write cycle: load the instance
(and anything it depends on), check the acting role, check the transition
predicate, apply the pure transition, then commit with the revision it read so
a concurrent write surfaces as a conflict instead of being overwritten.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

from . import transitions
from .allocation import (
    CellAllocation,
    batch_allocation,
    batch_eligible_pool,
    find_active_sku,
    module_allocation,
    module_eligible_pool,
    required_cells,
)
from .context import Stage, build_stage_context
from .domain import (
    INSTANCE_PREFIXES,
    AnyFlowInstance,
    BatchDraft,
    BatchFlow,
    FlowType,
    InboundFlow,
    ItemStatus,
    ModuleDraft,
    ModuleFlow,
    PurchaseOrderDraft,
    PurchaseOrderFlow,
    QcDecision,
    ReceiptDraft,
    SerializedItem,
    SkuDraft,
    SkuFlow,
    UserRole,
    utcnow,
)
from .exceptions import (
    AllocationError,
    BadRequestError,
    FlowError,
    ForbiddenError,
    RecordNotFoundError,
    StateConflictError,
)
from .guards import (
    ActionState,
    Capability,
    SEALED_MODULE_REASON,
    module_action_states,
    record_action_states,
    record_rule,
    role_requirement,
    stage_action_states,
)
from .store import BaseFlowStore, FlowStore, ReadSet
from .wizard import resolve_step

logger = logging.getLogger(__name__)

RoleLike = Union[UserRole, str]

LEGACY_SUPPLIER = "Legacy / Unknown Supplier"

FLOW_LABELS = {
    FlowType.SKU: "SKU",
    FlowType.PURCHASE_ORDER: "Purchase order",
    FlowType.INBOUND: "Inbound",
    FlowType.BATCH: "Batch",
    FlowType.MODULE: "Module",
}


def ok(data: Any) -> Dict[str, Any]:
    return {"ok": True, "data": data}


def err(error: FlowError) -> Dict[str, Any]:
    return {"ok": False, "error": error.to_dict()}


def coerce_role(role: RoleLike) -> UserRole:
    if isinstance(role, UserRole):
        return role
    try:
        return UserRole(role)
    except ValueError as exc:
        raise BadRequestError(f"Unknown role {role!r}") from exc


def generate_receipt_serials(receipt: ReceiptDraft, year: int) -> List[str]:
    """Deterministic internal serials: ``<material>-<year>-<grn suffix>-<seq>``."""

    prefix = receipt.material_code.split("-")[0] or "MAT"
    grn_suffix = receipt.grn_number.split("-")[-1] or "000"
    return [
        f"{prefix}-{year}-{grn_suffix}-{index:03d}"
        for index in range(1, receipt.quantity_received + 1)
    ]


def _stamp_once(instance: Any, attribute: str, value: Any) -> None:
    if getattr(instance, attribute) is None:
        setattr(instance, attribute, value)


class FlowService:
    """Facade that exposes the flow handlers to clients."""

    def __init__(
        self,
        store: Optional[BaseFlowStore] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        serial_year: Optional[int] = None,
    ) -> None:
        self.store = store if store is not None else FlowStore(clock=clock)
        self._clock = clock
        self.serial_year = serial_year

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------
    def _new_id(self, flow_type: FlowType) -> str:
        return f"{INSTANCE_PREFIXES[flow_type]}-{uuid4().hex[:8].upper()}"

    def _year(self) -> int:
        return self.serial_year or self._clock().year

    def _load(self, flow_type: FlowType, instance_id: Optional[str]) -> Any:
        if not instance_id:
            raise BadRequestError("Missing id parameter")
        instance = self.store.find(instance_id)
        if instance is None or instance.flow_id != flow_type:
            raise RecordNotFoundError(f"{FLOW_LABELS[flow_type]} flow not found")
        return instance

    def _authorize(self, role: RoleLike, capability: Capability) -> UserRole:
        role = coerce_role(role)
        reason = role_requirement(role, capability)
        if reason:
            raise ForbiddenError(reason)
        return role

    def _authorize_action(self, role: RoleLike, flow_type: FlowType, action: str) -> UserRole:
        capability, _ = record_rule(flow_type, action)
        return self._authorize(role, capability)

    @staticmethod
    def _require(allowed: bool, message: str) -> None:
        if not allowed:
            raise StateConflictError(message)

    def _commit(self, instance: AnyFlowInstance, read_set: Optional[ReadSet] = None) -> Any:
        return self.store.upsert(instance, expected_revision=instance.revision, read_set=read_set)

    def _active_sku(self, sku_code: str) -> SkuFlow:
        sku = find_active_sku(self.store.list(FlowType.SKU), sku_code)
        if sku is None:
            raise BadRequestError(f"SKU {sku_code!r} is not Active")
        if sku.draft.cells_per_module <= 0:
            raise BadRequestError(f"SKU {sku_code!r} does not define cells per module")
        return sku

    # ------------------------------------------------------------------
    # Generic reads and administration
    # ------------------------------------------------------------------
    def get_flow(self, flow_type: FlowType, instance_id: Optional[str]) -> Any:
        return self._load(flow_type, instance_id)

    def list_flows(self, flow_type: Optional[FlowType] = None) -> List[AnyFlowInstance]:
        flows = self.store.list(flow_type)
        return [self._for_display(flow) for flow in flows]

    @staticmethod
    def _for_display(flow: AnyFlowInstance) -> AnyFlowInstance:
        if isinstance(flow, InboundFlow) and not flow.draft.supplier_name:
            flow.draft = replace(flow.draft, supplier_name=LEGACY_SUPPLIER)
        return flow

    def view(self, flow_type: FlowType, instance_id: Optional[str]) -> Dict[str, Any]:
        instance = self._load(flow_type, instance_id)
        return {"instance": instance, "step": resolve_step(flow_type, instance.state)}

    def delete_flow(self, role: RoleLike, instance_id: str) -> None:
        self._authorize(role, Capability.ADMINISTER)
        self.store.delete(instance_id)
        logger.info("Flow %s deleted by administrator", instance_id)

    def stage_context(self, stage: Stage):
        return build_stage_context(stage, self.store)

    def stage_actions(self, stage: Stage, role: RoleLike) -> Dict[str, ActionState]:
        return stage_action_states(stage, coerce_role(role), self.stage_context(stage))

    def record_actions(
        self, flow_type: FlowType, instance_id: str, role: RoleLike
    ) -> Dict[str, ActionState]:
        instance = self._load(flow_type, instance_id)
        if flow_type == FlowType.MODULE:
            return module_action_states(
                coerce_role(role), instance.state, bool(instance.draft.module_serial)
            )
        return record_action_states(flow_type, coerce_role(role), instance.state)

    def dispatch(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        """Run a handler by name and wrap the outcome in the response envelope."""

        handler = getattr(self, operation, None)
        if operation.startswith("_") or not callable(handler):
            return err(BadRequestError(f"Unknown operation {operation!r}"))
        try:
            return ok(handler(**kwargs))
        except FlowError as exc:
            logger.info("%s rejected: %s (%s)", operation, exc.message, exc.code)
            return err(exc)

    # ------------------------------------------------------------------
    # SKU blueprint (S1)
    # ------------------------------------------------------------------
    def create_sku(self, role: RoleLike, draft: SkuDraft) -> SkuFlow:
        self._authorize(role, Capability.DESIGN_SKU)
        if not draft.sku_code:
            raise BadRequestError("SKU code is required")
        if not draft.sku_name:
            raise BadRequestError("SKU name is required")
        if draft.cells_per_module <= 0:
            raise BadRequestError("Cells per module must be positive")
        now = self._clock()
        instance = SkuFlow(
            instance_id=self._new_id(FlowType.SKU),
            created_at=now,
            updated_at=now,
            draft=draft,
        )
        return self.store.add(instance)

    def update_sku(self, role: RoleLike, instance_id: str, draft: SkuDraft) -> SkuFlow:
        self._authorize_action(role, FlowType.SKU, "EDIT_SKU")
        sku = self._load(FlowType.SKU, instance_id)
        self._require(transitions.can_edit_sku(sku.state), "SKU must be in Draft state")
        if draft.cells_per_module <= 0:
            raise BadRequestError("Cells per module must be positive")
        sku.draft = draft
        return self._commit(sku)

    def submit_sku(self, role: RoleLike, instance_id: str, actor: Optional[str] = None) -> SkuFlow:
        role = self._authorize_action(role, FlowType.SKU, "SUBMIT_SKU_FOR_REVIEW")
        sku = self._load(FlowType.SKU, instance_id)
        self._require(transitions.can_submit_sku(sku.state), "SKU must be in Draft state")
        sku.state = transitions.next_state_on_sku_submit()
        _stamp_once(sku, "submitted_by", actor or role.value)
        _stamp_once(sku, "submitted_at", self._clock())
        return self._commit(sku)

    def approve_sku(self, role: RoleLike, instance_id: str, actor: Optional[str] = None) -> SkuFlow:
        role = self._authorize_action(role, FlowType.SKU, "APPROVE_SKU")
        sku = self._load(FlowType.SKU, instance_id)
        self._require(transitions.can_approve_sku(sku.state), "SKU not pending review")
        sku.state = transitions.next_state_on_sku_approve()
        _stamp_once(sku, "approved_by", actor or role.value)
        _stamp_once(sku, "approved_at", self._clock())
        return self._commit(sku)

    def reject_sku(self, role: RoleLike, instance_id: str) -> SkuFlow:
        self._authorize_action(role, FlowType.SKU, "REJECT_SKU")
        sku = self._load(FlowType.SKU, instance_id)
        self._require(transitions.can_reject_sku(sku.state), "SKU not pending review")
        sku.state = transitions.next_state_on_sku_reject()
        return self._commit(sku)

    def activate_sku(self, role: RoleLike, instance_id: str) -> SkuFlow:
        self._authorize_action(role, FlowType.SKU, "ACTIVATE_SKU")
        sku = self._load(FlowType.SKU, instance_id)
        self._require(transitions.can_activate_sku(sku.state), "SKU not approved")
        if find_active_sku(self.store.list(FlowType.SKU), sku.draft.sku_code) is not None:
            raise BadRequestError(f"SKU {sku.draft.sku_code!r} already has an Active definition")
        sku.state = transitions.next_state_on_sku_activate()
        _stamp_once(sku, "activated_at", self._clock())
        logger.info("SKU %s activated (%s)", sku.draft.sku_code, sku.instance_id)
        return self._commit(sku)

    def retire_sku(self, role: RoleLike, instance_id: str) -> SkuFlow:
        self._authorize_action(role, FlowType.SKU, "RETIRE_SKU")
        sku = self._load(FlowType.SKU, instance_id)
        self._require(transitions.can_retire_sku(sku.state), "Only Active SKUs can be retired")
        sku.state = transitions.next_state_on_sku_retire()
        _stamp_once(sku, "retired_at", self._clock())
        return self._commit(sku)

    # ------------------------------------------------------------------
    # Purchase orders (S2)
    # ------------------------------------------------------------------
    def create_purchase_order(self, role: RoleLike, draft: PurchaseOrderDraft) -> PurchaseOrderFlow:
        self._authorize(role, Capability.PROCURE)
        if not draft.po_number:
            raise BadRequestError("PO Number is required")
        if not draft.supplier_name:
            raise BadRequestError("Supplier Name is required")
        if not draft.material_code:
            raise BadRequestError("Material Code is required")
        if draft.quantity <= 0:
            raise BadRequestError("PO quantity must be positive")
        now = self._clock()
        instance = PurchaseOrderFlow(
            instance_id=self._new_id(FlowType.PURCHASE_ORDER),
            created_at=now,
            updated_at=now,
            draft=draft,
        )
        return self.store.add(instance)

    def submit_purchase_order(
        self, role: RoleLike, instance_id: str, actor: Optional[str] = None
    ) -> PurchaseOrderFlow:
        role = self._authorize_action(role, FlowType.PURCHASE_ORDER, "SUBMIT_PO_FOR_APPROVAL")
        po = self._load(FlowType.PURCHASE_ORDER, instance_id)
        self._require(transitions.can_submit_po(po.state), "PO must be in Draft state")
        po.state = transitions.next_state_on_po_submit()
        _stamp_once(po, "submitted_by", actor or role.value)
        _stamp_once(po, "submitted_at", self._clock())
        return self._commit(po)

    def approve_purchase_order(
        self, role: RoleLike, instance_id: str, actor: Optional[str] = None
    ) -> PurchaseOrderFlow:
        role = self._authorize_action(role, FlowType.PURCHASE_ORDER, "APPROVE_PO")
        po = self._load(FlowType.PURCHASE_ORDER, instance_id)
        self._require(transitions.can_approve_po(po.state), "PO not pending approval")
        po.state = transitions.next_state_on_po_approve()
        _stamp_once(po, "approved_by", actor or role.value)
        _stamp_once(po, "approved_at", self._clock())
        return self._commit(po)

    def reject_purchase_order(
        self, role: RoleLike, instance_id: str, actor: Optional[str] = None
    ) -> PurchaseOrderFlow:
        role = self._authorize_action(role, FlowType.PURCHASE_ORDER, "REJECT_PO")
        po = self._load(FlowType.PURCHASE_ORDER, instance_id)
        self._require(transitions.can_reject_po(po.state), "PO not pending approval")
        po.state = transitions.next_state_on_po_reject()
        _stamp_once(po, "rejected_by", actor or role.value)
        _stamp_once(po, "rejected_at", self._clock())
        return self._commit(po)

    def amend_purchase_order(self, role: RoleLike, instance_id: str) -> PurchaseOrderFlow:
        self._authorize_action(role, FlowType.PURCHASE_ORDER, "AMEND_PO")
        po = self._load(FlowType.PURCHASE_ORDER, instance_id)
        self._require(transitions.can_amend_po(po.state), "Only Approved POs can be amended")
        po.state = transitions.next_state_on_po_amend()
        po.amendment_count += 1
        return self._commit(po)

    def issue_purchase_order(self, role: RoleLike, instance_id: str) -> PurchaseOrderFlow:
        self._authorize_action(role, FlowType.PURCHASE_ORDER, "ISSUE_PO_TO_VENDOR")
        po = self._load(FlowType.PURCHASE_ORDER, instance_id)
        self._require(transitions.can_issue_po(po.state), "PO not approved")
        po.state = transitions.next_state_on_po_issue()
        _stamp_once(po, "issued_at", self._clock())
        return self._commit(po)

    def close_purchase_order(
        self, role: RoleLike, instance_id: str, actor: Optional[str] = None
    ) -> PurchaseOrderFlow:
        role = self._authorize_action(role, FlowType.PURCHASE_ORDER, "CLOSE_PROCUREMENT_CYCLE")
        po = self._load(FlowType.PURCHASE_ORDER, instance_id)
        self._require(transitions.can_close_po(po.state), "PO not active/approved")
        po.state = transitions.next_state_on_po_close()
        _stamp_once(po, "closed_by", actor or role.value)
        _stamp_once(po, "closed_at", self._clock())
        return self._commit(po)

    # ------------------------------------------------------------------
    # Inbound receipt (S3)
    # ------------------------------------------------------------------
    def create_inbound(self, role: RoleLike, receipt: ReceiptDraft) -> InboundFlow:
        self._authorize(role, Capability.RECEIVE_MATERIAL)
        if not receipt.grn_number:
            raise BadRequestError("GRN Number is required")
        if not receipt.supplier_name:
            raise BadRequestError("Supplier Name is required")
        if receipt.quantity_received <= 0:
            raise BadRequestError("Quantity received must be positive")
        now = self._clock()
        if receipt.received_date is None:
            receipt = replace(receipt, received_date=now.date())
        instance = InboundFlow(
            instance_id=self._new_id(FlowType.INBOUND),
            created_at=now,
            updated_at=now,
            draft=receipt,
        )
        logger.info("Receipt %s recorded (%s units)", receipt.grn_number, receipt.quantity_received)
        return self.store.add(instance)

    def serialize_inbound(
        self, role: RoleLike, instance_id: str, serials: Optional[Sequence[str]] = None
    ) -> InboundFlow:
        self._authorize_action(role, FlowType.INBOUND, "VERIFY_SERIALIZATION")
        flow = self._load(FlowType.INBOUND, instance_id)
        self._require(transitions.can_serialize(flow.state), "Flow not in Received state")
        receipt = flow.draft
        if serials:
            serials = [serial.strip() for serial in serials]
        else:
            year = self.serial_year or (receipt.received_date or self._clock()).year
            serials = generate_receipt_serials(receipt, year)
        if len(serials) != receipt.quantity_received:
            raise BadRequestError(
                f"Serial count mismatch. Provided: {len(serials)}, "
                f"Expected: {receipt.quantity_received}"
            )
        seen = set()
        for serial in serials:
            if not serial:
                raise BadRequestError("Serial numbers must not be blank")
            if serial in seen:
                raise BadRequestError(f"Serial {serial} already scanned")
            seen.add(serial)
        others = [
            other for other in self.store.list(FlowType.INBOUND)
            if other.instance_id != flow.instance_id
        ]
        for other in others:
            clash = seen.intersection(item.serial_number for item in other.serialized_items)
            if clash:
                raise BadRequestError(
                    f"Serial {sorted(clash)[0]} already registered on receipt "
                    f"{other.draft.grn_number}"
                )
        flow.serialized_items = [
            SerializedItem(
                serial_number=serial,
                po_number=receipt.po_number,
                supplier_lot_number=receipt.supplier_lot_number,
            )
            for serial in serials
        ]
        flow.state = transitions.next_state_on_serialize()
        return self._commit(flow, {other.instance_id: other.revision for other in others})

    def submit_inbound_qc(self, role: RoleLike, instance_id: str) -> InboundFlow:
        self._authorize_action(role, FlowType.INBOUND, "START_QC")
        flow = self._load(FlowType.INBOUND, instance_id)
        self._require(
            transitions.can_submit_for_qc(flow.state),
            "Flow must be Serialized to submit for QC",
        )
        flow.state = transitions.next_state_on_submit_qc()
        return self._commit(flow)

    def complete_inbound_qc(
        self,
        role: RoleLike,
        instance_id: str,
        decision: Union[QcDecision, str] = QcDecision.PASS,
        *,
        remarks: str = "",
        qc_user: Optional[str] = None,
        item_results: Optional[Mapping[str, Union[ItemStatus, str]]] = None,
        pass_quantity: Optional[int] = None,
    ) -> InboundFlow:
        role = self._authorize_action(role, FlowType.INBOUND, "COMPLETE_QC")
        flow = self._load(FlowType.INBOUND, instance_id)
        self._require(transitions.can_complete_qc(flow.state), "Flow not in QC Pending state")
        try:
            decision = QcDecision(decision)
        except ValueError as exc:
            raise BadRequestError(f"Unknown QC decision {decision!r}") from exc
        results = self._parse_item_results(flow, item_results)
        if pass_quantity is not None and not 0 <= pass_quantity <= len(flow.serialized_items):
            raise BadRequestError(
                f"Pass quantity must be between 0 and {len(flow.serialized_items)}"
            )
        flow.serialized_items = transitions.classify_qc_results(
            flow.serialized_items,
            decision,
            item_results=results,
            pass_quantity=pass_quantity,
        )
        flow.state = transitions.next_state_on_qc_decision(decision)
        _stamp_once(flow, "qc_by", qc_user or role.value)
        _stamp_once(flow, "qc_at", self._clock())
        flow.qc_remarks = flow.qc_remarks or remarks
        passed = sum(1 for item in flow.serialized_items if item.status == ItemStatus.PASSED)
        logger.info(
            "QC completed on %s: %s passed, %s rejected",
            flow.instance_id,
            passed,
            len(flow.serialized_items) - passed,
        )
        return self._commit(flow)

    @staticmethod
    def _parse_item_results(
        flow: InboundFlow, item_results: Optional[Mapping[str, Union[ItemStatus, str]]]
    ) -> Optional[Dict[str, ItemStatus]]:
        if not item_results:
            return None
        known = {item.serial_number for item in flow.serialized_items}
        parsed: Dict[str, ItemStatus] = {}
        for serial, status in item_results.items():
            if serial not in known:
                raise BadRequestError(f"Serial {serial} does not belong to this receipt")
            try:
                parsed[serial] = ItemStatus(status)
            except ValueError as exc:
                raise BadRequestError(f"Unknown QC status {status!r}") from exc
            if parsed[serial] == ItemStatus.PENDING_QC:
                raise BadRequestError(f"Serial {serial} needs a QC outcome")
        return parsed

    def release_inbound(self, role: RoleLike, instance_id: str) -> InboundFlow:
        self._authorize_action(role, FlowType.INBOUND, "RELEASE_INVENTORY")
        flow = self._load(FlowType.INBOUND, instance_id)
        self._require(transitions.can_release(flow.state), "Pending QC Disposition")
        flow.serialized_items, released = transitions.release_passed_items(flow.serialized_items)
        flow.state = transitions.next_state_on_release(flow.serialized_items)
        _stamp_once(flow, "released_at", self._clock())
        logger.info("Released %s items on %s -> %s", released, flow.instance_id, flow.state.value)
        return self._commit(flow)

    def block_inbound(
        self, role: RoleLike, instance_id: str, actor: Optional[str] = None
    ) -> InboundFlow:
        role = self._authorize_action(role, FlowType.INBOUND, "BLOCK_INVENTORY")
        flow = self._load(FlowType.INBOUND, instance_id)
        self._require(transitions.can_block(flow.state), "Pending QC Disposition")
        flow.serialized_items, held = transitions.hold_passed_items(flow.serialized_items)
        flow.state = transitions.next_state_on_block()
        _stamp_once(flow, "blocked_by", actor or role.value)
        _stamp_once(flow, "blocked_at", self._clock())
        logger.info("Blocked lot %s (%s passed items held)", flow.instance_id, held)
        return self._commit(flow)

    def scrap_inbound(self, role: RoleLike, instance_id: str, reason: str = "") -> InboundFlow:
        self._authorize_action(role, FlowType.INBOUND, "SCRAP_INVENTORY")
        flow = self._load(FlowType.INBOUND, instance_id)
        self._require(transitions.can_scrap(flow.state), "Pending QC Disposition")
        flow.serialized_items, scrapped = transitions.scrap_rejected_items(flow.serialized_items)
        flow.state = transitions.next_state_on_scrap(flow.serialized_items, flow.state)
        _stamp_once(flow, "scrapped_at", self._clock())
        flow.scrap_reason = flow.scrap_reason or reason
        logger.info("Scrapped %s items on %s -> %s", scrapped, flow.instance_id, flow.state.value)
        return self._commit(flow)

    # ------------------------------------------------------------------
    # Batch planning (S4)
    # ------------------------------------------------------------------
    def create_batch(
        self,
        role: RoleLike,
        batch_name: str,
        sku_code: str,
        planned_quantity: int,
    ) -> BatchFlow:
        self._authorize(role, Capability.PLAN_PRODUCTION)
        if not batch_name:
            raise BadRequestError("Batch name is required")
        if planned_quantity <= 0:
            raise BadRequestError("Planned quantity must be positive")
        sku = self._active_sku(sku_code)
        now = self._clock()
        instance = BatchFlow(
            instance_id=self._new_id(FlowType.BATCH),
            created_at=now,
            updated_at=now,
            draft=BatchDraft(
                batch_name=batch_name,
                sku_code=sku_code,
                planned_quantity=planned_quantity,
            ),
        )
        return self.store.add(instance, read_set={sku.instance_id: sku.revision})

    def update_batch(
        self,
        role: RoleLike,
        instance_id: str,
        *,
        batch_name: Optional[str] = None,
        sku_code: Optional[str] = None,
        planned_quantity: Optional[int] = None,
    ) -> BatchFlow:
        self._authorize_action(role, FlowType.BATCH, "EDIT_BATCH_PLAN")
        batch = self._load(FlowType.BATCH, instance_id)
        self._require(transitions.can_edit_batch(batch.state), "Batch must be in Draft state")
        draft = batch.draft
        if batch_name is not None:
            if not batch_name:
                raise BadRequestError("Batch name is required")
            draft.batch_name = batch_name
        if sku_code is not None:
            draft.sku_code = sku_code
        if planned_quantity is not None:
            if planned_quantity <= 0:
                raise BadRequestError("Planned quantity must be positive")
            draft.planned_quantity = planned_quantity
        sku = self._active_sku(draft.sku_code)
        required = required_cells(draft.planned_quantity, sku.draft.cells_per_module)
        if len(draft.allocated_inventory_ids) > required:
            raise AllocationError(
                f"Deallocate cells before reducing the plan. Required: {required}, "
                f"Allocated: {len(draft.allocated_inventory_ids)}"
            )
        return self._commit(batch, {sku.instance_id: sku.revision})

    def _batch_context(self, batch: BatchFlow):
        sku = self._active_sku(batch.draft.sku_code)
        return sku, batch_allocation(batch, sku.draft.cells_per_module)

    def allocation_summary(self, instance_id: str) -> Dict[str, Any]:
        batch = self._load(FlowType.BATCH, instance_id)
        _, allocation = self._batch_context(batch)
        return {"instance_id": batch.instance_id, **allocation.summary()}

    def eligible_cells(self, instance_id: str) -> List[str]:
        batch = self._load(FlowType.BATCH, instance_id)
        allocated = set(batch.draft.allocated_inventory_ids)
        return [
            serial for serial in batch_eligible_pool(self.store, batch) if serial not in allocated
        ]

    def allocate_cells(self, role: RoleLike, instance_id: str, serials: Sequence[str]) -> BatchFlow:
        self._authorize_action(role, FlowType.BATCH, "ALLOCATE_CELLS")
        batch = self._load(FlowType.BATCH, instance_id)
        self._require(transitions.can_edit_batch(batch.state), "Batch must be in Draft state")
        if not serials:
            raise BadRequestError("At least one cell serial is required")
        sku, allocation = self._batch_context(batch)
        eligible = set(batch_eligible_pool(self.store, batch))
        allocation.add_many(serials, eligible)
        batch.draft.allocated_inventory_ids = allocation.selected
        return self._commit(batch, self._pool_read_set(batch, sku))

    def _pool_read_set(self, batch: BatchFlow, sku: SkuFlow) -> Dict[str, int]:
        read_set = {sku.instance_id: sku.revision}
        for flow in self.store.list(FlowType.BATCH) + self.store.list(FlowType.INBOUND):
            if flow.instance_id != batch.instance_id:
                read_set[flow.instance_id] = flow.revision
        return read_set

    def deallocate_cells(
        self, role: RoleLike, instance_id: str, serials: Sequence[str]
    ) -> BatchFlow:
        self._authorize_action(role, FlowType.BATCH, "ALLOCATE_CELLS")
        batch = self._load(FlowType.BATCH, instance_id)
        self._require(transitions.can_edit_batch(batch.state), "Batch must be in Draft state")
        allocation = CellAllocation(
            required=len(batch.draft.allocated_inventory_ids),
            selected=list(batch.draft.allocated_inventory_ids),
        )
        for serial in serials:
            allocation.remove(serial)
        batch.draft.allocated_inventory_ids = allocation.selected
        return self._commit(batch)

    def approve_batch(
        self, role: RoleLike, instance_id: str, actor: Optional[str] = None
    ) -> BatchFlow:
        role = self._authorize_action(role, FlowType.BATCH, "APPROVE_BATCH")
        batch = self._load(FlowType.BATCH, instance_id)
        self._require(transitions.can_approve_batch(batch.state), "Batch must be in Draft state")
        sku, allocation = self._batch_context(batch)
        allocation.ensure_complete()
        eligible = set(batch_eligible_pool(self.store, batch))
        stale = [serial for serial in allocation.selected if serial not in eligible]
        if stale:
            raise AllocationError(f"Cell {stale[0]} is no longer available to this batch")
        batch.state = transitions.next_state_on_batch_approve()
        _stamp_once(batch, "approved_by", actor or role.value)
        _stamp_once(batch, "approved_at", self._clock())
        logger.info(
            "Batch %s approved with %s cells", batch.instance_id, allocation.allocated_count
        )
        return self._commit(batch, self._pool_read_set(batch, sku))

    def start_batch(self, role: RoleLike, instance_id: str) -> BatchFlow:
        self._authorize_action(role, FlowType.BATCH, "START_BATCH")
        batch = self._load(FlowType.BATCH, instance_id)
        self._require(transitions.can_start_batch(batch.state), "Batch not approved")
        batch.state = transitions.next_state_on_batch_start()
        _stamp_once(batch, "started_at", self._clock())
        return self._commit(batch)

    def complete_batch(self, role: RoleLike, instance_id: str) -> BatchFlow:
        self._authorize_action(role, FlowType.BATCH, "COMPLETE_BATCH")
        batch = self._load(FlowType.BATCH, instance_id)
        self._require(transitions.can_complete_batch(batch.state), "Batch not in progress")
        batch.state = transitions.next_state_on_batch_complete()
        _stamp_once(batch, "completed_at", self._clock())
        return self._commit(batch)

    # ------------------------------------------------------------------
    # Module assembly (S5)
    # ------------------------------------------------------------------
    def create_module(
        self,
        role: RoleLike,
        batch_id: str,
        assembly_station: str = "",
        sku_code: Optional[str] = None,
    ) -> ModuleFlow:
        self._authorize(role, Capability.ASSEMBLE)
        if not batch_id:
            raise BadRequestError("Batch ID is required")
        batch = self.store.find(batch_id)
        if batch is None or batch.flow_id != FlowType.BATCH:
            raise RecordNotFoundError("Batch not found")
        self._require(
            transitions.can_assemble_from_batch(batch.state),
            "Batch must be InProgress to start assembly",
        )
        if sku_code and sku_code != batch.draft.sku_code:
            raise BadRequestError(
                f"SKU {sku_code!r} does not match batch SKU {batch.draft.sku_code!r}"
            )
        now = self._clock()
        instance = ModuleFlow(
            instance_id=self._new_id(FlowType.MODULE),
            created_at=now,
            updated_at=now,
            draft=ModuleDraft(
                batch_id=batch.instance_id,
                sku_code=batch.draft.sku_code,
                assembly_station=assembly_station,
            ),
        )
        return self.store.add(instance, read_set={batch.instance_id: batch.revision})

    def _module_context(self, module: ModuleFlow):
        batch = self.store.find(module.draft.batch_id)
        if batch is None or batch.flow_id != FlowType.BATCH:
            raise RecordNotFoundError("Batch not found")
        sku = self._active_sku(module.draft.sku_code)
        allocation = module_allocation(module, sku.draft.cells_per_module)
        read_set = {batch.instance_id: batch.revision, sku.instance_id: sku.revision}
        for other in self.store.list(FlowType.MODULE):
            if other.instance_id != module.instance_id:
                read_set[other.instance_id] = other.revision
        return batch, allocation, read_set

    def _open_module(self, role: RoleLike, instance_id: str) -> ModuleFlow:
        self._authorize_action(role, FlowType.MODULE, "SCAN_CELL")
        module = self._load(FlowType.MODULE, instance_id)
        self._require(transitions.can_add_cells(module.state), "Module not in assembly state")
        if module.draft.module_serial:
            raise StateConflictError(SEALED_MODULE_REASON)
        return module

    def scan_cell(self, role: RoleLike, instance_id: str, serial: str) -> ModuleFlow:
        module = self._open_module(role, instance_id)
        batch, allocation, read_set = self._module_context(module)
        allocation.add(serial, set(module_eligible_pool(self.store, module, batch)))
        module.draft.cell_serials = allocation.selected
        return self._commit(module, read_set)

    def add_cells(self, role: RoleLike, instance_id: str, serials: Iterable[str]) -> ModuleFlow:
        module = self._open_module(role, instance_id)
        batch, allocation, read_set = self._module_context(module)
        allocation.add_many(serials, set(module_eligible_pool(self.store, module, batch)))
        module.draft.cell_serials = allocation.selected
        return self._commit(module, read_set)

    def remove_cell(self, role: RoleLike, instance_id: str, serial: str) -> ModuleFlow:
        module = self._open_module(role, instance_id)
        allocation = CellAllocation(
            required=len(module.draft.cell_serials),
            selected=list(module.draft.cell_serials),
            label="module",
        )
        allocation.remove(serial)
        module.draft.cell_serials = allocation.selected
        return self._commit(module)

    def serialize_module(self, role: RoleLike, instance_id: str) -> ModuleFlow:
        self._authorize_action(role, FlowType.MODULE, "SERIALIZE_MODULE")
        module = self._load(FlowType.MODULE, instance_id)
        self._require(
            transitions.can_serialize_module(module.state), "Module not in assembly state"
        )
        if module.draft.module_serial:
            raise StateConflictError(SEALED_MODULE_REASON)
        batch, allocation, read_set = self._module_context(module)
        allocation.ensure_complete()
        sequence = 1 + sum(
            1
            for other in self.store.list(FlowType.MODULE)
            if other.draft.batch_id == batch.instance_id and other.draft.module_serial
        )
        batch_suffix = batch.instance_id.split("-")[-1]
        module.draft.module_serial = f"MOD-{self._year()}-{batch_suffix}-{sequence:04d}"
        return self._commit(module, read_set)

    def complete_module(
        self, role: RoleLike, instance_id: str, actor: Optional[str] = None
    ) -> ModuleFlow:
        role = self._authorize_action(role, FlowType.MODULE, "COMPLETE_MODULE")
        module = self._load(FlowType.MODULE, instance_id)
        self._require(
            transitions.can_complete_module(module.state), "Module not in assembly state"
        )
        if not module.draft.module_serial:
            raise BadRequestError("Module not serialized")
        if not module.draft.cell_serials:
            raise BadRequestError("No cells mapped")
        _, allocation, read_set = self._module_context(module)
        allocation.ensure_complete()
        module.state = transitions.next_state_on_module_complete()
        _stamp_once(module, "assembled_by", actor or role.value)
        _stamp_once(module, "completed_at", self._clock())
        logger.info("Module %s queued for QA", module.draft.module_serial)
        return self._commit(module, read_set)


__all__ = [
    "FlowService",
    "LEGACY_SUPPLIER",
    "coerce_role",
    "err",
    "generate_receipt_serials",
    "ok",
]
