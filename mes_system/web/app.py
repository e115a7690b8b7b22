"""FastAPI-based HTTP boundary for the flow engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, is_dataclass
from typing import Any, Optional

from fastapi import FastAPI, Request

from ..config import Settings, get_settings
from ..context import Stage
from ..domain import FlowInstance, FlowType, UserRole
from ..guards import ActionState
from ..logging_config import setup_logging
from ..seed import ensure_demo_data
from ..services import FlowService, ok
from ..store import BaseFlowStore, FlowStore, SQLiteFlowStore, summarize
from .exception_handlers import register_exception_handlers
from .schemas import (
    BatchCreateRequest,
    BatchUpdateRequest,
    CellRequest,
    CellsRequest,
    InboundCreateRequest,
    InstanceRequest,
    ModuleCreateRequest,
    PurchaseOrderCreateRequest,
    QcRequest,
    ScrapRequest,
    SerializeRequest,
    SkuCreateRequest,
    SkuUpdateRequest,
)

logger = logging.getLogger(__name__)


def to_jsonable(value: Any) -> Any:
    if isinstance(value, (FlowInstance, ActionState)):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return value


def respond(data: Any) -> dict:
    return ok(to_jsonable(data))


def build_store(settings: Settings) -> BaseFlowStore:
    if settings.store_backend == "sqlite":
        return SQLiteFlowStore(settings.database_path)
    return FlowStore()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)
    store = build_store(settings)
    service = FlowService(store, serial_year=settings.serial_year)
    if settings.seed_demo_data:
        ensure_demo_data(service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # pragma: no cover - framework hook
        logger.info("%s started with %s store", settings.app_name, settings.store_backend)
        yield
        if isinstance(store, SQLiteFlowStore):
            store.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.flow_service = service
    app.state.settings = settings
    register_exception_handlers(app)

    def flows(request: Request) -> FlowService:
        return request.app.state.flow_service

    # ------------------------------------------------------------------
    # Generic reads
    # ------------------------------------------------------------------
    @app.get("/api/store")
    async def store_summary(request: Request):
        return respond(summarize(flows(request).store))

    @app.get("/api/flows/list")
    async def list_all_flows(request: Request, flow: Optional[FlowType] = None):
        return respond(flows(request).list_flows(flow))

    @app.get("/api/flows/{flow}/list")
    async def list_flows(request: Request, flow: FlowType):
        return respond(flows(request).list_flows(flow))

    @app.get("/api/flows/{flow}/get")
    async def get_flow(request: Request, flow: FlowType, id: Optional[str] = None):
        return respond(flows(request).get_flow(flow, id))

    @app.get("/api/flows/{flow}/view")
    async def view_flow(request: Request, flow: FlowType, id: Optional[str] = None):
        return respond(flows(request).view(flow, id))

    @app.get("/api/flows/{flow}/actions")
    async def record_actions(
        request: Request, flow: FlowType, role: UserRole, id: Optional[str] = None
    ):
        return respond(flows(request).record_actions(flow, id, role))

    @app.get("/api/stages/{stage}/actions")
    async def stage_actions(request: Request, stage: Stage, role: UserRole):
        service = flows(request)
        return respond(
            {
                "context": service.stage_context(stage),
                "actions": service.stage_actions(stage, role),
            }
        )

    @app.delete("/api/flows/{instance_id}")
    async def delete_flow(request: Request, instance_id: str, role: UserRole):
        flows(request).delete_flow(role, instance_id)
        return respond({"id": instance_id})

    # ------------------------------------------------------------------
    # SKU
    # ------------------------------------------------------------------
    @app.post("/api/flows/sku/create")
    async def create_sku(request: Request, body: SkuCreateRequest):
        return respond(flows(request).create_sku(body.role, body.to_draft()))

    @app.post("/api/flows/sku/update")
    async def update_sku(request: Request, body: SkuUpdateRequest):
        return respond(flows(request).update_sku(body.role, body.id, body.to_draft()))

    @app.post("/api/flows/sku/submit")
    async def submit_sku(request: Request, body: InstanceRequest):
        return respond(flows(request).submit_sku(body.role, body.id, actor=body.actor))

    @app.post("/api/flows/sku/approve")
    async def approve_sku(request: Request, body: InstanceRequest):
        return respond(flows(request).approve_sku(body.role, body.id, actor=body.actor))

    @app.post("/api/flows/sku/reject")
    async def reject_sku(request: Request, body: InstanceRequest):
        return respond(flows(request).reject_sku(body.role, body.id))

    @app.post("/api/flows/sku/activate")
    async def activate_sku(request: Request, body: InstanceRequest):
        return respond(flows(request).activate_sku(body.role, body.id))

    @app.post("/api/flows/sku/retire")
    async def retire_sku(request: Request, body: InstanceRequest):
        return respond(flows(request).retire_sku(body.role, body.id))

    # ------------------------------------------------------------------
    # Purchase orders
    # ------------------------------------------------------------------
    @app.post("/api/flows/purchase_order/create")
    async def create_purchase_order(request: Request, body: PurchaseOrderCreateRequest):
        return respond(flows(request).create_purchase_order(body.role, body.to_draft()))

    @app.post("/api/flows/purchase_order/submit")
    async def submit_purchase_order(request: Request, body: InstanceRequest):
        return respond(
            flows(request).submit_purchase_order(body.role, body.id, actor=body.actor)
        )

    @app.post("/api/flows/purchase_order/approve")
    async def approve_purchase_order(request: Request, body: InstanceRequest):
        return respond(
            flows(request).approve_purchase_order(body.role, body.id, actor=body.actor)
        )

    @app.post("/api/flows/purchase_order/reject")
    async def reject_purchase_order(request: Request, body: InstanceRequest):
        return respond(
            flows(request).reject_purchase_order(body.role, body.id, actor=body.actor)
        )

    @app.post("/api/flows/purchase_order/amend")
    async def amend_purchase_order(request: Request, body: InstanceRequest):
        return respond(flows(request).amend_purchase_order(body.role, body.id))

    @app.post("/api/flows/purchase_order/issue")
    async def issue_purchase_order(request: Request, body: InstanceRequest):
        return respond(flows(request).issue_purchase_order(body.role, body.id))

    @app.post("/api/flows/purchase_order/close")
    async def close_purchase_order(request: Request, body: InstanceRequest):
        return respond(
            flows(request).close_purchase_order(body.role, body.id, actor=body.actor)
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    @app.post("/api/flows/inbound/create")
    async def create_inbound(request: Request, body: InboundCreateRequest):
        return respond(flows(request).create_inbound(body.role, body.to_draft()))

    @app.post("/api/flows/inbound/serialize")
    async def serialize_inbound(request: Request, body: SerializeRequest):
        return respond(flows(request).serialize_inbound(body.role, body.id, body.serials))

    @app.post("/api/flows/inbound/submit-qc")
    async def submit_inbound_qc(request: Request, body: InstanceRequest):
        return respond(flows(request).submit_inbound_qc(body.role, body.id))

    @app.post("/api/flows/inbound/complete-qc")
    async def complete_inbound_qc(request: Request, body: QcRequest):
        return respond(
            flows(request).complete_inbound_qc(
                body.role,
                body.id,
                body.decision,
                remarks=body.remarks,
                qc_user=body.qc_user or body.actor,
                item_results=body.item_results,
                pass_quantity=body.pass_quantity,
            )
        )

    @app.post("/api/flows/inbound/release")
    async def release_inbound(request: Request, body: InstanceRequest):
        return respond(flows(request).release_inbound(body.role, body.id))

    @app.post("/api/flows/inbound/block")
    async def block_inbound(request: Request, body: InstanceRequest):
        return respond(flows(request).block_inbound(body.role, body.id, actor=body.actor))

    @app.post("/api/flows/inbound/scrap")
    async def scrap_inbound(request: Request, body: ScrapRequest):
        return respond(flows(request).scrap_inbound(body.role, body.id, body.reason))

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    @app.post("/api/flows/batch/create")
    async def create_batch(request: Request, body: BatchCreateRequest):
        return respond(
            flows(request).create_batch(
                body.role, body.batch_name, body.sku_code, body.planned_quantity
            )
        )

    @app.post("/api/flows/batch/update")
    async def update_batch(request: Request, body: BatchUpdateRequest):
        return respond(
            flows(request).update_batch(
                body.role,
                body.id,
                batch_name=body.batch_name,
                sku_code=body.sku_code,
                planned_quantity=body.planned_quantity,
            )
        )

    @app.get("/api/flows/batch/allocation")
    async def batch_allocation(request: Request, id: Optional[str] = None):
        service = flows(request)
        summary = service.allocation_summary(id)
        summary["eligible_cells"] = service.eligible_cells(id)
        return respond(summary)

    @app.post("/api/flows/batch/allocate")
    async def allocate_cells(request: Request, body: CellsRequest):
        return respond(flows(request).allocate_cells(body.role, body.id, body.serials))

    @app.post("/api/flows/batch/deallocate")
    async def deallocate_cells(request: Request, body: CellsRequest):
        return respond(flows(request).deallocate_cells(body.role, body.id, body.serials))

    @app.post("/api/flows/batch/approve")
    async def approve_batch(request: Request, body: InstanceRequest):
        return respond(flows(request).approve_batch(body.role, body.id, actor=body.actor))

    @app.post("/api/flows/batch/start")
    async def start_batch(request: Request, body: InstanceRequest):
        return respond(flows(request).start_batch(body.role, body.id))

    @app.post("/api/flows/batch/complete")
    async def complete_batch(request: Request, body: InstanceRequest):
        return respond(flows(request).complete_batch(body.role, body.id))

    # ------------------------------------------------------------------
    # Modules
    # ------------------------------------------------------------------
    @app.post("/api/flows/module/create")
    async def create_module(request: Request, body: ModuleCreateRequest):
        return respond(
            flows(request).create_module(
                body.role, body.batch_id, body.assembly_station, body.sku_code
            )
        )

    @app.post("/api/flows/module/scan")
    async def scan_cell(request: Request, body: CellRequest):
        return respond(flows(request).scan_cell(body.role, body.id, body.serial))

    @app.post("/api/flows/module/remove-cell")
    async def remove_cell(request: Request, body: CellRequest):
        return respond(flows(request).remove_cell(body.role, body.id, body.serial))

    @app.post("/api/flows/module/add-cells")
    async def add_cells(request: Request, body: CellsRequest):
        return respond(flows(request).add_cells(body.role, body.id, body.serials))

    @app.post("/api/flows/module/serialize")
    async def serialize_module(request: Request, body: InstanceRequest):
        return respond(flows(request).serialize_module(body.role, body.id))

    @app.post("/api/flows/module/complete")
    async def complete_module(request: Request, body: InstanceRequest):
        return respond(flows(request).complete_module(body.role, body.id, actor=body.actor))

    return app


__all__ = ["build_store", "create_app", "respond", "to_jsonable"]
