"""Pytest configuration and fixtures for the flow engine.

Unit tests drive ``FlowService`` directly against an in-memory store; API
tests go through the FastAPI app over an ASGI transport.
"""

from typing import Callable, List, Tuple

import pytest
from httpx import ASGITransport, AsyncClient

from mes_system.config import Settings
from mes_system.domain import (
    BatchFlow,
    InboundFlow,
    QcDecision,
    ReceiptDraft,
    SkuDraft,
    SkuFlow,
    UserRole,
)
from mes_system.services import FlowService
from mes_system.store import FlowStore
from mes_system.web.app import create_app

ADMIN = UserRole.SYSTEM_ADMIN


@pytest.fixture
def store() -> FlowStore:
    return FlowStore()


@pytest.fixture
def service(store: FlowStore) -> FlowService:
    return FlowService(store, serial_year=2024)


@pytest.fixture
def make_active_sku(service: FlowService) -> Callable[..., SkuFlow]:
    """Create a SKU and walk it to Active."""

    def _make(sku_code: str = "SKU-T-001", cells_per_module: int = 12) -> SkuFlow:
        sku = service.create_sku(
            ADMIN,
            SkuDraft(sku_code=sku_code, sku_name="Test Pack", cells_per_module=cells_per_module),
        )
        service.submit_sku(ADMIN, sku.instance_id)
        service.approve_sku(ADMIN, sku.instance_id)
        return service.activate_sku(ADMIN, sku.instance_id)

    return _make


@pytest.fixture
def make_receipt(service: FlowService) -> Callable[..., InboundFlow]:
    """Create a receipt already serialized with ``CELL-<grn>-NNNN`` serials."""

    def _make(count: int = 10, grn_number: str = "GRN-001") -> InboundFlow:
        receipt = service.create_inbound(
            ADMIN,
            ReceiptDraft(
                grn_number=grn_number,
                supplier_name="Cell Supplier",
                material_code="CELL-LFP-280",
                quantity_received=count,
                po_number="PO-001",
                supplier_lot_number="LOT-9",
            ),
        )
        serials = [f"CELL-{grn_number}-{index:04d}" for index in range(1, count + 1)]
        service.serialize_inbound(ADMIN, receipt.instance_id, serials)
        return service.submit_inbound_qc(ADMIN, receipt.instance_id)

    return _make


@pytest.fixture
def make_released_cells(
    service: FlowService, make_receipt: Callable[..., InboundFlow]
) -> Callable[..., List[str]]:
    """Receive, pass and release ``count`` cells; returns their serials."""

    def _make(count: int = 40, grn_number: str = "GRN-001") -> List[str]:
        receipt = make_receipt(count, grn_number)
        service.complete_inbound_qc(ADMIN, receipt.instance_id, QcDecision.PASS)
        released = service.release_inbound(ADMIN, receipt.instance_id)
        return [item.serial_number for item in released.serialized_items]

    return _make


@pytest.fixture
def make_running_batch(
    service: FlowService,
    make_active_sku: Callable[..., SkuFlow],
    make_released_cells: Callable[..., List[str]],
) -> Callable[..., Tuple[BatchFlow, List[str]]]:
    """An InProgress batch of ``planned_quantity`` modules with a full allocation."""

    def _make(planned_quantity: int = 2, cells_per_module: int = 12) -> Tuple[BatchFlow, List[str]]:
        sku = make_active_sku(cells_per_module=cells_per_module)
        cells = make_released_cells(planned_quantity * cells_per_module)
        batch = service.create_batch(ADMIN, "B-T", sku.draft.sku_code, planned_quantity)
        service.allocate_cells(ADMIN, batch.instance_id, cells)
        service.approve_batch(ADMIN, batch.instance_id)
        return service.start_batch(ADMIN, batch.instance_id), cells

    return _make


@pytest.fixture
def app_settings() -> Settings:
    return Settings(store_backend="memory", seed_demo_data=False, serial_year=2024)


@pytest.fixture
async def client(app_settings: Settings) -> AsyncClient:
    """Async HTTP client against the FastAPI app (ASGI)."""
    app = create_app(app_settings)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
