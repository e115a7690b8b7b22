"""Pilot data so a fresh plant has something on every stage."""

from __future__ import annotations

import logging
from datetime import date

from .domain import (
    FlowType,
    PurchaseOrderDraft,
    QcDecision,
    ReceiptDraft,
    SkuDraft,
    UserRole,
)
from .services import FlowService

logger = logging.getLogger(__name__)

ADMIN = UserRole.SYSTEM_ADMIN

SEED_CELLS = [f"CELL-LFP-{index:04d}" for index in range(1, 101)]


def _active_sku(service: FlowService, draft: SkuDraft) -> None:
    sku = service.create_sku(ADMIN, draft)
    service.submit_sku(ADMIN, sku.instance_id, actor="seed")
    service.approve_sku(ADMIN, sku.instance_id, actor="seed")
    service.activate_sku(ADMIN, sku.instance_id)


def ensure_demo_data(service: FlowService) -> None:
    if len(service.store) > 0:
        return

    _active_sku(
        service,
        SkuDraft(
            sku_code="SKU-SEED-001",
            sku_name="BP-LFP-48V-2.5K",
            chemistry="LFP",
            form_factor="Prismatic",
            nominal_voltage=48.0,
            capacity_ah=52.0,
            cells_per_module=12,
            notes="Pilot pack for the stationary storage line",
        ),
    )
    _active_sku(
        service,
        SkuDraft(
            sku_code="SKU-SEED-002",
            sku_name="BP-LFP-96V-5K",
            chemistry="LFP",
            form_factor="Prismatic",
            nominal_voltage=96.0,
            capacity_ah=52.0,
            cells_per_module=24,
        ),
    )

    po = service.create_purchase_order(
        ADMIN,
        PurchaseOrderDraft(
            po_number="PO-SEED-001",
            supplier_name="Shenzhen Cell Works",
            material_code="CELL-LFP-280",
            quantity=len(SEED_CELLS),
        ),
    )
    service.submit_purchase_order(ADMIN, po.instance_id, actor="seed")
    service.approve_purchase_order(ADMIN, po.instance_id, actor="seed")

    receipt = service.create_inbound(
        ADMIN,
        ReceiptDraft(
            grn_number="INB-SEED-001",
            supplier_name="Shenzhen Cell Works",
            material_code="CELL-LFP-280",
            quantity_received=len(SEED_CELLS),
            po_number="PO-SEED-001",
            supplier_lot_number="LOT-SZ-0001",
            received_date=date(2024, 1, 15),
        ),
    )
    service.serialize_inbound(ADMIN, receipt.instance_id, SEED_CELLS)
    service.submit_inbound_qc(ADMIN, receipt.instance_id)
    service.complete_inbound_qc(
        ADMIN, receipt.instance_id, QcDecision.PASS, remarks="Pilot lot", qc_user="seed"
    )
    service.release_inbound(ADMIN, receipt.instance_id)

    completed = service.create_batch(ADMIN, "B-01", "SKU-SEED-001", 3)
    service.allocate_cells(ADMIN, completed.instance_id, SEED_CELLS[0:36])
    service.approve_batch(ADMIN, completed.instance_id, actor="seed")
    service.start_batch(ADMIN, completed.instance_id)
    service.complete_batch(ADMIN, completed.instance_id)

    running = service.create_batch(ADMIN, "B-02", "SKU-SEED-001", 3)
    service.allocate_cells(ADMIN, running.instance_id, SEED_CELLS[36:72])
    service.approve_batch(ADMIN, running.instance_id, actor="seed")
    service.start_batch(ADMIN, running.instance_id)

    logger.info(
        "Seeded pilot data: %s SKUs, %s released cells, %s batches",
        len(service.store.list(FlowType.SKU)),
        len(SEED_CELLS),
        len(service.store.list(FlowType.BATCH)),
    )


__all__ = ["SEED_CELLS", "ensure_demo_data"]
