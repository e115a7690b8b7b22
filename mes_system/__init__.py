"""Flow engine for a battery-pack manufacturing execution system.

The package models the plant's five workflows (SKU blueprint, purchase
order, inbound receipt, batch planning and module assembly) as flow
instances that move through closed state graphs. Guards decide which actions
a role may take, handlers apply transitions against a versioned flow store,
and wizard steps are derived from state.
"""

from .domain import (
    BatchFlow,
    FlowType,
    InboundFlow,
    ModuleFlow,
    PurchaseOrderFlow,
    SkuFlow,
    UserRole,
)
from .exceptions import FlowError
from .services import FlowService
from .store import FlowStore, SQLiteFlowStore

__all__ = [
    "BatchFlow",
    "FlowError",
    "FlowService",
    "FlowStore",
    "FlowType",
    "InboundFlow",
    "ModuleFlow",
    "PurchaseOrderFlow",
    "SQLiteFlowStore",
    "SkuFlow",
    "UserRole",
]
