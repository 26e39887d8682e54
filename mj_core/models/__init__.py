"""
Majime 数据模型
"""
from .base import Base
from .tenants import Business, Store, ProductMapping
from .warehouse import Warehouse, Zone, Rack, Shelf
from .stock import StockUnit, PlacementState
from .orders import Order, OrderStatusLog, CustomStatus

__all__ = [
    "Base",
    "Business",
    "Store",
    "ProductMapping",
    "Warehouse",
    "Zone",
    "Rack",
    "Shelf",
    "StockUnit",
    "PlacementState",
    "Order",
    "OrderStatusLog",
    "CustomStatus",
]
