"""
Majime 核心服务模块
"""
from .base import BaseService
from .auth_service import AuthService, CallerContext, get_auth_service
from .product_mapping import ProductMappingService
from .locations import LocationService, LocationHierarchyValidator
from .stock_units import StockUnitService
from .putaway import PutAwayService
from .allocation import AllocationService, AllocationPlan
from .fanout import BatchResult, FanOutSummary, fan_out
from .orders import OrdersService

__all__ = [
    "BaseService",
    "AuthService",
    "CallerContext",
    "get_auth_service",
    "ProductMappingService",
    "LocationService",
    "LocationHierarchyValidator",
    "StockUnitService",
    "PutAwayService",
    "AllocationService",
    "AllocationPlan",
    "BatchResult",
    "FanOutSummary",
    "fan_out",
    "OrdersService",
]
