"""
API 依赖：调用方身份与服务实例
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mj_core.services import (
    AllocationService, CallerContext, LocationService, OrdersService,
    ProductMappingService, PutAwayService, StockUnitService, get_auth_service
)
from mj_core.utils.errors import UnauthorizedError
from mj_core.utils.logger import business_id_var

bearer_scheme = HTTPBearer(auto_error=False)


async def get_caller_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CallerContext:
    """从 Bearer 令牌解析调用方上下文；缺失或无效时返回 401"""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError(code="UNAUTHORIZED", detail="Authentication required")
    ctx = get_auth_service().verify_token(credentials.credentials)
    if len(ctx.authorized_businesses) == 1:
        # 只用于日志
        business_id_var.set(next(iter(ctx.authorized_businesses)))
    return ctx


def get_location_service() -> LocationService:
    return LocationService()


def get_stock_unit_service() -> StockUnitService:
    return StockUnitService()


def get_putaway_service() -> PutAwayService:
    return PutAwayService()


def get_allocation_service() -> AllocationService:
    return AllocationService()


def get_product_mapping_service() -> ProductMappingService:
    return ProductMappingService()


def get_orders_service() -> OrdersService:
    return OrdersService()
