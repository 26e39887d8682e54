"""
Majime API 路由模块
"""
from fastapi import APIRouter

from .orders import router as orders_router
from .stores import router as stores_router
from .warehouse import router as warehouse_router

# 创建主路由器
api_router = APIRouter()

api_router.include_router(warehouse_router)
api_router.include_router(orders_router)
api_router.include_router(stores_router)

__all__ = ["api_router"]
