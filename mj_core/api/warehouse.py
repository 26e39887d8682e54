"""
仓储 API：库位、入库、上架、退货入库、库存查询
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from mj_core.models import PlacementState
from mj_core.services import CallerContext, LocationService, PutAwayService, StockUnitService
from mj_core.utils.errors import NotFoundError
from .deps import get_caller_context, get_location_service, get_putaway_service, get_stock_unit_service
from .models import (
    ApiResponse, InwardRequest, LocationCreateRequest, PaginatedResponse,
    PutAwayRequest, ReturnIntakeRequest
)

router = APIRouter(prefix="/warehouse", tags=["Warehouse"])

# 路由中的复数形式 → 层级
LEVEL_PATHS = {
    "warehouses": "warehouse",
    "zones": "zone",
    "racks": "rack",
    "shelves": "shelf",
}


def _level_from_path(level_path: str) -> str:
    level = LEVEL_PATHS.get(level_path)
    if level is None:
        raise NotFoundError(code="ROUTE_NOT_FOUND", resource=f"Location level {level_path}")
    return level


@router.post("/put-away", response_model=ApiResponse[dict])
async def put_away(
    body: PutAwayRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: PutAwayService = Depends(get_putaway_service),
):
    """把库存单元上架到指定层板（全有或全无）"""
    count = await service.put_away(
        ctx,
        business_id=body.business_id,
        warehouse_id=body.warehouse_id,
        zone_id=body.zone_id,
        rack_id=body.rack_id,
        shelf_id=body.shelf_id,
        unit_ids=body.unit_ids,
    )
    return ApiResponse.success({"count": count})


@router.post("/inward", response_model=ApiResponse[dict])
async def receive_units(
    body: InwardRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: StockUnitService = Depends(get_stock_unit_service),
):
    """入库：按数量生成库存单元"""
    units = await service.receive_units(
        ctx,
        body.business_id,
        [line.model_dump() for line in body.lines],
        grn_ref=body.grn_ref,
    )
    return ApiResponse.success({"count": len(units), "unit_ids": [unit.id for unit in units]})


@router.post("/returns", response_model=ApiResponse[dict])
async def receive_returned_units(
    body: ReturnIntakeRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: StockUnitService = Depends(get_stock_unit_service),
):
    """退货入库"""
    count = await service.receive_returned_units(ctx, body.business_id, body.order_id)
    return ApiResponse.success({"count": count})


@router.get("/units", response_model=ApiResponse[PaginatedResponse[dict]])
async def list_units(
    business_id: str,
    product_id: Optional[str] = None,
    placement_state: Optional[PlacementState] = None,
    order_id: Optional[str] = None,
    shelf_id: Optional[str] = None,
    page_size: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ctx: CallerContext = Depends(get_caller_context),
    service: StockUnitService = Depends(get_stock_unit_service),
):
    """库存单元列表"""
    units = await service.list_units(
        ctx,
        business_id,
        product_id=product_id,
        placement_state=placement_state,
        order_id=order_id,
        shelf_id=shelf_id,
        limit=page_size + 1,
        offset=offset,
    )
    return ApiResponse.success(PaginatedResponse(
        items=[unit.to_dict() for unit in units[:page_size]],
        page_size=page_size,
        offset=offset,
        has_more=len(units) > page_size,
    ))


@router.get("/placements", response_model=ApiResponse[list])
async def placement_summary(
    business_id: str,
    product_id: Optional[str] = None,
    ctx: CallerContext = Depends(get_caller_context),
    service: StockUnitService = Depends(get_stock_unit_service),
):
    """按层板汇总可拣数量"""
    rows = await service.placement_summary(ctx, business_id, product_id=product_id)
    return ApiResponse.success(rows)


@router.post("/{level_path}", response_model=ApiResponse[dict])
async def create_location(
    level_path: str,
    body: LocationCreateRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: LocationService = Depends(get_location_service),
):
    """创建仓库/库区/货架/层板"""
    level = _level_from_path(level_path)
    parents = {
        field: getattr(body, field)
        for field in ("warehouse_id", "zone_id", "rack_id")
        if getattr(body, field)
    }
    attrs = {"address": body.address} if level == "warehouse" and body.address else {}
    node = await service.create_node(
        ctx,
        body.business_id,
        level,
        name=body.name,
        parents=parents,
        code=body.code,
        node_id=body.id,
        **attrs
    )
    return ApiResponse.success(node.to_dict())


@router.get("/{level_path}", response_model=ApiResponse[list])
async def list_locations(
    level_path: str,
    business_id: str,
    parent_id: Optional[str] = None,
    ctx: CallerContext = Depends(get_caller_context),
    service: LocationService = Depends(get_location_service),
):
    """按上级列出库位节点"""
    level = _level_from_path(level_path)
    nodes = await service.list_nodes(ctx, business_id, level, parent_id=parent_id)
    return ApiResponse.success([node.to_dict() for node in nodes])


@router.delete("/{level_path}/{node_id}", response_model=ApiResponse[dict])
async def delete_location(
    level_path: str,
    node_id: str,
    business_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    service: LocationService = Depends(get_location_service),
):
    """软删除库位节点"""
    level = _level_from_path(level_path)
    await service.delete_node(ctx, business_id, level, node_id)
    return ApiResponse.success({"id": node_id, "level": level, "deleted": True})

