"""
订单 API：状态流转、拣货、批量操作
"""
import csv
import io
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import Response

from mj_core.models import Order
from mj_core.services import AllocationService, CallerContext, OrdersService, StockUnitService
from mj_core.services.fanout import FanOutSummary
from .deps import get_allocation_service, get_caller_context, get_orders_service, get_stock_unit_service
from .models import (
    ApiResponse, BulkCarrierStatusRequest, BulkOrdersRequest, BulkStatusRequest,
    PickRequest, QcSubmitRequest, RefundRequest, StatusUpdateRequest
)

router = APIRouter(prefix="/orders", tags=["Orders"])

EXPORT_COLUMNS = ["order_id", "name", "store_id", "status", "awb", "courier", "items"]


def order_to_dict(order: Order) -> Dict[str, Any]:
    """订单响应（不含原始快照）"""
    return {
        "id": order.id,
        "store_id": order.store_id,
        "name": order.name,
        "custom_status": order.custom_status.value,
        "awb": order.awb,
        "courier": order.courier,
        "awb_reverse": order.awb_reverse,
        "courier_reverse": order.courier_reverse,
        "pickup_ready": order.pickup_ready,
        "line_items": order.line_items,
        "status_logs": [
            {
                "status": log.status,
                "remarks": log.remarks,
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in order.status_logs
        ],
    }


def _summary_response(summary: FanOutSummary) -> ApiResponse[dict]:
    return ApiResponse.success(
        summary.to_dict(),
        metadata={
            "partitions": len(summary.results),
            "succeeded": len(summary.succeeded),
            "failed": len(summary.failed),
        },
    )


# ========== 订单导入 ==========

@router.post("/ingest/{store_id}", response_model=ApiResponse[dict])
async def ingest_order(
    store_id: str,
    payload: Dict[str, Any] = Body(...),
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """保存店铺推送的订单（幂等）"""
    order, created = await service.ingest_order(ctx, store_id, payload)
    return ApiResponse.success(order_to_dict(order), metadata={"created": created})


# ========== 批量操作（按店铺分区） ==========

@router.post("/bulk/status", response_model=ApiResponse[dict])
async def bulk_update_status(
    body: BulkStatusRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """批量手动设置状态"""
    return _summary_response(await service.bulk_update_status(ctx, body.order_ids, body.status))


@router.post("/bulk/dispatch", response_model=ApiResponse[dict])
async def bulk_dispatch(
    body: BulkOrdersRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """批量发货"""
    return _summary_response(await service.dispatch(ctx, body.order_ids))


@router.post("/bulk/assign-awb", response_model=ApiResponse[dict])
async def bulk_assign_awb(
    body: BulkOrdersRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """批量分配运单号"""
    return _summary_response(await service.assign_awb(ctx, body.order_ids))


@router.post("/bulk/book-return", response_model=ApiResponse[dict])
async def bulk_book_return(
    body: BulkOrdersRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """批量预约退货"""
    return _summary_response(await service.book_return(ctx, body.order_ids))


@router.post("/bulk/carrier-status", response_model=ApiResponse[dict])
async def bulk_carrier_status(
    body: BulkCarrierStatusRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """批量快递状态回传"""
    updates = [update.model_dump() for update in body.updates]
    return _summary_response(await service.bulk_carrier_status(ctx, updates))


@router.post("/bulk/export")
async def bulk_export(
    body: BulkOrdersRequest,
    output: str = Query(default="csv", alias="format", pattern="^(csv|json)$"),
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """导出订单；CSV 只包含成功分区的行，分区统计放在响应头"""
    summary = await service.export_orders(ctx, body.order_ids)
    if output == "json":
        return _summary_response(summary)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
    writer.writeheader()
    for result in summary.succeeded:
        writer.writerows(result.data or [])

    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="orders.csv"',
            "X-Partitions-Succeeded": str(len(summary.succeeded)),
            "X-Partitions-Failed": str(len(summary.failed)),
        },
    )


# ========== 单个订单 ==========

@router.get("/{order_id}", response_model=ApiResponse[dict])
async def get_order(
    order_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """订单详情"""
    return ApiResponse.success(order_to_dict(await service.get_order(ctx, order_id)))


@router.post("/{order_id}/allocation/preview", response_model=ApiResponse[dict])
async def preview_allocation(
    order_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    service: AllocationService = Depends(get_allocation_service),
):
    """预览 FIFO 分配"""
    plan = await service.preview_allocation(ctx, order_id)
    return ApiResponse.success(plan.to_dict())


@router.post("/{order_id}/pick", response_model=ApiResponse[dict])
async def pick_order(
    order_id: str,
    body: Optional[PickRequest] = None,
    ctx: CallerContext = Depends(get_caller_context),
    service: AllocationService = Depends(get_allocation_service),
):
    """拣货：传 unit_ids 时按给定单元确认，否则按 FIFO 分配"""
    if body is not None and body.unit_ids:
        plan = await service.confirm_pick(ctx, order_id, body.unit_ids)
    else:
        plan = await service.allocate_order(ctx, order_id)
    return ApiResponse.success(plan.to_dict())


@router.post("/{order_id}/allocation/release", response_model=ApiResponse[dict])
async def release_allocation(
    order_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    service: StockUnitService = Depends(get_stock_unit_service),
):
    """释放订单预占"""
    count = await service.release_order_units(ctx, order_id)
    return ApiResponse.success({"order_id": order_id, "released": count})


@router.post("/{order_id}/status", response_model=ApiResponse[dict])
async def update_status(
    order_id: str,
    body: StatusUpdateRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """手动设置订单状态"""
    order = await service.update_status(ctx, order_id, body.status)
    return ApiResponse.success(order_to_dict(order))


@router.post("/{order_id}/revert", response_model=ApiResponse[dict])
async def revert_status(
    order_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """撤销订单状态"""
    order = await service.revert(ctx, order_id)
    return ApiResponse.success(order_to_dict(order))


@router.post("/{order_id}/qc", response_model=ApiResponse[dict])
async def submit_qc(
    order_id: str,
    body: QcSubmitRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """提交退货质检结果"""
    order = await service.complete_qc(ctx, order_id, body.qc_statuses, video_path=body.video_path)
    return ApiResponse.success(order_to_dict(order))


@router.post("/{order_id}/refund", response_model=ApiResponse[dict])
async def mark_refunded(
    order_id: str,
    body: RefundRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: OrdersService = Depends(get_orders_service),
):
    """记录退款完成"""
    order = await service.mark_refunded(ctx, order_id, amount=body.amount, method=body.method)
    return ApiResponse.success(order_to_dict(order))
