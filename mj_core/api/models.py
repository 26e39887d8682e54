"""
API 请求/响应模型
"""
from typing import Any, Dict, List, Optional, Generic, TypeVar
from pydantic import BaseModel, Field

T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """统一 API 响应格式"""
    ok: bool = Field(description="操作是否成功")
    data: Optional[T] = Field(default=None, description="响应数据")
    error: Optional[Dict[str, Any]] = Field(default=None, description="错误信息（RFC7807 Problem Details）")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="元数据")

    @classmethod
    def success(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ApiResponse[T]":
        """创建成功响应"""
        return cls(ok=True, data=data, metadata=metadata)


class PaginatedResponse(BaseModel, Generic[T]):
    """分页响应"""
    items: List[T] = Field(description="数据列表")
    page_size: int = Field(description="每页大小")
    offset: int = Field(description="偏移量")
    has_more: bool = Field(description="是否有更多数据")


# 仓储
class PutAwayRequest(BaseModel):
    """上架请求（数量上限由服务层校验）"""
    business_id: str = Field(min_length=1)
    warehouse_id: str = Field(min_length=1)
    zone_id: str = Field(min_length=1)
    rack_id: str = Field(min_length=1)
    shelf_id: str = Field(min_length=1)
    unit_ids: List[str] = Field(min_length=1, description="库存单元ID，重复项只处理一次")


class InwardLine(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class InwardRequest(BaseModel):
    """入库请求"""
    business_id: str = Field(min_length=1)
    grn_ref: Optional[str] = None
    lines: List[InwardLine] = Field(min_length=1)


class ReturnIntakeRequest(BaseModel):
    """退货入库请求"""
    business_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)


class LocationCreateRequest(BaseModel):
    """创建库位节点；上级ID按层级要求必填"""
    business_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=200)
    id: Optional[str] = Field(default=None, max_length=64)
    code: Optional[str] = Field(default=None, max_length=50)
    warehouse_id: Optional[str] = None
    zone_id: Optional[str] = None
    rack_id: Optional[str] = None
    address: Optional[str] = Field(default=None, max_length=500)


class ProductMappingRequest(BaseModel):
    """店铺商品映射"""
    store_product_id: str = Field(min_length=1)
    store_variant_id: Optional[str] = None
    business_product_id: str = Field(min_length=1)


# 订单
class PickRequest(BaseModel):
    """拣货请求；不传 unit_ids 时由系统按 FIFO 分配"""
    unit_ids: Optional[List[str]] = None


class QcSubmitRequest(BaseModel):
    """退货质检结果：订单行 id -> QC Pass / QC Fail / Not Received"""
    qc_statuses: Dict[str, str]
    video_path: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(default=None, ge=0)
    method: str = Field(default="manual")


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1)


class BulkOrdersRequest(BaseModel):
    """批量订单请求，订单可以跨店铺"""
    order_ids: List[str] = Field(min_length=1)


class BulkStatusRequest(BulkOrdersRequest):
    status: str = Field(min_length=1)


class CarrierStatusUpdate(BaseModel):
    order_id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    remarks: Optional[str] = None


class BulkCarrierStatusRequest(BaseModel):
    updates: List[CarrierStatusUpdate] = Field(min_length=1)
