"""
店铺 API：商品映射
"""
from fastapi import APIRouter, Depends

from mj_core.services import CallerContext, ProductMappingService
from .deps import get_caller_context, get_product_mapping_service
from .models import ApiResponse, ProductMappingRequest

router = APIRouter(prefix="/stores", tags=["Stores"])


@router.post("/{store_id}/product-mappings", response_model=ApiResponse[dict])
async def upsert_product_mapping(
    store_id: str,
    body: ProductMappingRequest,
    ctx: CallerContext = Depends(get_caller_context),
    service: ProductMappingService = Depends(get_product_mapping_service),
):
    """创建或更新店铺商品到业务库存商品的映射"""
    mapping = await service.upsert_mapping(
        ctx,
        store_id,
        body.store_product_id,
        body.business_product_id,
        store_variant_id=body.store_variant_id,
    )
    return ApiResponse.success(mapping.to_dict())
