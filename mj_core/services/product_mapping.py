"""
商品映射服务：店铺商品/变体 → 业务库存商品
"""
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mj_core.models import ProductMapping, Store
from mj_core.utils.errors import NotFoundError
from .auth_service import CallerContext
from .base import BaseService, RepositoryMixin


class ProductMappingService(BaseService, RepositoryMixin):
    """商品映射服务"""

    async def resolve(
        self,
        session: AsyncSession,
        store_id: str,
        product_id: str,
        variant_id: Optional[str] = None
    ) -> Optional[str]:
        """解析店铺商品为业务库存商品ID

        先按变体精确匹配，再回退到整个商品的映射；都没有时返回 None。
        """
        variant_key = str(variant_id) if variant_id not in (None, "") else ""
        candidates = [variant_key, ""] if variant_key else [""]

        stmt = select(ProductMapping).where(
            ProductMapping.store_id == store_id,
            ProductMapping.store_product_id == str(product_id),
            ProductMapping.store_variant_id.in_(candidates)
        )
        result = await session.execute(stmt)
        by_variant: Dict[str, ProductMapping] = {m.store_variant_id: m for m in result.scalars()}

        for key in candidates:
            if key in by_variant:
                return by_variant[key].business_product_id
        return None

    async def upsert_mapping(
        self,
        ctx: CallerContext,
        store_id: str,
        store_product_id: str,
        business_product_id: str,
        store_variant_id: Optional[str] = None
    ) -> ProductMapping:
        """创建或更新映射"""
        ctx.require_store(store_id)

        async def _upsert(session: AsyncSession) -> ProductMapping:
            store = await self.get_by_id(session, Store, store_id)
            if store is None:
                raise NotFoundError(code="STORE_NOT_FOUND", resource=f"Store {store_id}")
            ctx.require_business(store.business_id)

            variant_key = "" if store_variant_id in (None, "") else str(store_variant_id)
            stmt = select(ProductMapping).where(
                ProductMapping.store_id == store_id,
                ProductMapping.store_product_id == str(store_product_id),
                ProductMapping.store_variant_id == variant_key
            )
            mapping = (await session.execute(stmt)).scalar_one_or_none()

            if mapping is None:
                mapping = await self.create(session, ProductMapping, {
                    "store_id": store_id,
                    "store_product_id": str(store_product_id),
                    "store_variant_id": variant_key,
                    "business_id": store.business_id,
                    "business_product_id": business_product_id,
                })
            else:
                mapping.business_product_id = business_product_id
                await session.flush()

            self.logger.info(
                "Product mapping saved",
                store_id=store_id,
                store_product_id=store_product_id,
                store_variant_id=variant_key or None,
                business_product_id=business_product_id
            )
            return mapping

        return await self.execute_with_transaction(_upsert)
