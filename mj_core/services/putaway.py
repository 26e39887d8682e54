"""
上架服务：把一批库存单元原子地移动到一个已校验的层板
"""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mj_core.config import get_settings
from mj_core.models import StockUnit, PlacementState
from mj_core.models.base import utcnow
from mj_core.utils.errors import ConflictError, MissingUnitsError, ValidationError
from .auth_service import CallerContext
from .base import BaseService, RepositoryMixin
from .locations import LocationHierarchyValidator, ensure_business


def build_placement_id(product_id: str, shelf_id: str) -> str:
    """同一商品在同一层板上的分组键"""
    return f"{product_id}_{shelf_id}"


def dedupe_ids(ids: List[str]) -> List[str]:
    """去重并保持首次出现的顺序"""
    return list(dict.fromkeys(ids))


class PutAwayService(BaseService, RepositoryMixin):
    """上架服务"""

    def __init__(self, db_manager=None):
        super().__init__(db_manager)
        self.validator = LocationHierarchyValidator()
        self.batch_write_limit = get_settings().batch_write_limit

    def _validate_request(
        self,
        business_id: Optional[str],
        warehouse_id: Optional[str],
        zone_id: Optional[str],
        rack_id: Optional[str],
        shelf_id: Optional[str],
        unit_ids: Optional[List[str]],
    ) -> List[str]:
        self.validate_required_fields(
            {
                "business_id": business_id,
                "warehouse_id": warehouse_id,
                "zone_id": zone_id,
                "rack_id": rack_id,
                "shelf_id": shelf_id,
            },
            ["business_id", "warehouse_id", "zone_id", "rack_id", "shelf_id"]
        )

        if not isinstance(unit_ids, list) or not unit_ids:
            raise ValidationError(code="INVALID_UNIT_IDS", detail="unit_ids must be a non-empty array")
        if any(not isinstance(unit_id, str) or not unit_id for unit_id in unit_ids):
            raise ValidationError(code="INVALID_UNIT_IDS", detail="unit_ids must contain non-empty strings")

        # 上限按原始请求计算，在任何查询之前拒绝
        if len(unit_ids) > self.batch_write_limit:
            raise ValidationError(
                code="BATCH_TOO_LARGE",
                detail=f"Cannot put away more than {self.batch_write_limit} units at once",
                limit=self.batch_write_limit
            )

        return dedupe_ids(unit_ids)

    async def put_away(
        self,
        ctx: CallerContext,
        business_id: str,
        warehouse_id: str,
        zone_id: str,
        rack_id: str,
        shelf_id: str,
        unit_ids: List[str],
    ) -> int:
        """上架，返回移动的单元数

        先校验整条库位链路，再取出全部单元；任何单元缺失都整体失败，
        全部校验通过后在一个事务内更新。
        """
        ids = self._validate_request(business_id, warehouse_id, zone_id, rack_id, shelf_id, unit_ids)
        ctx.require_business(business_id)

        async def _put_away(session: AsyncSession) -> int:
            await ensure_business(session, business_id)
            await self.validator.validate(session, business_id, warehouse_id, zone_id, rack_id, shelf_id)

            stmt = (
                select(StockUnit)
                .where(StockUnit.business_id == business_id, StockUnit.id.in_(ids))
                .with_for_update()
            )
            units = {unit.id: unit for unit in (await session.execute(stmt)).scalars()}

            missing = [unit_id for unit_id in ids if unit_id not in units]
            if missing:
                raise MissingUnitsError(missing)

            reserved = [unit_id for unit_id in ids if units[unit_id].order_id is not None]
            if reserved:
                raise ConflictError(
                    code="UNITS_RESERVED",
                    detail=f"{len(reserved)} unit(s) are reserved for orders and cannot be moved",
                    unit_ids=reserved
                )

            now = utcnow()
            for unit in units.values():
                unit.warehouse_id = warehouse_id
                unit.zone_id = zone_id
                unit.rack_id = rack_id
                unit.shelf_id = shelf_id
                unit.placement_id = build_placement_id(unit.product_id, shelf_id)
                # 换架后的单元同样回到可拣状态
                unit.placement_state = PlacementState.AVAILABLE
                unit.updated_at = now
                unit.updated_by = ctx.caller_id
            await session.flush()

            self.logger.info(
                "Put-away committed",
                business_id=business_id,
                shelf_id=shelf_id,
                count=len(units),
                requested=len(unit_ids)
            )
            return len(units)

        return await self.execute_with_transaction(_put_away)
