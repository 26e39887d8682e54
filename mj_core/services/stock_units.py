"""
库存单元登记服务：入库、查询、释放预占、退货入库
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from mj_core.config import get_settings
from mj_core.models import StockUnit, PlacementState, Order
from mj_core.models.base import utcnow
from mj_core.utils.errors import ConflictError, NotFoundError, ValidationError
from .auth_service import CallerContext
from .base import BaseService, RepositoryMixin
from .locations import ensure_business
from .order_status import RETURN_RECEIVABLE_STATUSES


async def release_units_for_order(session: AsyncSession, order_id: str, updated_by: Optional[str] = None) -> int:
    """释放订单预占（仅限未发出的单元），单元回到可拣状态"""
    stmt = (
        update(StockUnit)
        .where(
            StockUnit.order_id == order_id,
            StockUnit.placement_state == PlacementState.OUTBOUND
        )
        .values(
            order_id=None,
            store_id=None,
            placement_state=PlacementState.AVAILABLE,
            updated_at=utcnow(),
            updated_by=updated_by
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount


async def move_order_units(
    session: AsyncSession,
    order_id: str,
    from_state: PlacementState,
    to_state: PlacementState,
    updated_by: Optional[str] = None
) -> int:
    """订单名下单元整体切换放置状态（发货 / 撤销发货）"""
    stmt = (
        update(StockUnit)
        .where(
            StockUnit.order_id == order_id,
            StockUnit.placement_state == from_state
        )
        .values(placement_state=to_state, updated_at=utcnow(), updated_by=updated_by)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount


def _normalize_lines(lines: Iterable[Any]) -> List[Tuple[str, int]]:
    normalized = []
    for line in lines:
        if isinstance(line, dict):
            product_id, quantity = line.get("product_id"), line.get("quantity")
        else:
            product_id, quantity = line
        if not product_id:
            raise ValidationError(code="MISSING_REQUIRED_FIELDS", detail="Missing required fields: product_id")
        if not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(
                code="INVALID_QUANTITY",
                detail=f"Quantity for {product_id} must be a positive integer"
            )
        normalized.append((str(product_id), quantity))
    return normalized


class StockUnitService(BaseService, RepositoryMixin):
    """库存单元服务"""

    def __init__(self, db_manager=None):
        super().__init__(db_manager)
        self.batch_write_limit = get_settings().batch_write_limit

    async def receive_units(
        self,
        ctx: CallerContext,
        business_id: str,
        lines: Iterable[Any],
        grn_ref: Optional[str] = None,
    ) -> List[StockUnit]:
        """入库：每件实物生成一个单元，状态 inbound，无库位"""
        ctx.require_business(business_id)
        normalized = _normalize_lines(lines)
        if not normalized:
            raise ValidationError(code="EMPTY_BATCH", detail="At least one line is required")

        total = sum(quantity for _, quantity in normalized)
        if total > self.batch_write_limit:
            raise ValidationError(
                code="BATCH_TOO_LARGE",
                detail=f"Cannot receive more than {self.batch_write_limit} units at once (got {total})",
                limit=self.batch_write_limit
            )

        async def _receive(session: AsyncSession) -> List[StockUnit]:
            await ensure_business(session, business_id)

            received_at = utcnow()
            units = [
                StockUnit(
                    id=uuid4().hex,
                    business_id=business_id,
                    product_id=product_id,
                    placement_state=PlacementState.INBOUND,
                    grn_ref=grn_ref,
                    created_at=received_at,
                    updated_at=received_at,
                    updated_by=ctx.caller_id,
                )
                for product_id, quantity in normalized
                for _ in range(quantity)
            ]
            session.add_all(units)
            await session.flush()

            self.logger.info("Units received", business_id=business_id, grn_ref=grn_ref, count=len(units))
            return units

        return await self.execute_with_transaction(_receive)

    async def list_units(
        self,
        ctx: CallerContext,
        business_id: str,
        product_id: Optional[str] = None,
        placement_state: Optional[PlacementState] = None,
        order_id: Optional[str] = None,
        shelf_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[StockUnit]:
        """按条件列出业务下的库存单元（FIFO 顺序）"""
        ctx.require_business(business_id)

        async def _list(session: AsyncSession) -> List[StockUnit]:
            stmt = select(StockUnit).where(StockUnit.business_id == business_id)
            if product_id is not None:
                stmt = stmt.where(StockUnit.product_id == product_id)
            if placement_state is not None:
                stmt = stmt.where(StockUnit.placement_state == placement_state)
            if order_id is not None:
                stmt = stmt.where(StockUnit.order_id == order_id)
            if shelf_id is not None:
                stmt = stmt.where(StockUnit.shelf_id == shelf_id)
            stmt = stmt.order_by(StockUnit.created_at, StockUnit.id).offset(offset).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self.execute_with_session(_list)

    async def placement_summary(
        self,
        ctx: CallerContext,
        business_id: str,
        product_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """按 placement_id 汇总可拣单元数量"""
        ctx.require_business(business_id)

        async def _summary(session: AsyncSession) -> List[Dict[str, Any]]:
            stmt = (
                select(
                    StockUnit.placement_id,
                    StockUnit.product_id,
                    StockUnit.warehouse_id,
                    StockUnit.zone_id,
                    StockUnit.rack_id,
                    StockUnit.shelf_id,
                    func.count(StockUnit.id).label("quantity"),
                )
                .where(
                    StockUnit.business_id == business_id,
                    StockUnit.placement_state == PlacementState.AVAILABLE,
                    StockUnit.order_id.is_(None)
                )
                .group_by(
                    StockUnit.placement_id,
                    StockUnit.product_id,
                    StockUnit.warehouse_id,
                    StockUnit.zone_id,
                    StockUnit.rack_id,
                    StockUnit.shelf_id,
                )
                .order_by(StockUnit.placement_id)
            )
            if product_id is not None:
                stmt = stmt.where(StockUnit.product_id == product_id)
            result = await session.execute(stmt)
            return [dict(row._mapping) for row in result]

        return await self.execute_with_session(_summary)

    async def release_order_units(self, ctx: CallerContext, order_id: str) -> int:
        """显式释放订单的预占单元（发货前）"""

        async def _release(session: AsyncSession) -> int:
            order = await self.get_by_id(session, Order, order_id)
            if order is None:
                raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")
            ctx.require_store(order.store_id)

            released = await release_units_for_order(session, order_id, ctx.caller_id)
            order.pickup_ready = False
            order.picked_at = None
            await session.flush()

            self.logger.info("Order units released", order_id=order_id, store_id=order.store_id, count=released)
            return released

        return await self.execute_with_transaction(_release)

    async def receive_returned_units(self, ctx: CallerContext, business_id: str, order_id: str) -> int:
        """退货入库：已发出的单元回到 inbound，清空库位和预占，等待重新上架"""
        ctx.require_business(business_id)

        async def _receive_returned(session: AsyncSession) -> int:
            order = await self.get_by_id(session, Order, order_id)
            if order is None:
                raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")
            ctx.require_store(order.store_id)

            if order.custom_status not in RETURN_RECEIVABLE_STATUSES:
                raise ConflictError(
                    code="ORDER_NOT_RETURNED",
                    detail=f"Order {order_id} is '{order.custom_status.value}', returned stock cannot be received",
                    current_status=order.custom_status.value
                )

            stmt = (
                update(StockUnit)
                .where(
                    StockUnit.business_id == business_id,
                    StockUnit.order_id == order_id,
                    StockUnit.placement_state == PlacementState.DISPATCHED
                )
                .values(
                    order_id=None,
                    store_id=None,
                    placement_state=PlacementState.INBOUND,
                    warehouse_id=None,
                    zone_id=None,
                    rack_id=None,
                    shelf_id=None,
                    placement_id=None,
                    updated_at=utcnow(),
                    updated_by=ctx.caller_id
                )
                .execution_options(synchronize_session=False)
            )
            count = (await session.execute(stmt)).rowcount

            self.logger.info("Returned units received", business_id=business_id, order_id=order_id, count=count)
            return count

        return await self.execute_with_transaction(_receive_returned)
