"""
拣货分配引擎

按订单行解析业务库存商品，按 FIFO 选取最早入库的可拣单元，整单全有或全无地预占。
预占使用比较并设置（order_id 仍为空才写入），并发抢占失败按库存不足处理。
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mj_core.models import Order, Store, StockUnit, PlacementState
from mj_core.models.base import utcnow
from mj_core.utils.errors import (
    ConflictError, InsufficientStockError, MissingUnitsError, NotFoundError,
    UnmappedProductError, ValidationError
)
from .auth_service import CallerContext
from .base import BaseService, RepositoryMixin
from .order_status import PICKABLE_STATUSES
from .product_mapping import ProductMappingService
from .putaway import dedupe_ids


@dataclass
class LineAllocation:
    """单个订单行的分配结果"""
    product_ref: str
    product_id: str
    quantity: int
    units: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_ref": self.product_ref,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "units": self.units,
        }


@dataclass
class AllocationPlan:
    """订单分配方案（预览时不预占）"""
    order_id: str
    store_id: str
    business_id: str
    lines: List[LineAllocation] = field(default_factory=list)
    reserved: bool = False

    @property
    def unit_ids(self) -> List[str]:
        return [unit["id"] for line in self.lines for unit in line.units]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "store_id": self.store_id,
            "business_id": self.business_id,
            "reserved": self.reserved,
            "lines": [line.to_dict() for line in self.lines],
        }


def _unit_summary(unit: StockUnit) -> Dict[str, Any]:
    return {
        "id": unit.id,
        "product_id": unit.product_id,
        "warehouse_id": unit.warehouse_id,
        "zone_id": unit.zone_id,
        "rack_id": unit.rack_id,
        "shelf_id": unit.shelf_id,
        "placement_id": unit.placement_id,
        "created_at": unit.created_at.isoformat() if unit.created_at else None,
    }


def _product_ref(item: Dict[str, Any]) -> str:
    product_id = item.get("product_id")
    variant_id = item.get("variant_id")
    return f"{product_id}:{variant_id}" if variant_id not in (None, "") else str(product_id)


class AllocationService(BaseService, RepositoryMixin):
    """拣货分配服务"""

    def __init__(self, db_manager=None):
        super().__init__(db_manager)
        self.mappings = ProductMappingService(self.db_manager)

    async def _load_order(self, session: AsyncSession, ctx: CallerContext, order_id: str):
        order = await self.get_by_id(session, Order, order_id)
        if order is None:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")
        ctx.require_store(order.store_id)

        store = await self.get_by_id(session, Store, order.store_id)
        if store is None:
            raise NotFoundError(code="STORE_NOT_FOUND", resource=f"Store {order.store_id}")
        ctx.require_business(store.business_id)
        return order, store

    async def _resolve_lines(self, session: AsyncSession, order: Order) -> List[LineAllocation]:
        """解析订单行；任一商品未映射则整单失败"""
        lines = []
        for item in order.line_items:
            try:
                quantity = int(item.get("quantity") or 0)
            except (TypeError, ValueError):
                raise ValidationError(
                    code="INVALID_QUANTITY",
                    detail=f"Quantity for {_product_ref(item)} must be a positive integer"
                )
            if quantity <= 0:
                continue
            product_ref = _product_ref(item)
            product_id = await self.mappings.resolve(
                session, order.store_id, item.get("product_id"), item.get("variant_id")
            )
            if product_id is None:
                raise UnmappedProductError(product_ref)
            lines.append(LineAllocation(product_ref=product_ref, product_id=product_id, quantity=quantity))

        if not lines:
            raise ValidationError(code="ORDER_HAS_NO_ITEMS", detail=f"Order {order.id} has no line items to pick")
        return lines

    async def _select_candidates(
        self,
        session: AsyncSession,
        business_id: str,
        product_id: str,
        limit: int,
        lock: bool = True
    ) -> List[StockUnit]:
        """FIFO 候选：同商品、可拣、未预占，按入库时间升序"""
        stmt = (
            select(StockUnit)
            .where(
                StockUnit.business_id == business_id,
                StockUnit.product_id == product_id,
                StockUnit.placement_state == PlacementState.AVAILABLE,
                StockUnit.order_id.is_(None)
            )
            .order_by(StockUnit.created_at, StockUnit.id)
            .limit(limit)
        )
        if lock:
            stmt = stmt.with_for_update(skip_locked=True)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def _build_plan(
        self,
        session: AsyncSession,
        order: Order,
        store: Store,
        lock: bool = True
    ) -> AllocationPlan:
        lines = await self._resolve_lines(session, order)

        # 同一库存商品的多个订单行共用一次 FIFO 查询，保证选出的单元互不重叠
        needed: "OrderedDict[str, int]" = OrderedDict()
        for line in lines:
            needed[line.product_id] = needed.get(line.product_id, 0) + line.quantity

        for product_id, total in needed.items():
            candidates = await self._select_candidates(session, store.business_id, product_id, total, lock)
            if len(candidates) < total:
                failing = next(line for line in lines if line.product_id == product_id)
                raise InsufficientStockError(failing.product_ref, total, len(candidates))

            cursor = 0
            for line in lines:
                if line.product_id != product_id:
                    continue
                line.units = [_unit_summary(unit) for unit in candidates[cursor:cursor + line.quantity]]
                cursor += line.quantity

        return AllocationPlan(
            order_id=order.id,
            store_id=order.store_id,
            business_id=store.business_id,
            lines=lines,
        )

    async def _claim(
        self,
        session: AsyncSession,
        ctx: CallerContext,
        order: Order,
        business_id: str,
        lines: List[LineAllocation],
    ) -> None:
        """比较并设置：只有仍未预占且可拣的单元才会被写入

        任一商品实际写入数量不足即抛出 InsufficientStockError，外层事务整体回滚。
        """
        by_product: "OrderedDict[str, List[str]]" = OrderedDict()
        refs: Dict[str, str] = {}
        for line in lines:
            by_product.setdefault(line.product_id, []).extend(unit["id"] for unit in line.units)
            refs.setdefault(line.product_id, line.product_ref)

        now = utcnow()
        for product_id, unit_ids in by_product.items():
            stmt = (
                update(StockUnit)
                .where(
                    StockUnit.id.in_(unit_ids),
                    StockUnit.business_id == business_id,
                    StockUnit.product_id == product_id,
                    StockUnit.order_id.is_(None),
                    StockUnit.placement_state == PlacementState.AVAILABLE
                )
                .values(
                    order_id=order.id,
                    store_id=order.store_id,
                    placement_state=PlacementState.OUTBOUND,
                    updated_at=now,
                    updated_by=ctx.caller_id
                )
                .execution_options(synchronize_session=False)
            )
            claimed = (await session.execute(stmt)).rowcount
            if claimed != len(unit_ids):
                self.logger.warning(
                    "Reservation race lost",
                    order_id=order.id,
                    product_id=product_id,
                    needed=len(unit_ids),
                    claimed=claimed
                )
                raise InsufficientStockError(refs[product_id], len(unit_ids), claimed)

        order.pickup_ready = True
        order.picked_at = now
        await session.flush()

    def _ensure_pickable(self, order: Order) -> None:
        if order.pickup_ready:
            raise ConflictError(
                code="ORDER_ALREADY_PICKED",
                detail=f"Order {order.id} has already been picked"
            )
        if order.custom_status not in PICKABLE_STATUSES:
            raise ConflictError(
                code="ORDER_NOT_PICKABLE",
                detail=f"Order {order.id} in '{order.custom_status.value}' status cannot be picked",
                current_status=order.custom_status.value
            )

    async def preview_allocation(self, ctx: CallerContext, order_id: str) -> AllocationPlan:
        """预览 FIFO 分配结果，不预占"""

        async def _preview(session: AsyncSession) -> AllocationPlan:
            order, store = await self._load_order(session, ctx, order_id)
            return await self._build_plan(session, order, store, lock=False)

        return await self.execute_with_session(_preview)

    async def allocate_order(self, ctx: CallerContext, order_id: str) -> AllocationPlan:
        """解析 + FIFO 选取 + 原子预占"""

        async def _allocate(session: AsyncSession) -> AllocationPlan:
            order, store = await self._load_order(session, ctx, order_id)
            self._ensure_pickable(order)

            plan = await self._build_plan(session, order, store)
            await self._claim(session, ctx, order, store.business_id, plan.lines)
            plan.reserved = True

            self.logger.info(
                "Order allocated",
                order_id=order.id,
                store_id=order.store_id,
                business_id=store.business_id,
                units=len(plan.unit_ids)
            )
            return plan

        return await self.execute_with_transaction(_allocate)

    async def confirm_pick(self, ctx: CallerContext, order_id: str, unit_ids: List[str]) -> AllocationPlan:
        """按调用方给出的单元（通常来自预览）确认拣货

        给出的单元必须恰好覆盖订单行需要的数量，预占同样走比较并设置。
        """
        if not isinstance(unit_ids, list) or not unit_ids:
            raise ValidationError(code="INVALID_UNIT_IDS", detail="unit_ids must be a non-empty array")
        ids = dedupe_ids(unit_ids)

        async def _confirm(session: AsyncSession) -> AllocationPlan:
            order, store = await self._load_order(session, ctx, order_id)
            self._ensure_pickable(order)
            lines = await self._resolve_lines(session, order)

            stmt = select(StockUnit).where(StockUnit.business_id == store.business_id, StockUnit.id.in_(ids))
            units = {unit.id: unit for unit in (await session.execute(stmt)).scalars()}
            missing = [unit_id for unit_id in ids if unit_id not in units]
            if missing:
                raise MissingUnitsError(missing)

            supplied: Dict[str, List[StockUnit]] = {}
            for unit_id in ids:
                unit = units[unit_id]
                supplied.setdefault(unit.product_id, []).append(unit)

            needed: Dict[str, int] = {}
            for line in lines:
                needed[line.product_id] = needed.get(line.product_id, 0) + line.quantity

            if {k: len(v) for k, v in supplied.items()} != needed:
                raise ValidationError(
                    code="PICK_MISMATCH",
                    detail="Supplied units do not match the order's line items",
                    needed=needed,
                    supplied={k: len(v) for k, v in supplied.items()}
                )

            for product_id, product_units in supplied.items():
                cursor = 0
                for line in lines:
                    if line.product_id != product_id:
                        continue
                    line.units = [_unit_summary(unit) for unit in product_units[cursor:cursor + line.quantity]]
                    cursor += line.quantity

            await self._claim(session, ctx, order, store.business_id, lines)

            self.logger.info(
                "Order pick confirmed",
                order_id=order.id,
                store_id=order.store_id,
                business_id=store.business_id,
                units=len(ids)
            )
            return AllocationPlan(
                order_id=order.id,
                store_id=order.store_id,
                business_id=store.business_id,
                lines=lines,
                reserved=True,
            )

        return await self.execute_with_transaction(_confirm)
