"""
订单履约服务

单个订单的状态变更，以及按店铺分区并发执行的批量操作：
更新状态、发货、分配运单号、预约退货、快递状态回传、导出。
"""
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mj_core.config import get_settings
from mj_core.models import Order, OrderStatusLog, Store, CustomStatus, PlacementState
from mj_core.utils.errors import ExternalServiceError, MajimeException, NotFoundError, ValidationError
from mj_core.utils.logger import LogContext
from .auth_service import CallerContext
from .base import BaseService, RepositoryMixin
from .courier import (
    COURIER_NAME, DelhiveryClient, DispatchQueueClient, build_shipment,
    get_courier_client, get_dispatch_client
)
from .fanout import BatchResult, FanOutSummary, fan_out
from .order_status import (
    CARRIER_STATUSES, MANUAL_STATUS_REMARKS, QC_STATUSES, QC_SUBMITTED_REMARKS, REFUND_METHODS,
    RETURN_BOOKING_TARGETS, parse_status, refund_remarks, revert_remarks, validate_revert,
    validate_transition
)
from .putaway import dedupe_ids
from .stock_units import move_order_units, release_units_for_order

OrderRef = Tuple[str, str]  # (order_id, store_id)


class OrdersService(BaseService, RepositoryMixin):
    """订单履约服务"""

    def __init__(
        self,
        db_manager=None,
        courier: Optional[DelhiveryClient] = None,
        dispatcher: Optional[DispatchQueueClient] = None,
    ):
        super().__init__(db_manager)
        self._courier = courier
        self._dispatcher = dispatcher
        self.batch_write_limit = get_settings().batch_write_limit

    @property
    def courier(self) -> DelhiveryClient:
        """快递客户端（未注入时使用应用级单例）"""
        if self._courier is None:
            self._courier = get_courier_client()
        return self._courier

    @property
    def dispatcher(self) -> DispatchQueueClient:
        """发货队列客户端（未注入时使用应用级单例）"""
        if self._dispatcher is None:
            self._dispatcher = get_dispatch_client()
        return self._dispatcher

    # ========== 内部工具 ==========

    def _parse_status(self, value: Any) -> CustomStatus:
        try:
            return parse_status(value)
        except ValueError:
            raise ValidationError(code="INVALID_STATUS", detail=f"Unknown order status: {value}")

    def _validate_order_ids(self, order_ids: Any) -> List[str]:
        if not isinstance(order_ids, list) or not order_ids:
            raise ValidationError(code="INVALID_ORDER_IDS", detail="order_ids must be a non-empty array")
        if len(order_ids) > self.batch_write_limit:
            raise ValidationError(
                code="BATCH_TOO_LARGE",
                detail=f"Cannot process more than {self.batch_write_limit} orders at once",
                limit=self.batch_write_limit
            )
        return dedupe_ids([str(order_id) for order_id in order_ids])

    async def _load_order(self, session: AsyncSession, ctx: CallerContext, order_id: str) -> Order:
        order = await self.get_by_id(session, Order, order_id)
        if order is None:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")
        ctx.require_store(order.store_id)
        return order

    async def _load_partition(self, session: AsyncSession, store_id: str, order_ids: List[str]) -> List[Order]:
        """按请求顺序取出分区内订单"""
        stmt = select(Order).where(Order.store_id == store_id, Order.id.in_(order_ids))
        orders = {order.id: order for order in (await session.execute(stmt)).scalars()}
        missing = [order_id for order_id in order_ids if order_id not in orders]
        if missing:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {missing[0]}", order_ids=missing)
        return [orders[order_id] for order_id in order_ids]

    async def _resolve_partitions(self, order_ids: List[str]) -> Tuple[List[OrderRef], List[str]]:
        """订单ID → 所属店铺；找不到的订单单独列出"""

        async def _resolve(session: AsyncSession):
            stmt = select(Order.id, Order.store_id).where(Order.id.in_(order_ids))
            owners = {row.id: row.store_id for row in await session.execute(stmt)}
            found = [(order_id, owners[order_id]) for order_id in order_ids if order_id in owners]
            not_found = [order_id for order_id in order_ids if order_id not in owners]
            return found, not_found

        return await self.execute_with_session(_resolve)

    def _append_log(self, order: Order, status: CustomStatus, remarks: str, caller_id: Optional[str]) -> None:
        order.status_logs.append(OrderStatusLog(status=status.value, remarks=remarks, created_by=caller_id))

    async def _transition(
        self,
        session: AsyncSession,
        order: Order,
        new_status: CustomStatus,
        remarks: str,
        caller_id: Optional[str],
    ) -> None:
        """校验并执行正向转换，连带库存单元的状态变化"""
        validate_transition(order.custom_status, new_status)

        if new_status == CustomStatus.CANCELLED:
            released = await release_units_for_order(session, order.id, caller_id)
            order.pickup_ready = False
            order.picked_at = None
            if released:
                self.logger.info("Released units of cancelled order", order_id=order.id, count=released)
        elif new_status == CustomStatus.DISPATCHED:
            await move_order_units(
                session, order.id, PlacementState.OUTBOUND, PlacementState.DISPATCHED, caller_id
            )

        order.custom_status = new_status
        self._append_log(order, new_status, remarks, caller_id)
        await session.flush()

    async def _fan_out_orders(self, ctx: CallerContext, order_ids: Any, operation, on_settled=None) -> FanOutSummary:
        ids = self._validate_order_ids(order_ids)
        found, not_found = await self._resolve_partitions(ids)

        async def _guarded(store_id: str, refs: List[OrderRef]):
            with LogContext(store_id=store_id):
                # 分区级权限校验，失败只影响本分区
                ctx.require_store(store_id)
                return await operation(store_id, [order_id for order_id, _ in refs])

        return await fan_out(found, lambda ref: ref[1], _guarded, on_settled=on_settled, not_found=not_found)

    # ========== 订单导入 ==========

    async def ingest_order(self, ctx: CallerContext, store_id: str, payload: Dict[str, Any]) -> Tuple[Order, bool]:
        """保存新订单（状态 New）；重复导入直接返回已存在的订单"""
        ctx.require_store(store_id)
        if not isinstance(payload, dict) or payload.get("id") in (None, ""):
            raise ValidationError(code="MISSING_REQUIRED_FIELDS", detail="Missing required fields: id")
        order_id = str(payload["id"])

        async def _ingest(session: AsyncSession) -> Tuple[Order, bool]:
            if await self.get_by_id(session, Store, store_id) is None:
                raise NotFoundError(code="STORE_NOT_FOUND", resource=f"Store {store_id}")

            existing = await self.get_by_id(session, Order, order_id)
            if existing is not None:
                if existing.store_id != store_id:
                    raise ValidationError(
                        code="ORDER_STORE_MISMATCH",
                        detail=f"Order {order_id} belongs to another store"
                    )
                return existing, False

            order = Order(
                id=order_id,
                store_id=store_id,
                name=payload.get("name"),
                custom_status=CustomStatus.NEW,
                raw=payload,
                status_logs=[
                    OrderStatusLog(
                        status=CustomStatus.NEW.value,
                        remarks="This order was newly created on the store",
                        created_by=ctx.caller_id,
                    )
                ],
            )
            session.add(order)
            await session.flush()
            self.logger.info("Order ingested", order_id=order_id, store_id=store_id)
            return order, True

        return await self.execute_with_transaction(_ingest)

    async def get_order(self, ctx: CallerContext, order_id: str) -> Order:
        """读取订单（含状态日志）"""

        async def _get(session: AsyncSession) -> Order:
            return await self._load_order(session, ctx, order_id)

        return await self.execute_with_session(_get)

    # ========== 单个订单 ==========

    async def update_status(self, ctx: CallerContext, order_id: str, status: Any) -> Order:
        """手动设置状态（仅限可手动设置的状态，仍需满足转换规则）"""
        target = self._parse_status(status)
        if target not in MANUAL_STATUS_REMARKS:
            raise ValidationError(
                code="INVALID_STATUS",
                detail=f"Status '{target.value}' cannot be set manually"
            )

        async def _update(session: AsyncSession) -> Order:
            order = await self._load_order(session, ctx, order_id)
            previous = order.custom_status
            await self._transition(session, order, target, MANUAL_STATUS_REMARKS[target], ctx.caller_id)
            self.logger.info(
                "Order status updated",
                order_id=order.id,
                store_id=order.store_id,
                from_status=previous.value,
                to_status=target.value
            )
            return order

        return await self.execute_with_transaction(_update)

    async def revert(self, ctx: CallerContext, order_id: str) -> Order:
        """撤销到上一个业务状态，并清理对应的物流字段"""

        async def _revert(session: AsyncSession) -> Order:
            order = await self._load_order(session, ctx, order_id)
            previous = order.custom_status
            target = validate_revert(previous)

            if target == CustomStatus.CONFIRMED:
                order.awb = None
                order.courier = None
                if previous == CustomStatus.DISPATCHED:
                    # 已发出的单元回到预占状态
                    await move_order_units(
                        session, order.id, PlacementState.DISPATCHED, PlacementState.OUTBOUND, ctx.caller_id
                    )
            elif previous in (CustomStatus.DTO_REQUESTED, CustomStatus.DTO_BOOKED):
                order.awb_reverse = None
                order.courier_reverse = None

            order.custom_status = target
            self._append_log(order, target, revert_remarks(target), ctx.caller_id)
            await session.flush()

            self.logger.info(
                "Order status reverted",
                order_id=order.id,
                store_id=order.store_id,
                from_status=previous.value,
                to_status=target.value
            )
            return order

        return await self.execute_with_transaction(_revert)

    async def apply_carrier_status(
        self,
        ctx: CallerContext,
        order_id: str,
        status: Any,
        remarks: Optional[str] = None,
    ) -> Order:
        """快递回传的状态（按正向转换规则校验）"""
        target = self._parse_carrier_status(status)

        async def _apply(session: AsyncSession) -> Order:
            order = await self._load_order(session, ctx, order_id)
            await self._transition(session, order, target, remarks or f"Carrier reported {target.value}", ctx.caller_id)
            return order

        return await self.execute_with_transaction(_apply)

    async def complete_qc(
        self,
        ctx: CallerContext,
        order_id: str,
        qc_statuses: Dict[str, str],
        video_path: Optional[str] = None,
    ) -> Order:
        """退货质检：记录每个订单行的质检结果，DTO Delivered → Pending Refunds

        qc_statuses 以订单行 id 为键，取值 QC Pass / QC Fail / Not Received。
        """
        if not isinstance(qc_statuses, dict) or not qc_statuses:
            raise ValidationError(code="INVALID_QC_STATUSES", detail="qc_statuses must be a non-empty object")
        invalid = sorted({str(value) for value in qc_statuses.values() if value not in QC_STATUSES})
        if invalid:
            raise ValidationError(
                code="INVALID_QC_STATUSES",
                detail=f"Unknown QC status: {', '.join(invalid)}",
                allowed=sorted(QC_STATUSES)
            )
        results = {str(key): value for key, value in qc_statuses.items()}

        async def _complete(session: AsyncSession) -> Order:
            order = await self._load_order(session, ctx, order_id)
            validate_transition(order.custom_status, CustomStatus.PENDING_REFUNDS)

            raw = dict(order.raw or {})
            raw["line_items"] = [
                {**item, "qc_status": results.get(str(item.get("id")))}
                for item in order.line_items
            ]
            if video_path:
                raw["unboxing_video_path"] = video_path
            order.raw = raw

            await self._transition(
                session, order, CustomStatus.PENDING_REFUNDS, QC_SUBMITTED_REMARKS, ctx.caller_id
            )
            self.logger.info(
                "Return QC submitted",
                order_id=order.id,
                store_id=order.store_id,
                passed=sum(1 for value in results.values() if value == "QC Pass")
            )
            return order

        return await self.execute_with_transaction(_complete)

    async def mark_refunded(
        self,
        ctx: CallerContext,
        order_id: str,
        amount: Optional[float] = None,
        method: str = "manual",
    ) -> Order:
        """记录退款完成：Pending Refunds → DTO Refunded"""
        if method not in REFUND_METHODS:
            raise ValidationError(code="INVALID_REFUND_METHOD", detail=f"Unknown refund method: {method}")
        if amount is not None and amount < 0:
            raise ValidationError(code="INVALID_REFUND_AMOUNT", detail="Refund amount cannot be negative")

        async def _refund(session: AsyncSession) -> Order:
            order = await self._load_order(session, ctx, order_id)
            remarks = refund_remarks(method, amount, (order.raw or {}).get("currency"))
            await self._transition(session, order, CustomStatus.DTO_REFUNDED, remarks, ctx.caller_id)
            self.logger.info("Order refunded", order_id=order.id, store_id=order.store_id, method=method)
            return order

        return await self.execute_with_transaction(_refund)

    def _parse_carrier_status(self, status: Any) -> CustomStatus:
        target = self._parse_status(status)
        if target not in CARRIER_STATUSES:
            raise ValidationError(
                code="INVALID_STATUS",
                detail=f"Status '{target.value}' cannot be reported by a carrier"
            )
        return target

    # ========== 批量操作 ==========

    async def bulk_update_status(self, ctx: CallerContext, order_ids: Any, status: Any, on_settled=None) -> FanOutSummary:
        """批量手动设置状态；每个店铺一个事务，单个订单不合法则整个分区失败"""
        target = self._parse_status(status)
        if target not in MANUAL_STATUS_REMARKS:
            raise ValidationError(
                code="INVALID_STATUS",
                detail=f"Status '{target.value}' cannot be set manually"
            )

        async def _partition(store_id: str, ids: List[str]) -> int:
            async def _apply(session: AsyncSession) -> int:
                orders = await self._load_partition(session, store_id, ids)
                for order in orders:
                    await self._transition(session, order, target, MANUAL_STATUS_REMARKS[target], ctx.caller_id)
                return len(orders)

            count = await self.execute_with_transaction(_apply)
            self.logger.info("Partition status updated", store_id=store_id, status=target.value, count=count)
            return count

        return await self._fan_out_orders(ctx, order_ids, _partition, on_settled)

    async def bulk_carrier_status(self, ctx: CallerContext, updates: List[Dict[str, Any]], on_settled=None) -> FanOutSummary:
        """批量快递状态回传：updates = [{order_id, status, remarks?}]"""
        if not isinstance(updates, list) or not updates:
            raise ValidationError(code="INVALID_UPDATES", detail="updates must be a non-empty array")

        by_order: Dict[str, Tuple[CustomStatus, Optional[str]]] = {}
        for update in updates:
            order_id = str(update.get("order_id") or "")
            if not order_id:
                raise ValidationError(code="MISSING_REQUIRED_FIELDS", detail="Missing required fields: order_id")
            by_order[order_id] = (self._parse_carrier_status(update.get("status")), update.get("remarks"))

        async def _partition(store_id: str, ids: List[str]) -> int:
            async def _apply(session: AsyncSession) -> int:
                orders = await self._load_partition(session, store_id, ids)
                for order in orders:
                    target, remarks = by_order[order.id]
                    await self._transition(
                        session, order, target, remarks or f"Carrier reported {target.value}", ctx.caller_id
                    )
                return len(orders)

            return await self.execute_with_transaction(_apply)

        return await self._fan_out_orders(ctx, list(by_order), _partition, on_settled)

    async def dispatch(self, ctx: CallerContext, order_ids: Any, on_settled=None) -> FanOutSummary:
        """批量发货：Ready To Dispatch → Dispatched

        每个分区先校验、再投递履约队列，投递成功后才提交状态；
        外部调用期间不持有数据库事务。
        """

        async def _check(session: AsyncSession, store_id: str, ids: List[str]) -> None:
            for order in await self._load_partition(session, store_id, ids):
                validate_transition(order.custom_status, CustomStatus.DISPATCHED)

        async def _partition(store_id: str, ids: List[str]) -> int:
            await self.execute_with_session(_check, store_id, ids)
            await self.dispatcher.enqueue_dispatch(store_id, ids, ctx.caller_id)

            async def _apply(session: AsyncSession) -> int:
                orders = await self._load_partition(session, store_id, ids)
                for order in orders:
                    await self._transition(
                        session, order, CustomStatus.DISPATCHED, "This order was dispatched by the user", ctx.caller_id
                    )
                return len(orders)

            count = await self.execute_with_transaction(_apply)
            self.logger.info("Partition dispatched", store_id=store_id, count=count)
            return count

        return await self._fan_out_orders(ctx, order_ids, _partition, on_settled)

    async def _per_order_courier_partition(
        self,
        ctx: CallerContext,
        store_id: str,
        ids: List[str],
        target_for,
        book,
    ) -> BatchResult:
        """逐个订单调用快递；外部调用成功后才提交该订单

        target_for(order) 返回目标状态（不合法时抛出 InvalidTransitionError），
        book(order, awb) 在事务内写入物流字段并返回日志备注。
        """

        async def _prepare(session: AsyncSession):
            store = await self.get_by_id(session, Store, store_id)
            if store is None:
                raise NotFoundError(code="STORE_NOT_FOUND", resource=f"Store {store_id}")
            orders = await self._load_partition(session, store_id, ids)
            return store, orders

        store, orders = await self.execute_with_session(_prepare)

        failures: List[Dict[str, Any]] = []
        eligible: List[Order] = []
        for order in orders:
            try:
                target_for(order)
                eligible.append(order)
            except MajimeException as e:
                failures.append({"order_id": order.id, **e.to_dict()})

        waybills: List[str] = []
        if eligible:
            waybills = await self.courier.fetch_waybills(store.courier_api_key, len(eligible))

        succeeded = 0
        for order, waybill in zip(eligible, waybills):
            try:
                target = target_for(order)
                awb = await self.courier.create_shipment(
                    store.courier_api_key,
                    build_shipment(order, waybill, reverse=target != CustomStatus.READY_TO_DISPATCH),
                    store.pickup_name,
                )

                async def _commit(session: AsyncSession, order_id=order.id, awb=awb):
                    fresh = await self._load_partition(session, store_id, [order_id])
                    current = fresh[0]
                    new_status = target_for(current)
                    remarks = book(current, awb)
                    await self._transition(session, current, new_status, remarks, ctx.caller_id)

                await self.execute_with_transaction(_commit)
                succeeded += 1
            except MajimeException as e:
                failures.append({"order_id": order.id, **e.to_dict()})

        # 运单号不足时，剩余订单记为失败
        for order in eligible[len(waybills):]:
            shortage = ExternalServiceError(
                service="delhivery",
                detail=f"Courier returned {len(waybills)} waybills for {len(eligible)} orders",
                code="WAYBILL_UNAVAILABLE"
            )
            failures.append({"order_id": order.id, **shortage.to_dict()})

        if failures:
            self.logger.warning("Partition partially failed", store_id=store_id, succeeded=succeeded, failed=len(failures))
            return BatchResult(
                partition_key=store_id,
                succeeded=False,
                count=succeeded,
                error={
                    "code": "PARTITION_PARTIAL_FAILURE",
                    "detail": f"{len(failures)} of {len(orders)} orders failed",
                    "failed_orders": failures,
                },
            )
        return BatchResult(partition_key=store_id, succeeded=True, count=succeeded)

    async def assign_awb(self, ctx: CallerContext, order_ids: Any, on_settled=None) -> FanOutSummary:
        """批量分配运单号：Confirmed → Ready To Dispatch"""

        def _target(order: Order) -> CustomStatus:
            validate_transition(order.custom_status, CustomStatus.READY_TO_DISPATCH)
            return CustomStatus.READY_TO_DISPATCH

        def _book(order: Order, awb: str) -> str:
            order.awb = awb
            order.courier = COURIER_NAME
            return f"AWB {awb} was assigned with {COURIER_NAME}"

        async def _partition(store_id: str, ids: List[str]) -> BatchResult:
            return await self._per_order_courier_partition(ctx, store_id, ids, _target, _book)

        return await self._fan_out_orders(ctx, order_ids, _partition, on_settled)

    async def book_return(self, ctx: CallerContext, order_ids: Any, on_settled=None) -> FanOutSummary:
        """批量预约退货（逆向运单）：Delivered → DTO Requested，DTO Requested → DTO Booked"""

        def _target(order: Order) -> CustomStatus:
            target = RETURN_BOOKING_TARGETS.get(order.custom_status, CustomStatus.DTO_REQUESTED)
            validate_transition(order.custom_status, target)
            return target

        def _book(order: Order, awb: str) -> str:
            order.awb_reverse = awb
            order.courier_reverse = COURIER_NAME
            return f"Return was booked with {COURIER_NAME} (AWB {awb})"

        async def _partition(store_id: str, ids: List[str]) -> BatchResult:
            return await self._per_order_courier_partition(ctx, store_id, ids, _target, _book)

        return await self._fan_out_orders(ctx, order_ids, _partition, on_settled)

    async def export_orders(self, ctx: CallerContext, order_ids: Any, on_settled=None) -> FanOutSummary:
        """按店铺导出订单行（发货单/表格下载）"""

        async def _read(session: AsyncSession, store_id: str, ids: List[str]) -> List[Dict[str, Any]]:
            orders = await self._load_partition(session, store_id, ids)
            return [
                {
                    "order_id": order.id,
                    "name": order.name or "",
                    "store_id": order.store_id,
                    "status": order.custom_status.value,
                    "awb": order.awb or "",
                    "courier": order.courier or "",
                    "items": "; ".join(
                        f"{item.get('name') or item.get('sku') or item.get('product_id')} x {item.get('quantity', 1)}"
                        for item in order.line_items
                    ),
                }
                for order in orders
            ]

        async def _partition(store_id: str, ids: List[str]) -> BatchResult:
            rows = await self.execute_with_session(_read, store_id, ids)
            return BatchResult(partition_key=store_id, succeeded=True, count=len(rows), data=rows)

        return await self._fan_out_orders(ctx, order_ids, _partition, on_settled)
