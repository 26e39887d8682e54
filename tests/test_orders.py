"""
订单履约服务测试：单个订单状态变更与按店铺分区的批量操作
"""
import pytest

from mj_core.models import Order, StockUnit, PlacementState, CustomStatus
from mj_core.services import AllocationService, OrdersService
from mj_core.utils.errors import ForbiddenError, InvalidTransitionError, ValidationError


@pytest.fixture
def service(seeded, fake_courier, fake_dispatcher):
    return OrdersService(courier=fake_courier, dispatcher=fake_dispatcher)


def statuses(order):
    return [log.status for log in order.status_logs]


# ========== 订单导入 ==========

async def test_ingest_is_idempotent(ctx, service):
    payload = {"id": "1001", "name": "#1001", "line_items": [{"product_id": "p100", "variant_id": "v1", "quantity": 1}]}

    order, created = await service.ingest_order(ctx, "store-a", payload)
    again, created_again = await service.ingest_order(ctx, "store-a", {**payload, "name": "changed"})

    assert created is True
    assert created_again is False
    assert order.custom_status == CustomStatus.NEW
    assert again.name == "#1001"
    assert statuses(again) == ["New"]


async def test_ingest_rejects_order_of_other_store(ctx, service):
    await service.ingest_order(ctx, "store-a", {"id": "1001"})

    with pytest.raises(ValidationError) as exc_info:
        await service.ingest_order(ctx, "store-b", {"id": "1001"})

    assert exc_info.value.code == "ORDER_STORE_MISMATCH"


async def test_ingest_requires_store_access(ctx, service):
    with pytest.raises(ForbiddenError):
        await service.ingest_order(ctx, "store-x", {"id": "1001"})


# ========== 单个订单 ==========

async def test_manual_confirm_appends_log(ctx, service, make_order):
    await make_order("o-1")

    order = await service.update_status(ctx, "o-1", "Confirmed")

    assert order.custom_status == CustomStatus.CONFIRMED
    assert order.status_logs[-1].remarks == "This order was confirmed by the user"
    assert order.status_logs[-1].created_by == "user-1"


async def test_carrier_only_status_cannot_be_set_manually(ctx, service, make_order):
    await make_order("o-1", status=CustomStatus.OUT_FOR_DELIVERY)

    with pytest.raises(ValidationError) as exc_info:
        await service.update_status(ctx, "o-1", "Delivered")

    assert exc_info.value.code == "INVALID_STATUS"


async def test_illegal_manual_transition(ctx, service, make_order, fetch):
    await make_order("o-1")

    with pytest.raises(InvalidTransitionError):
        await service.update_status(ctx, "o-1", "Closed")

    order = await fetch(Order, "o-1")
    assert order.custom_status == CustomStatus.NEW
    assert statuses(order) == ["New"]


async def test_unknown_status_value(ctx, service, make_order):
    await make_order("o-1")

    with pytest.raises(ValidationError) as exc_info:
        await service.update_status(ctx, "o-1", "Shipped")

    assert exc_info.value.code == "INVALID_STATUS"


async def test_cancel_releases_reserved_units(ctx, service, make_units, make_order, fetch):
    ids = await make_units("SKU-RED-M", 1)
    await make_order("o-1", status=CustomStatus.CONFIRMED)
    await AllocationService().allocate_order(ctx, "o-1")

    order = await service.update_status(ctx, "o-1", "Cancelled")

    assert order.custom_status == CustomStatus.CANCELLED
    assert order.pickup_ready is False
    unit = await fetch(StockUnit, ids[0])
    assert unit.order_id is None
    assert unit.placement_state == PlacementState.AVAILABLE


async def test_revert_ready_to_dispatch_clears_awb(ctx, service, make_order):
    await make_order("o-1", status=CustomStatus.READY_TO_DISPATCH, awb="WB1", courier="Delhivery")

    order = await service.revert(ctx, "o-1")

    assert order.custom_status == CustomStatus.CONFIRMED
    assert order.awb is None
    assert order.courier is None
    assert order.status_logs[-1].remarks == "Order status reverted to Confirmed by user."


async def test_revert_dispatched_puts_units_back_outbound(ctx, service, make_units, make_order, fetch):
    await make_order("o-1", status=CustomStatus.DISPATCHED, awb="WB1", courier="Delhivery", pickup_ready=True)
    ids = await make_units("SKU-RED-M", 1, state=PlacementState.DISPATCHED, order_id="o-1", store_id="store-a")

    await service.revert(ctx, "o-1")

    unit = await fetch(StockUnit, ids[0])
    assert unit.placement_state == PlacementState.OUTBOUND
    assert unit.order_id == "o-1"


async def test_revert_return_booking_clears_reverse_awb(ctx, service, make_order):
    await make_order("o-1", status=CustomStatus.DTO_BOOKED, awb_reverse="RWB1", courier_reverse="Delhivery")

    order = await service.revert(ctx, "o-1")

    assert order.custom_status == CustomStatus.DELIVERED
    assert order.awb_reverse is None
    assert order.courier_reverse is None


async def test_revert_not_allowed_for_new(ctx, service, make_order):
    await make_order("o-1")

    with pytest.raises(InvalidTransitionError):
        await service.revert(ctx, "o-1")


async def test_carrier_status_follows_transitions(ctx, service, make_order):
    await make_order("o-1", status=CustomStatus.DISPATCHED)
    await make_order("o-2", status=CustomStatus.DELIVERED)

    order = await service.apply_carrier_status(ctx, "o-1", "In Transit")
    assert order.custom_status == CustomStatus.IN_TRANSIT
    assert order.status_logs[-1].remarks == "Carrier reported In Transit"

    with pytest.raises(InvalidTransitionError):
        await service.apply_carrier_status(ctx, "o-2", "In Transit")


# ========== 批量操作 ==========

async def test_bulk_status_partial_failure_across_stores(ctx, service, make_order, fetch):
    await make_order("a-1", store_id="store-a")
    await make_order("b-1", store_id="store-b")
    await make_order("b-2", store_id="store-b", status=CustomStatus.DELIVERED)
    await make_order("c-1", store_id="store-c")

    settled = []
    summary = await service.bulk_update_status(
        ctx, ["a-1", "b-1", "b-2", "c-1", "missing-1"], "Confirmed", on_settled=settled.append
    )

    assert sorted(r.partition_key for r in summary.succeeded) == ["store-a", "store-c"]
    assert [r.partition_key for r in summary.failed] == ["store-b"]
    assert summary.failed[0].error["code"] == "INVALID_TRANSITION"
    assert summary.not_found == ["missing-1"]
    assert summary.total_count == 2
    assert settled == [summary]

    assert (await fetch(Order, "a-1")).custom_status == CustomStatus.CONFIRMED
    assert (await fetch(Order, "c-1")).custom_status == CustomStatus.CONFIRMED
    # 分区内原子：b-1 本身合法，但随 b-2 一起回滚
    assert (await fetch(Order, "b-1")).custom_status == CustomStatus.NEW


async def test_bulk_unauthorized_store_fails_its_partition_only(ctx, service, make_order, fetch):
    await make_order("a-1", store_id="store-a")
    await make_order("x-1", store_id="store-x")

    summary = await service.bulk_update_status(ctx, ["a-1", "x-1"], "Confirmed")

    assert [r.partition_key for r in summary.succeeded] == ["store-a"]
    assert summary.failed[0].partition_key == "store-x"
    assert summary.failed[0].error["code"] == "STORE_FORBIDDEN"
    assert (await fetch(Order, "x-1")).custom_status == CustomStatus.NEW


async def test_bulk_cap(ctx, service, seeded):
    service.batch_write_limit = 2

    with pytest.raises(ValidationError) as exc_info:
        await service.bulk_update_status(ctx, ["1", "2", "3"], "Confirmed")

    assert exc_info.value.code == "BATCH_TOO_LARGE"


async def test_dispatch_commits_only_after_enqueue(ctx, service, fake_dispatcher, make_units, make_order, fetch):
    await make_order("a-1", store_id="store-a", status=CustomStatus.READY_TO_DISPATCH, pickup_ready=True)
    ids = await make_units("SKU-RED-M", 1, state=PlacementState.OUTBOUND, order_id="a-1", store_id="store-a")
    await make_order("b-1", store_id="store-b", status=CustomStatus.READY_TO_DISPATCH)
    fake_dispatcher.failing_stores.add("store-b")

    summary = await service.dispatch(ctx, ["a-1", "b-1"])

    assert [r.partition_key for r in summary.succeeded] == ["store-a"]
    assert summary.failed[0].error["code"] == "EXTERNAL_SERVICE_ERROR"
    assert fake_dispatcher.calls == [{"store_id": "store-a", "order_ids": ["a-1"], "requested_by": "user-1"}]

    assert (await fetch(Order, "a-1")).custom_status == CustomStatus.DISPATCHED
    assert (await fetch(StockUnit, ids[0])).placement_state == PlacementState.DISPATCHED
    # 外部调用失败：状态不变
    assert (await fetch(Order, "b-1")).custom_status == CustomStatus.READY_TO_DISPATCH


async def test_dispatch_validates_before_enqueue(ctx, service, fake_dispatcher, make_order, fetch):
    await make_order("a-1", store_id="store-a", status=CustomStatus.CONFIRMED)

    summary = await service.dispatch(ctx, ["a-1"])

    assert summary.failed[0].error["code"] == "INVALID_TRANSITION"
    assert fake_dispatcher.calls == []


async def test_dispatch_of_delivered_order_is_rejected(ctx, service, fake_dispatcher, make_order, fetch):
    await make_order("o-1", status=CustomStatus.DELIVERED, awb="WB1", courier="Delhivery")

    summary = await service.dispatch(ctx, ["o-1"])

    assert summary.succeeded == []
    error = summary.failed[0].error
    assert error["code"] == "INVALID_TRANSITION"
    assert error["current_status"] == "Delivered"
    assert error["attempted_status"] == "Dispatched"
    assert fake_dispatcher.calls == []

    order = await fetch(Order, "o-1")
    assert order.custom_status == CustomStatus.DELIVERED
    assert statuses(order) == ["Delivered"]


async def test_assign_awb_per_order(ctx, service, fake_courier, make_order, fetch):
    await make_order("a-1", store_id="store-a", status=CustomStatus.CONFIRMED)
    await make_order("a-2", store_id="store-a", status=CustomStatus.CONFIRMED)
    await make_order("a-3", store_id="store-a", status=CustomStatus.NEW)
    await make_order("b-1", store_id="store-b", status=CustomStatus.CONFIRMED)
    fake_courier.reject_orders.add("#a-2")

    summary = await service.assign_awb(ctx, ["a-1", "a-2", "a-3", "b-1"])

    assert [r.partition_key for r in summary.succeeded] == ["store-b"]
    failed = summary.failed[0]
    assert failed.partition_key == "store-a"
    assert failed.count == 1
    assert failed.error["code"] == "PARTITION_PARTIAL_FAILURE"
    assert {f["order_id"]: f["code"] for f in failed.error["failed_orders"]} == {
        "a-2": "COURIER_REJECTED",
        "a-3": "INVALID_TRANSITION",
    }

    a1 = await fetch(Order, "a-1")
    assert a1.custom_status == CustomStatus.READY_TO_DISPATCH
    assert a1.awb is not None
    assert a1.courier == "Delhivery"
    assert a1.status_logs[-1].remarks == f"AWB {a1.awb} was assigned with Delhivery"

    a2 = await fetch(Order, "a-2")
    assert a2.custom_status == CustomStatus.CONFIRMED
    assert a2.awb is None

    # 只为合法订单申请运单号
    assert sorted(fake_courier.waybill_requests) == [1, 2]


async def test_book_return(ctx, service, fake_courier, make_order, fetch):
    await make_order("a-1", store_id="store-a", status=CustomStatus.DELIVERED, awb="WB1", courier="Delhivery")
    await make_order("a-2", store_id="store-a", status=CustomStatus.DTO_REQUESTED, awb="WB2", courier="Delhivery")

    summary = await service.book_return(ctx, ["a-1", "a-2"])

    assert summary.all_succeeded
    a1 = await fetch(Order, "a-1")
    assert a1.custom_status == CustomStatus.DTO_REQUESTED
    assert a1.awb_reverse is not None
    assert a1.courier_reverse == "Delhivery"
    assert a1.awb == "WB1"
    assert (await fetch(Order, "a-2")).custom_status == CustomStatus.DTO_BOOKED
    assert all(shipment["payment_mode"] == "Pickup" for shipment in fake_courier.shipments)


async def test_bulk_carrier_status(ctx, service, make_order, fetch):
    await make_order("a-1", store_id="store-a", status=CustomStatus.DISPATCHED)
    await make_order("b-1", store_id="store-b", status=CustomStatus.OUT_FOR_DELIVERY)

    summary = await service.bulk_carrier_status(ctx, [
        {"order_id": "a-1", "status": "In Transit"},
        {"order_id": "b-1", "status": "Delivered", "remarks": "Delivered to customer"},
    ])

    assert summary.all_succeeded
    assert (await fetch(Order, "a-1")).custom_status == CustomStatus.IN_TRANSIT
    b1 = await fetch(Order, "b-1")
    assert b1.custom_status == CustomStatus.DELIVERED
    assert b1.status_logs[-1].remarks == "Delivered to customer"


async def test_bulk_carrier_status_rejects_manual_status(ctx, service):
    with pytest.raises(ValidationError) as exc_info:
        await service.bulk_carrier_status(ctx, [{"order_id": "a-1", "status": "Confirmed"}])

    assert exc_info.value.code == "INVALID_STATUS"


async def test_export_rows_per_store(ctx, service, make_order):
    await make_order("a-1", store_id="store-a", status=CustomStatus.READY_TO_DISPATCH, awb="WB1", courier="Delhivery")
    await make_order("b-1", store_id="store-b")

    summary = await service.export_orders(ctx, ["a-1", "b-1"])

    rows = {row["order_id"]: row for result in summary.succeeded for row in result.data}
    assert rows["a-1"]["awb"] == "WB1"
    assert rows["a-1"]["status"] == "Ready To Dispatch"
    assert rows["b-1"]["items"] == "Red Tee M x 1"


async def test_book_return_rejected_leaves_order_delivered(ctx, service, fake_courier, make_order, fetch):
    await make_order("a-1", store_id="store-a", status=CustomStatus.DELIVERED, awb="WB1", courier="Delhivery")
    fake_courier.reject_orders.add("#a-1")

    summary = await service.book_return(ctx, ["a-1"])

    assert summary.failed[0].count == 0
    assert summary.failed[0].error["failed_orders"][0]["code"] == "COURIER_REJECTED"
    order = await fetch(Order, "a-1")
    assert order.custom_status == CustomStatus.DELIVERED
    assert order.awb_reverse is None
    assert statuses(order) == ["Delivered"]


async def test_assign_awb_waybill_shortage_has_problem_shape(ctx, service, fake_courier, make_order):
    await make_order("a-1", store_id="store-a", status=CustomStatus.CONFIRMED)
    await make_order("a-2", store_id="store-a", status=CustomStatus.CONFIRMED)
    fake_courier.waybill_limit = 1

    summary = await service.assign_awb(ctx, ["a-1", "a-2"])

    failed = summary.failed[0]
    assert failed.count == 1
    entry = failed.error["failed_orders"][0]
    assert entry["order_id"] == "a-2"
    assert entry["code"] == "WAYBILL_UNAVAILABLE"
    assert entry["status"] == 502
    assert entry["detail"] == "Courier returned 1 waybills for 2 orders"


# ========== 退货质检与退款 ==========

QC_ITEMS = [
    {"id": "li-1", "product_id": "p100", "variant_id": "v1", "quantity": 1, "name": "Red Tee M"},
    {"id": "li-2", "product_id": "p200", "variant_id": "", "quantity": 1, "name": "Blue Tee"},
]


async def test_qc_moves_returned_order_to_pending_refunds(ctx, service, make_order, fetch):
    await make_order("o-1", status=CustomStatus.DTO_DELIVERED, items=QC_ITEMS)

    order = await service.complete_qc(
        ctx, "o-1", {"li-1": "QC Pass", "li-2": "QC Fail"}, video_path="videos/o-1.mp4"
    )

    assert order.custom_status == CustomStatus.PENDING_REFUNDS
    assert order.status_logs[-1].remarks == "QC submitted with unboxing video"

    stored = await fetch(Order, "o-1")
    assert stored.custom_status == CustomStatus.PENDING_REFUNDS
    assert [item["qc_status"] for item in stored.line_items] == ["QC Pass", "QC Fail"]
    assert stored.raw["unboxing_video_path"] == "videos/o-1.mp4"
    assert statuses(stored) == ["DTO Delivered", "Pending Refunds"]


async def test_qc_requires_delivered_return(ctx, service, make_order, fetch):
    await make_order("o-1", status=CustomStatus.DTO_IN_TRANSIT, items=QC_ITEMS)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.complete_qc(ctx, "o-1", {"li-1": "QC Pass"})

    assert exc_info.value.current_status == "DTO In Transit"
    stored = await fetch(Order, "o-1")
    assert stored.custom_status == CustomStatus.DTO_IN_TRANSIT
    assert "qc_status" not in stored.line_items[0]


@pytest.mark.parametrize("qc_statuses", [{}, {"li-1": "Looks fine"}, None])
async def test_qc_rejects_invalid_results(ctx, service, make_order, qc_statuses):
    await make_order("o-1", status=CustomStatus.DTO_DELIVERED, items=QC_ITEMS)

    with pytest.raises(ValidationError) as exc_info:
        await service.complete_qc(ctx, "o-1", qc_statuses)

    assert exc_info.value.code == "INVALID_QC_STATUSES"


async def test_refund_reaches_terminal_state(ctx, service, make_order, fetch):
    await make_order("o-1", status=CustomStatus.DTO_DELIVERED, items=QC_ITEMS)
    await service.complete_qc(ctx, "o-1", {"li-1": "QC Pass", "li-2": "Not Received"})

    order = await service.mark_refunded(ctx, "o-1", amount=499, method="store_credit")

    assert order.custom_status == CustomStatus.DTO_REFUNDED
    assert order.status_logs[-1].remarks == "Refunded 499.00 to customer's store credits"

    # 终态不可再变更
    with pytest.raises(InvalidTransitionError):
        await service.mark_refunded(ctx, "o-1")
    assert (await fetch(Order, "o-1")).custom_status == CustomStatus.DTO_REFUNDED


async def test_refund_requires_pending_refunds(ctx, service, make_order, fetch):
    await make_order("o-1", status=CustomStatus.DTO_DELIVERED)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.mark_refunded(ctx, "o-1", amount=100)

    assert exc_info.value.attempted_status == "DTO Refunded"
    assert (await fetch(Order, "o-1")).custom_status == CustomStatus.DTO_DELIVERED


async def test_refund_validation(ctx, service, make_order):
    await make_order("o-1", status=CustomStatus.PENDING_REFUNDS)

    with pytest.raises(ValidationError) as exc_info:
        await service.mark_refunded(ctx, "o-1", method="cash")
    assert exc_info.value.code == "INVALID_REFUND_METHOD"

    with pytest.raises(ValidationError) as exc_info:
        await service.mark_refunded(ctx, "o-1", amount=-1)
    assert exc_info.value.code == "INVALID_REFUND_AMOUNT"
