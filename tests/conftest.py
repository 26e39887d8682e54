"""
Pytest 配置和 fixtures

每个测试使用独立的 SQLite 文件库（aiosqlite），并预置：
- 业务 biz-1（店铺 store-a / store-b / store-c）与 biz-2（店铺 store-x）
- 库位 wh-1 → z-1 → r-1 → s-1 / s-2，wh-2 → z-2 → r-2 → s-3
- store-a 的商品映射 p100:v1 → SKU-RED-M，p200 → SKU-BLUE
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from mj_core.database import DatabaseManager, set_db_manager
from mj_core.models import (
    Business, Store, ProductMapping, Warehouse, Zone, Rack, Shelf,
    StockUnit, PlacementState, Order, OrderStatusLog, CustomStatus
)
from mj_core.services import CallerContext
from mj_core.utils.errors import ExternalServiceError

BASE_TIME = datetime(2026, 1, 1, 8, 0, 0, tzinfo=timezone.utc)

DEFAULT_SHELF = ("wh-1", "z-1", "r-1", "s-1")


@pytest_asyncio.fixture
async def db_manager(tmp_path):
    """数据库管理器 fixture（每个测试一个库文件）"""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'majime_test.db'}")
    await manager.create_tables()
    set_db_manager(manager)

    yield manager

    set_db_manager(None)
    await manager.close()


@pytest_asyncio.fixture
async def seeded(db_manager):
    """预置租户、库位和商品映射"""
    async with db_manager.get_transaction() as session:
        session.add_all([
            Business(id="biz-1", name="Majime Apparel"),
            Business(id="biz-2", name="Other Brand"),
        ])
        await session.flush()

        session.add_all([
            Store(id="store-a", business_id="biz-1", alias="A", pickup_name="Main WH", courier_api_key="key-a"),
            Store(id="store-b", business_id="biz-1", alias="B", pickup_name="Main WH", courier_api_key="key-b"),
            Store(id="store-c", business_id="biz-1", alias="C", pickup_name="Main WH", courier_api_key="key-c"),
            Store(id="store-x", business_id="biz-2", alias="X", pickup_name="Other WH", courier_api_key="key-x"),
        ])
        session.add_all([
            Warehouse(id="wh-1", business_id="biz-1", name="Main"),
            Zone(id="z-1", business_id="biz-1", name="Zone 1", warehouse_id="wh-1"),
            Rack(id="r-1", business_id="biz-1", name="Rack 1", warehouse_id="wh-1", zone_id="z-1"),
            Shelf(id="s-1", business_id="biz-1", name="Shelf 1", warehouse_id="wh-1", zone_id="z-1", rack_id="r-1"),
            Shelf(id="s-2", business_id="biz-1", name="Shelf 2", warehouse_id="wh-1", zone_id="z-1", rack_id="r-1"),
            Warehouse(id="wh-2", business_id="biz-1", name="Overflow"),
            Zone(id="z-2", business_id="biz-1", name="Zone 2", warehouse_id="wh-2"),
            Rack(id="r-2", business_id="biz-1", name="Rack 2", warehouse_id="wh-2", zone_id="z-2"),
            Shelf(id="s-3", business_id="biz-1", name="Shelf 3", warehouse_id="wh-2", zone_id="z-2", rack_id="r-2"),
            Warehouse(id="wh-x", business_id="biz-2", name="Foreign"),
        ])
        for store_id in ("store-a", "store-b", "store-c"):
            session.add_all([
                ProductMapping(store_id=store_id, store_product_id="p100", store_variant_id="v1",
                               business_id="biz-1", business_product_id="SKU-RED-M"),
                ProductMapping(store_id=store_id, store_product_id="p200", store_variant_id="",
                               business_id="biz-1", business_product_id="SKU-BLUE"),
            ])

    return db_manager


@pytest.fixture
def ctx():
    """biz-1 的操作员"""
    return CallerContext(
        caller_id="user-1",
        authorized_businesses=frozenset({"biz-1"}),
        authorized_stores=frozenset({"store-a", "store-b", "store-c"}),
    )


@pytest.fixture
def make_units(seeded):
    """插入库存单元；每次调用的单元都比之前的更晚入库"""
    counter = {"n": 0}

    async def _make(
        product_id: str,
        count: int,
        business_id: str = "biz-1",
        state: PlacementState = PlacementState.AVAILABLE,
        shelf: Optional[tuple] = DEFAULT_SHELF,
        order_id: Optional[str] = None,
        store_id: Optional[str] = None,
        ids: Optional[List[str]] = None,
    ) -> List[str]:
        created = []
        async with seeded.get_transaction() as session:
            for i in range(count):
                counter["n"] += 1
                unit_id = ids[i] if ids else f"{product_id}-{counter['n']:03d}"
                warehouse_id, zone_id, rack_id, shelf_id = shelf or (None, None, None, None)
                session.add(StockUnit(
                    id=unit_id,
                    business_id=business_id,
                    product_id=product_id,
                    warehouse_id=warehouse_id,
                    zone_id=zone_id,
                    rack_id=rack_id,
                    shelf_id=shelf_id,
                    placement_id=f"{product_id}_{shelf_id}" if shelf_id else None,
                    order_id=order_id,
                    store_id=store_id,
                    placement_state=state,
                    created_at=BASE_TIME + timedelta(minutes=counter["n"]),
                    updated_at=BASE_TIME + timedelta(minutes=counter["n"]),
                ))
                created.append(unit_id)
        return created

    return _make


@pytest.fixture
def make_order(seeded):
    """插入订单（默认一行 p100:v1 x1）"""

    async def _make(
        order_id: str,
        store_id: str = "store-a",
        status: CustomStatus = CustomStatus.NEW,
        items: Optional[List[Dict[str, Any]]] = None,
        **fields
    ) -> str:
        if items is None:
            items = [{"product_id": "p100", "variant_id": "v1", "quantity": 1, "name": "Red Tee M"}]
        raw = {
            "id": order_id,
            "name": f"#{order_id}",
            "financial_status": "pending",
            "total_price": "799.00",
            "line_items": items,
            "shipping_address": {
                "first_name": "Asha",
                "last_name": "Rao",
                "address1": "12 MG Road",
                "city": "Pune",
                "province": "Maharashtra",
                "zip": "411001",
                "phone": "+91 98765 43210",
            },
        }
        async with seeded.get_transaction() as session:
            session.add(Order(
                id=order_id,
                store_id=store_id,
                name=f"#{order_id}",
                custom_status=status,
                raw=raw,
                status_logs=[OrderStatusLog(status=status.value, remarks="seeded")],
                **fields
            ))
        return order_id

    return _make


async def load(manager: DatabaseManager, model, record_id):
    """测试断言用：在新会话中读取记录"""
    async with manager.get_session() as session:
        return await session.get(model, record_id)


@pytest.fixture
def fetch(seeded):
    async def _fetch(model, record_id):
        return await load(seeded, model, record_id)
    return _fetch


class FakeCourier:
    """快递客户端替身：按顺序发放运单号，可按订单号拒单"""

    def __init__(self, reject_orders=(), waybill_limit=None):
        self.reject_orders = set(reject_orders)
        self.waybill_limit = waybill_limit
        self.shipments: List[Dict[str, Any]] = []
        self.waybill_requests: List[int] = []
        self._next = 1

    async def fetch_waybills(self, api_key: str, count: int = 1) -> List[str]:
        if not api_key:
            raise ExternalServiceError(service="delhivery", detail="missing key", code="COURIER_KEY_MISSING")
        self.waybill_requests.append(count)
        if self.waybill_limit is not None:
            count = min(count, self.waybill_limit)
        waybills = [f"WB{self._next + i:05d}" for i in range(count)]
        self._next += count
        return waybills

    async def create_shipment(self, api_key: str, shipment: Dict[str, Any], pickup_name: str) -> str:
        if shipment["order"] in self.reject_orders:
            raise ExternalServiceError(
                service="delhivery",
                detail="Courier rejected shipment: pincode not serviceable",
                code="COURIER_REJECTED"
            )
        self.shipments.append(shipment)
        return shipment["waybill"]


class FakeDispatcher:
    """发货队列替身：指定店铺投递失败"""

    def __init__(self, failing_stores=()):
        self.failing_stores = set(failing_stores)
        self.calls: List[Dict[str, Any]] = []

    async def enqueue_dispatch(self, store_id: str, order_ids: List[str], requested_by: str) -> Dict[str, Any]:
        if store_id in self.failing_stores:
            raise ExternalServiceError(service="dispatch_queue", detail="Failed to enqueue dispatch")
        self.calls.append({"store_id": store_id, "order_ids": list(order_ids), "requested_by": requested_by})
        return {"queued": len(order_ids)}


@pytest.fixture
def fake_courier():
    return FakeCourier()


@pytest.fixture
def fake_dispatcher():
    return FakeDispatcher()
