"""
快递与发货队列客户端测试（httpx.MockTransport）
"""
import json
from urllib.parse import parse_qs

import httpx
import pytest

from mj_core.models import Order, CustomStatus
from mj_core.services import OrdersService
from mj_core.services.courier import (
    DelhiveryClient, DispatchQueueClient, build_shipment, close_clients,
    get_courier_client, get_dispatch_client
)
from mj_core.utils.errors import ExternalServiceError


def make_order(**raw):
    payload = {
        "name": "#1001",
        "total_price": "799.00",
        "line_items": [{"name": "Red Tee M", "quantity": 2}],
        "shipping_address": {
            "first_name": "Asha",
            "last_name": "Rao",
            "address1": "12 MG Road",
            "address2": "Koregaon Park",
            "city": "Pune",
            "province": "Maharashtra",
            "zip": "411001",
            "phone": "+91 98765 43210",
        },
    }
    payload.update(raw)
    return Order(id="1001", store_id="store-a", name="#1001", custom_status=CustomStatus.CONFIRMED, raw=payload)


def test_build_shipment_cod():
    shipment = build_shipment(make_order(), "WB1")

    assert shipment["name"] == "Asha Rao"
    assert shipment["add"] == "12 MG Road, Koregaon Park"
    assert shipment["phone"] == "9876543210"
    assert shipment["payment_mode"] == "COD"
    assert shipment["cod_amount"] == "799.00"
    assert shipment["products_desc"] == "Red Tee M x 2"
    assert shipment["quantity"] == "2"
    assert shipment["waybill"] == "WB1"


def test_build_shipment_prepaid_and_reverse():
    prepaid = build_shipment(make_order(financial_status="paid"), "WB1")
    reverse = build_shipment(make_order(), "WB2", reverse=True)

    assert prepaid["payment_mode"] == "Prepaid"
    assert prepaid["cod_amount"] == ""
    assert reverse["payment_mode"] == "Pickup"


async def test_fetch_waybills():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/waybill/api/bulk/json/"
        assert request.url.params["count"] == "2"
        assert request.headers["Authorization"] == "Token key-a"
        return httpx.Response(200, text='"1111,2222"')

    async with DelhiveryClient(base_url="https://courier.test", transport=httpx.MockTransport(handler)) as client:
        assert await client.fetch_waybills("key-a", 2) == ["1111", "2222"]


async def test_missing_api_key():
    async with DelhiveryClient(base_url="https://courier.test", transport=httpx.MockTransport(lambda r: None)) as client:
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.fetch_waybills("", 1)

    assert exc_info.value.code == "COURIER_KEY_MISSING"
    assert exc_info.value.status == 502


async def test_create_shipment_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        seen["format"] = form["format"][0]
        seen["data"] = json.loads(form["data"][0])
        return httpx.Response(200, json={"success": True, "packages": [{"waybill": "1111", "status": "Success"}]})

    async with DelhiveryClient(base_url="https://courier.test", transport=httpx.MockTransport(handler)) as client:
        awb = await client.create_shipment("key-a", build_shipment(make_order(), "1111"), "Main WH")

    assert awb == "1111"
    assert seen["format"] == "json"
    assert seen["data"]["pickup_location"] == {"name": "Main WH"}
    assert seen["data"]["shipments"][0]["order"] == "#1001"


async def test_create_shipment_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "success": False,
            "packages": [{"remarks": ["Pincode not serviceable"]}],
        })

    async with DelhiveryClient(base_url="https://courier.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.create_shipment("key-a", {"order": "#1001"}, "Main WH")

    assert exc_info.value.code == "COURIER_REJECTED"
    assert "Pincode not serviceable" in exc_info.value.detail


async def test_courier_http_error():
    async with DelhiveryClient(
        base_url="https://courier.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    ) as client:
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.fetch_waybills("key-a", 1)

    assert exc_info.value.code == "EXTERNAL_SERVICE_ERROR"


async def test_enqueue_dispatch():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers["X-Api-Key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"queued": 2})

    client = DispatchQueueClient(url="https://queue.test/dispatch", secret="s3cret", transport=httpx.MockTransport(handler))
    try:
        result = await client.enqueue_dispatch("store-a", ["o-1", "o-2"], "user-1")
    finally:
        await client.close()

    assert result == {"queued": 2}
    assert seen["key"] == "s3cret"
    assert seen["body"] == {"shop": "store-a", "orderIds": ["o-1", "o-2"], "requestedBy": "user-1"}


async def test_enqueue_dispatch_failure():
    client = DispatchQueueClient(
        url="https://queue.test/dispatch",
        secret="s3cret",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    try:
        with pytest.raises(ExternalServiceError):
            await client.enqueue_dispatch("store-a", ["o-1"], "user-1")
    finally:
        await client.close()


async def test_dispatch_queue_not_configured():
    client = DispatchQueueClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    try:
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.enqueue_dispatch("store-a", ["o-1"], "user-1")
    finally:
        await client.close()

    assert exc_info.value.code == "DISPATCH_QUEUE_NOT_CONFIGURED"


async def test_services_share_clients_until_closed(db_manager):
    first, second = OrdersService(db_manager), OrdersService(db_manager)
    try:
        courier = first.courier
        dispatcher = first.dispatcher
        assert second.courier is courier
        assert second.dispatcher is dispatcher
        assert get_courier_client() is courier
        assert get_dispatch_client() is dispatcher
    finally:
        await close_clients()

    assert courier.client.is_closed
    assert dispatcher.client.is_closed

    # 关闭后重新创建
    fresh = get_courier_client()
    try:
        assert fresh is not courier
        assert not fresh.client.is_closed
    finally:
        await close_clients()
