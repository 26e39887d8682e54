"""
外部履约协作方客户端

- DelhiveryClient：取运单号、创建正向/逆向运单
- DispatchQueueClient：把发货请求投递到店铺平台履约队列
"""
import json
from typing import Any, Dict, List, Optional

import httpx

from mj_core.config import get_settings
from mj_core.models import Order
from mj_core.utils.errors import ExternalServiceError
from mj_core.utils.logger import get_logger

logger = get_logger(__name__)

COURIER_NAME = "Delhivery"


def _normalize_phone(phone: str) -> str:
    """去掉空白，保留后10位"""
    cleaned = "".join(str(phone or "").split())
    return cleaned[-10:] if len(cleaned) >= 10 else cleaned


def _address(order: Order) -> Dict[str, Any]:
    raw = order.raw or {}
    return raw.get("shipping_address") or raw.get("billing_address") or {}


def build_shipment(order: Order, waybill: str, reverse: bool = False) -> Dict[str, Any]:
    """由订单快照构造 Delhivery 运单数据"""
    raw = order.raw or {}
    addr = _address(order)
    items = order.line_items

    consignee = addr.get("name") or " ".join(
        part for part in (addr.get("first_name"), addr.get("last_name")) if part
    ) or "Customer"
    products_desc = ", ".join(
        f"{item.get('name') or item.get('title') or 'Item'} x {int(item.get('quantity') or 1)}"
        for item in items
    )[:500]
    quantity = sum(int(item.get("quantity") or 1) for item in items)

    if reverse:
        payment_mode = "Pickup"
        cod_amount = ""
    elif str(raw.get("financial_status", "")).lower() == "paid":
        payment_mode = "Prepaid"
        cod_amount = ""
    else:
        payment_mode = "COD"
        cod_amount = str(raw.get("total_outstanding") or raw.get("total_price") or "")

    return {
        "name": consignee,
        "add": ", ".join(part for part in (addr.get("address1"), addr.get("address2")) if part),
        "pin": addr.get("zip") or "",
        "city": addr.get("city") or "",
        "state": addr.get("province") or "",
        "country": addr.get("country") or "India",
        "phone": _normalize_phone(addr.get("phone") or raw.get("phone") or ""),
        "order": str(order.name or raw.get("name") or order.id),
        "payment_mode": payment_mode,
        "cod_amount": cod_amount,
        "total_amount": str(raw.get("total_price") or ""),
        "products_desc": products_desc,
        "quantity": str(quantity),
        "waybill": str(waybill),
        "weight": str(raw.get("total_weight") or ""),
        "shipment_width": "10",
        "shipment_height": "10",
        "shipment_length": "10",
    }


class DelhiveryClient:
    """Delhivery 快递 API 客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.courier_base_url,
            headers={"Accept": "application/json"},
            timeout=timeout or settings.courier_timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """关闭客户端连接"""
        await self.client.aclose()

    @staticmethod
    def _auth(api_key: Optional[str]) -> Dict[str, str]:
        if not api_key:
            raise ExternalServiceError(
                service="delhivery",
                detail="Courier API key is not configured for this store",
                code="COURIER_KEY_MISSING"
            )
        return {"Authorization": f"Token {api_key}"}

    async def fetch_waybills(self, api_key: str, count: int = 1) -> List[str]:
        """批量获取运单号"""
        headers = self._auth(api_key)
        try:
            response = await self.client.get("/waybill/api/bulk/json/", params={"count": count}, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Waybill fetch failed", error=str(e))
            raise ExternalServiceError(service="delhivery", detail="Failed to fetch waybills from courier")

        waybills = [
            part.strip().strip('"')
            for part in response.text.strip().strip("[]").split(",")
            if part.strip().strip('"')
        ]
        if not waybills:
            raise ExternalServiceError(service="delhivery", detail="Courier returned no waybills")
        return waybills

    async def create_shipment(self, api_key: str, shipment: Dict[str, Any], pickup_name: str) -> str:
        """创建运单，返回运单号"""
        headers = self._auth(api_key)
        payload = {
            "shipments": [shipment],
            "pickup_location": {"name": str(pickup_name or "")},
        }
        try:
            response = await self.client.post(
                "/api/cmu/create.json",
                data={"format": "json", "data": json.dumps(payload)},
                headers=headers,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Shipment creation failed", order=shipment.get("order"), error=str(e))
            raise ExternalServiceError(service="delhivery", detail="Courier shipment creation failed")

        packages = body.get("packages") or []
        waybill = (
            body.get("shipment_id")
            or (packages[0].get("waybill") if packages else None)
            or body.get("waybill")
        )
        if (body.get("success") is True and body.get("error") is not True) or waybill:
            return str(waybill or shipment.get("waybill"))

        remarks = packages[0].get("remarks") if packages else None
        if isinstance(remarks, list):
            remarks = "; ".join(str(r) for r in remarks)
        logger.warning("Shipment rejected by courier", order=shipment.get("order"), remarks=remarks)
        raise ExternalServiceError(
            service="delhivery",
            detail=f"Courier rejected shipment: {remarks or 'unknown reason'}",
            code="COURIER_REJECTED"
        )


class DispatchQueueClient:
    """店铺平台履约队列"""

    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.url = url or settings.dispatch_queue_url
        self.secret = secret or settings.dispatch_queue_secret
        self.client = httpx.AsyncClient(timeout=settings.courier_timeout, transport=transport)

    async def close(self):
        await self.client.aclose()

    async def enqueue_dispatch(self, store_id: str, order_ids: List[str], requested_by: str) -> Dict[str, Any]:
        """投递发货任务；失败时抛出 ExternalServiceError"""
        if not self.url or not self.secret:
            raise ExternalServiceError(
                service="dispatch_queue",
                detail="Dispatch queue is not configured",
                code="DISPATCH_QUEUE_NOT_CONFIGURED"
            )

        try:
            response = await self.client.post(
                self.url,
                json={"shop": store_id, "orderIds": order_ids, "requestedBy": requested_by},
                headers={"X-Api-Key": self.secret},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Dispatch enqueue failed", store_id=store_id, orders=len(order_ids), error=str(e))
            raise ExternalServiceError(service="dispatch_queue", detail="Failed to enqueue dispatch")

        logger.info("Dispatch enqueued", store_id=store_id, orders=len(order_ids))
        try:
            return response.json()
        except ValueError:
            return {}


# 应用级单例，关闭时统一释放连接池
_courier_client: Optional[DelhiveryClient] = None
_dispatch_client: Optional[DispatchQueueClient] = None


def get_courier_client() -> DelhiveryClient:
    """获取快递客户端单例"""
    global _courier_client
    if _courier_client is None:
        _courier_client = DelhiveryClient()
    return _courier_client


def get_dispatch_client() -> DispatchQueueClient:
    """获取发货队列客户端单例"""
    global _dispatch_client
    if _dispatch_client is None:
        _dispatch_client = DispatchQueueClient()
    return _dispatch_client


async def close_clients() -> None:
    """关闭外部客户端（应用关闭时调用）"""
    global _courier_client, _dispatch_client
    if _courier_client is not None:
        await _courier_client.close()
        _courier_client = None
    if _dispatch_client is not None:
        await _dispatch_client.close()
        _dispatch_client = None
    logger.info("Closed external courier clients")
