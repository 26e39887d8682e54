"""
订单相关数据模型
订单归属店铺（store_id），所有批量操作先按店铺分区
"""
import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    String, Text, Boolean, DateTime, Enum as SAEnum,
    ForeignKey, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, JSONType, utcnow


class CustomStatus(str, enum.Enum):
    """订单履约状态（取值即展示文本）"""
    NEW = "New"
    CONFIRMED = "Confirmed"
    READY_TO_DISPATCH = "Ready To Dispatch"
    DISPATCHED = "Dispatched"
    IN_TRANSIT = "In Transit"
    OUT_FOR_DELIVERY = "Out For Delivery"
    DELIVERED = "Delivered"
    RTO_IN_TRANSIT = "RTO In Transit"
    RTO_DELIVERED = "RTO Delivered"
    DTO_REQUESTED = "DTO Requested"
    DTO_BOOKED = "DTO Booked"
    DTO_IN_TRANSIT = "DTO In Transit"
    DTO_DELIVERED = "DTO Delivered"
    PENDING_REFUNDS = "Pending Refunds"
    DTO_REFUNDED = "DTO Refunded"
    LOST = "Lost"
    CLOSED = "Closed"
    RTO_CLOSED = "RTO Closed"
    CANCELLATION_REQUESTED = "Cancellation Requested"
    CANCELLED = "Cancelled"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Order(Base):
    """订单表"""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, comment="平台订单ID")
    store_id: Mapped[str] = mapped_column(String(128), ForeignKey("stores.id"), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="订单号（展示用）")

    custom_status: Mapped[CustomStatus] = mapped_column(
        SAEnum(CustomStatus, name="custom_status", native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=CustomStatus.NEW
    )

    # 正向物流
    awb: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="运单号")
    courier: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # 逆向物流（DTO）
    awb_reverse: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    courier_reverse: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # 拣货
    pickup_ready: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    picked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # 原始订单快照，写入后不再修改
    raw: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow
    )

    status_logs: Mapped[List["OrderStatusLog"]] = relationship(
        "OrderStatusLog",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusLog.id",
        lazy="selectin"
    )

    __table_args__ = (
        Index("ix_orders_store_status", "store_id", "custom_status"),
        Index("ix_orders_awb", "awb"),
    )

    @property
    def line_items(self) -> List[Dict[str, Any]]:
        """订单行（来自原始快照）"""
        return list((self.raw or {}).get("line_items") or [])


class OrderStatusLog(Base):
    """订单状态日志（只追加）"""
    __tablename__ = "order_status_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    order: Mapped["Order"] = relationship("Order", back_populates="status_logs")

    __table_args__ = (
        Index("ix_order_status_logs_order", "order_id", "id"),
    )
