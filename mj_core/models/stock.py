"""
库存单元模型：每件实物一条记录
"""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, Enum as SAEnum, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class PlacementState(str, enum.Enum):
    """库存单元放置状态

    inbound → available → outbound → dispatched
    上架（含换架）总是回到 available；退货入库回到 inbound。
    """
    INBOUND = "inbound"        # 已入库，尚未上架
    AVAILABLE = "available"    # 已上架，可被拣货
    OUTBOUND = "outbound"      # 已被订单预占/拣出
    DISPATCHED = "dispatched"  # 已随订单发出


class StockUnit(Base):
    """库存单元表"""
    __tablename__ = "stock_units"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, comment="单元ID（条码）")
    business_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[str] = mapped_column(String(128), nullable=False, comment="业务库存商品ID")

    # 当前位置；inbound 状态下可为空
    warehouse_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    zone_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rack_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shelf_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    placement_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, comment="{product_id}_{shelf_id}")

    # 预占：非空即表示归属唯一订单
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    store_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    placement_state: Mapped[PlacementState] = mapped_column(
        SAEnum(PlacementState, name="placement_state", native_enum=False,
               values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PlacementState.INBOUND
    )

    grn_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="入库单号")

    # FIFO 唯一排序键
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow
    )
    updated_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        # 拣货候选查询
        Index("ix_stock_units_pick", "business_id", "product_id", "placement_state", "created_at"),
        Index("ix_stock_units_order", "order_id"),
        Index("ix_stock_units_placement", "business_id", "placement_id"),
    )

    @property
    def is_reserved(self) -> bool:
        return self.order_id is not None
