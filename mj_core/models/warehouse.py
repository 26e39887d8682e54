"""
仓库库位层级模型：Warehouse → Zone → Rack → Shelf

每一级保存全部上级ID，校验时逐级比对父指针。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class LocationMixin:
    """库位节点公共字段"""

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="所属业务")
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, comment="库位编码")

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, comment="软删除")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow
    )
    updated_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)


class Warehouse(LocationMixin, Base):
    """仓库"""
    __tablename__ = "warehouses"

    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_warehouses_business", "business_id"),
    )


class Zone(LocationMixin, Base):
    """库区"""
    __tablename__ = "zones"

    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_zones_business_warehouse", "business_id", "warehouse_id"),
    )


class Rack(LocationMixin, Base):
    """货架"""
    __tablename__ = "racks"

    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False)
    zone_id: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_racks_business_zone", "business_id", "zone_id"),
    )


class Shelf(LocationMixin, Base):
    """层板（上架目标）"""
    __tablename__ = "shelves"

    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False)
    zone_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rack_id: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_shelves_business_rack", "business_id", "rack_id"),
    )
