"""
租户数据模型：业务（库存所有者）、店铺、商品映射
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, utcnow


class Business(Base):
    """业务表（库存归属方，一个业务可拥有多个店铺）"""
    __tablename__ = "businesses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, comment="业务名称")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="创建时间"
    )


class Store(Base):
    """店铺表（订单的租户边界）"""
    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(128), primary_key=True, comment="店铺域名或标识")
    business_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("businesses.id"),
        nullable=False,
        comment="所属业务"
    )
    alias: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="店铺简称")

    # 快递账户
    pickup_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, comment="快递揽收点名称")
    courier_api_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, comment="快递 API 密钥")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("ix_stores_business", "business_id"),
    )


class ProductMapping(Base):
    """店铺商品/变体 → 业务库存商品 映射"""
    __tablename__ = "product_mappings"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    store_id: Mapped[str] = mapped_column(String(128), ForeignKey("stores.id"), nullable=False)
    store_product_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="店铺商品ID")
    # 空串表示整个商品（不区分变体）
    store_variant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="", comment="店铺变体ID")

    business_id: Mapped[str] = mapped_column(String(64), ForeignKey("businesses.id"), nullable=False)
    business_product_id: Mapped[str] = mapped_column(String(128), nullable=False, comment="业务库存商品ID")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("store_id", "store_product_id", "store_variant_id", name="uq_product_mappings_store_item"),
        Index("ix_product_mappings_business_product", "business_id", "business_product_id"),
    )
