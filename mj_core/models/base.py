"""
Majime 数据库基础模型
遵循约束：UTC 时间、统一命名规范
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import BigInteger, DateTime, Integer, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


# 自增主键：PostgreSQL 用 BIGINT，SQLite 只有 INTEGER 才会自增
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

# JSON 列：PostgreSQL 用 JSONB
JSONType = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    """Python 侧生成的 UTC 时间，精度到微秒（FIFO 排序依赖此精度）"""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """数据库模型基类"""

    # 统一类型映射
    type_annotation_map = {
        datetime: DateTime(timezone=True),  # 强制使用 timezone-aware datetime
    }

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)

            # 处理特殊类型
            if isinstance(value, Decimal):
                result[column.key] = str(value)
            elif isinstance(value, datetime):
                result[column.key] = value.isoformat()
            elif isinstance(value, Enum):
                result[column.key] = value.value
            else:
                result[column.key] = value

        return result
