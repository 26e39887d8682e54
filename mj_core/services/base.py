"""
基础服务类
"""
from typing import Any, Dict, List, Optional
from abc import ABC

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mj_core.utils.logger import get_logger
from mj_core.utils.errors import MajimeException, InternalServerError, ValidationError
from mj_core.database import DatabaseManager, get_db_manager


class BaseService(ABC):
    """基础服务类"""

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or get_db_manager()
        self.logger = get_logger(self.__class__.__name__)

    async def execute_with_transaction(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """在事务中执行操作

        operation 正常返回即提交；任何异常都会整体回滚。
        """
        try:
            async with self.db_manager.get_transaction() as session:
                return await operation(session, *args, **kwargs)
        except MajimeException:
            raise
        except Exception:
            self.logger.error("Transaction operation failed", operation=operation.__name__, exc_info=True)
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail="Database transaction failed"
            )

    async def execute_with_session(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """使用数据库会话执行只读操作"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session, *args, **kwargs)
        except MajimeException:
            raise
        except Exception:
            self.logger.error("Session operation failed", operation=operation.__name__, exc_info=True)
            raise InternalServerError(
                code="SESSION_OPERATION_FAILED",
                detail="Database operation failed"
            )

    def validate_required_fields(self, data: Dict[str, Any], required_fields: List[str]) -> None:
        """验证必填字段"""
        missing_fields = [
            field for field in required_fields
            if field not in data or data[field] is None or data[field] == ""
        ]

        if missing_fields:
            raise ValidationError(
                code="MISSING_REQUIRED_FIELDS",
                detail=f"Missing required fields: {', '.join(missing_fields)}",
                fields=missing_fields
            )


class RepositoryMixin:
    """仓储混入类 - 提供常用的数据库操作"""

    async def get_by_id(
        self,
        session: AsyncSession,
        model_class,
        record_id: Any
    ) -> Optional[Any]:
        """根据ID获取记录"""
        return await session.get(model_class, record_id)

    async def create(
        self,
        session: AsyncSession,
        model_class,
        data: Dict[str, Any]
    ) -> Any:
        """创建记录"""
        instance = model_class(**data)
        session.add(instance)
        await session.flush()  # 获取生成的ID
        return instance

    async def exists(
        self,
        session: AsyncSession,
        model_class,
        **filters
    ) -> bool:
        """检查记录是否存在"""
        stmt = select(model_class.id)
        for field, value in filters.items():
            stmt = stmt.where(getattr(model_class, field) == value)

        result = await session.execute(stmt.limit(1))
        return result.first() is not None
