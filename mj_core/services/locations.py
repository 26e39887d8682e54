"""
库位层级服务：校验 Warehouse → Zone → Rack → Shelf 链路，维护库位节点
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mj_core.models import Business, Warehouse, Zone, Rack, Shelf
from mj_core.utils.errors import (
    HierarchyMismatchError, LocationNotFoundError, NotFoundError, ValidationError
)
from .auth_service import CallerContext
from .base import BaseService, RepositoryMixin

# 自上而下的层级顺序
LEVELS = ("warehouse", "zone", "rack", "shelf")

LEVEL_MODELS = {
    "warehouse": Warehouse,
    "zone": Zone,
    "rack": Rack,
    "shelf": Shelf,
}

# 每一级指向上一级的字段
PARENT_FIELDS = {
    "zone": "warehouse_id",
    "rack": "zone_id",
    "shelf": "rack_id",
}


@dataclass
class LocationPath:
    """已校验的库位链路（未提供的层级为 None）"""
    warehouse: Warehouse
    zone: Optional[Zone] = None
    rack: Optional[Rack] = None
    shelf: Optional[Shelf] = None

    def ids(self) -> Dict[str, Optional[str]]:
        return {
            "warehouse_id": self.warehouse.id,
            "zone_id": self.zone.id if self.zone else None,
            "rack_id": self.rack.id if self.rack else None,
            "shelf_id": self.shelf.id if self.shelf else None,
        }


async def ensure_business(session: AsyncSession, business_id: str) -> Business:
    """业务不存在时抛出 404"""
    business = await session.get(Business, business_id)
    if business is None:
        raise NotFoundError(code="BUSINESS_NOT_FOUND", resource=f"Business {business_id}")
    return business


class LocationHierarchyValidator:
    """库位链路校验器（只读）

    逐级自上而下：先判断节点是否存在，再判断父指针是否与请求一致，
    因此报告的总是最浅的一处错误。
    """

    async def fetch_node(self, session: AsyncSession, level: str, business_id: str, node_id: str):
        node = await session.get(LEVEL_MODELS[level], node_id)
        # 其他业务的节点、已软删除的节点都视为不存在
        if node is None or node.is_deleted or node.business_id != business_id:
            raise LocationNotFoundError(level, node_id)
        return node

    async def validate(
        self,
        session: AsyncSession,
        business_id: str,
        warehouse_id: str,
        zone_id: Optional[str] = None,
        rack_id: Optional[str] = None,
        shelf_id: Optional[str] = None,
    ) -> LocationPath:
        """校验到提供的最深层级为止"""
        requested = {
            "warehouse": warehouse_id,
            "zone": zone_id,
            "rack": rack_id,
            "shelf": shelf_id,
        }

        nodes: Dict[str, Any] = {}
        parent_id: Optional[str] = None
        for level in LEVELS:
            node_id = requested[level]
            if node_id is None:
                break

            node = await self.fetch_node(session, level, business_id, node_id)
            if level in PARENT_FIELDS:
                actual_parent_id = getattr(node, PARENT_FIELDS[level])
                if actual_parent_id != parent_id:
                    raise HierarchyMismatchError(level, node_id, parent_id, actual_parent_id)

            nodes[level] = node
            parent_id = node_id

        return LocationPath(**nodes)


class LocationService(BaseService, RepositoryMixin):
    """库位节点管理"""

    def __init__(self, db_manager=None):
        super().__init__(db_manager)
        self.validator = LocationHierarchyValidator()

    async def create_node(
        self,
        ctx: CallerContext,
        business_id: str,
        level: str,
        name: str,
        parents: Optional[Dict[str, str]] = None,
        code: Optional[str] = None,
        node_id: Optional[str] = None,
        **attrs
    ):
        """在已校验的上级链路下创建节点"""
        if level not in LEVEL_MODELS:
            raise ValidationError(code="INVALID_LEVEL", detail=f"Unknown location level: {level}")
        ctx.require_business(business_id)

        parents = parents or {}
        ancestor_levels = LEVELS[:LEVELS.index(level)]
        missing = [f"{lvl}_id" for lvl in ancestor_levels if not parents.get(f"{lvl}_id")]
        if missing:
            raise ValidationError(
                code="MISSING_REQUIRED_FIELDS",
                detail=f"Missing required fields: {', '.join(missing)}",
                fields=missing
            )

        async def _create(session: AsyncSession):
            await ensure_business(session, business_id)

            data = {
                "id": node_id or uuid4().hex,
                "business_id": business_id,
                "name": name,
                "code": code,
                "created_by": ctx.caller_id,
                "updated_by": ctx.caller_id,
                **attrs,
            }
            if ancestor_levels:
                path = await self.validator.validate(
                    session, business_id, **{f"{lvl}_id": parents[f"{lvl}_id"] for lvl in ancestor_levels}
                )
                data.update({k: v for k, v in path.ids().items() if v is not None})

            if await self.exists(session, LEVEL_MODELS[level], id=data["id"]):
                raise ValidationError(
                    code="DUPLICATE_LOCATION",
                    detail=f"{level.capitalize()} {data['id']} already exists"
                )

            node = await self.create(session, LEVEL_MODELS[level], data)
            self.logger.info("Location created", business_id=business_id, level=level, node_id=node.id)
            return node

        return await self.execute_with_transaction(_create)

    async def list_nodes(
        self,
        ctx: CallerContext,
        business_id: str,
        level: str,
        parent_id: Optional[str] = None,
    ) -> List[Any]:
        """按上级过滤列出节点（不含已删除）"""
        if level not in LEVEL_MODELS:
            raise ValidationError(code="INVALID_LEVEL", detail=f"Unknown location level: {level}")
        ctx.require_business(business_id)
        model = LEVEL_MODELS[level]

        async def _list(session: AsyncSession):
            stmt = select(model).where(
                model.business_id == business_id,
                model.is_deleted.is_(False)
            )
            if parent_id is not None and level in PARENT_FIELDS:
                stmt = stmt.where(getattr(model, PARENT_FIELDS[level]) == parent_id)
            stmt = stmt.order_by(model.created_at, model.id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self.execute_with_session(_list)

    async def delete_node(
        self,
        ctx: CallerContext,
        business_id: str,
        level: str,
        node_id: str,
    ) -> None:
        """软删除节点；删除后的节点在校验中视为不存在"""
        if level not in LEVEL_MODELS:
            raise ValidationError(code="INVALID_LEVEL", detail=f"Unknown location level: {level}")
        ctx.require_business(business_id)

        async def _delete(session: AsyncSession):
            node = await self.validator.fetch_node(session, level, business_id, node_id)
            node.is_deleted = True
            node.updated_by = ctx.caller_id
            await session.flush()
            self.logger.info("Location deleted", business_id=business_id, level=level, node_id=node_id)

        await self.execute_with_transaction(_delete)
