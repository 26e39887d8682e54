"""
认证服务

只负责把令牌解码为调用方上下文；上下文显式传入每个业务操作，
不放在请求对象或全局变量里。
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, Optional
from uuid import uuid4

from jose import JWTError, jwt

from mj_core.config import get_settings
from mj_core.utils.logger import get_logger
from mj_core.utils.errors import ForbiddenError, UnauthorizedError

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallerContext:
    """已验证的调用方身份及其可操作的业务/店铺"""
    caller_id: str
    authorized_businesses: FrozenSet[str] = field(default_factory=frozenset)
    authorized_stores: FrozenSet[str] = field(default_factory=frozenset)

    def can_access_business(self, business_id: str) -> bool:
        return business_id in self.authorized_businesses

    def can_access_store(self, store_id: str) -> bool:
        return store_id in self.authorized_stores

    def require_business(self, business_id: str) -> None:
        if not self.can_access_business(business_id):
            raise ForbiddenError(
                code="BUSINESS_FORBIDDEN",
                detail=f"Caller may not act on business {business_id}"
            )

    def require_store(self, store_id: str) -> None:
        if not self.can_access_store(store_id):
            raise ForbiddenError(
                code="STORE_FORBIDDEN",
                detail=f"Caller may not act on store {store_id}"
            )


class AuthService:
    """认证服务"""

    def __init__(self):
        self.settings = get_settings()
        self.access_token_expire = timedelta(minutes=self.settings.access_token_expire_minutes)
        self.algorithm = self.settings.algorithm

    def create_access_token(
        self,
        caller_id: str,
        businesses: Iterable[str] = (),
        stores: Iterable[str] = (),
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        """创建访问令牌"""
        expire = datetime.now(timezone.utc) + (expires_delta or self.access_token_expire)
        to_encode = {
            "sub": caller_id,
            "businesses": sorted(set(businesses)),
            "stores": sorted(set(stores)),
            "exp": expire,
            "type": "access",
            "jti": str(uuid4()),
        }
        return jwt.encode(to_encode, self.settings.secret_key, algorithm=self.algorithm)

    def decode_token(self, token: str) -> dict:
        """解码JWT令牌"""
        try:
            return jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[self.algorithm]
            )
        except JWTError as e:
            logger.warning("Token validation failed", reason=str(e))
            raise UnauthorizedError(
                code="INVALID_TOKEN",
                detail="Token validation failed"
            )

    def verify_token(self, token: str) -> CallerContext:
        """校验令牌并构造调用方上下文"""
        payload = self.decode_token(token)

        if payload.get("type") != "access" or not payload.get("sub"):
            raise UnauthorizedError(code="INVALID_TOKEN", detail="Invalid token claims")

        return CallerContext(
            caller_id=str(payload["sub"]),
            authorized_businesses=frozenset(payload.get("businesses") or ()),
            authorized_stores=frozenset(payload.get("stores") or ()),
        )


# 全局认证服务实例
_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    """获取认证服务单例"""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service
