"""
Majime 错误处理系统
遵循 RFC7807 Problem Details 标准
"""
from typing import Any, Dict, List, Optional
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Conflict",
                "status": 409,
                "detail": "Insufficient stock for SKU-RED-M: need 2, found 1",
                "code": "INSUFFICIENT_STOCK"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class MajimeException(Exception):
    """Majime 基础异常类"""

    def __init__(
        self,
        status: int,
        code: str,
        title: str,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = kwargs
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式"""
        return ProblemDetail(
            type="about:blank",
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **self.extra
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.to_problem_detail().model_dump(exclude_none=True)

    def to_response(self, request: Optional[Request] = None) -> JSONResponse:
        """转换为 JSON 响应"""
        instance = str(request.url) if request else None
        problem = self.to_problem_detail(instance)

        return JSONResponse(
            status_code=self.status,
            content={
                "ok": False,
                "error": problem.model_dump(exclude_none=True)
            }
        )


# 预定义错误类
class BadRequestError(MajimeException):
    """400 错误请求"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=400,
            code=code,
            title="Bad Request",
            detail=detail,
            **kwargs
        )


class ValidationError(MajimeException):
    """400 输入校验失败（缺失或非法字段）"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=400,
            code=code,
            title="Validation Failed",
            detail=detail,
            **kwargs
        )


class UnauthorizedError(MajimeException):
    """401 未授权"""
    def __init__(self, code: str = "UNAUTHORIZED", detail: str = "Authentication required"):
        super().__init__(
            status=401,
            code=code,
            title="Unauthorized",
            detail=detail
        )


class ForbiddenError(MajimeException):
    """403 禁止访问"""
    def __init__(self, code: str = "FORBIDDEN", detail: str = "Access denied"):
        super().__init__(
            status=403,
            code=code,
            title="Forbidden",
            detail=detail
        )


class NotFoundError(MajimeException):
    """404 未找到"""
    def __init__(self, code: str, resource: str, **kwargs):
        super().__init__(
            status=404,
            code=code,
            title="Not Found",
            detail=f"{resource} not found",
            **kwargs
        )


class ConflictError(MajimeException):
    """409 冲突"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=409,
            code=code,
            title="Conflict",
            detail=detail,
            **kwargs
        )


class UnprocessableError(MajimeException):
    """422 业务规则无法满足"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=422,
            code=code,
            title="Unprocessable Entity",
            detail=detail,
            **kwargs
        )


class InternalServerError(MajimeException):
    """500 内部错误"""
    def __init__(self, code: str = "INTERNAL_ERROR", detail: str = "An internal error occurred"):
        super().__init__(
            status=500,
            code=code,
            title="Internal Server Error",
            detail=detail
        )


class ExternalServiceError(MajimeException):
    """502 外部服务（快递、店铺平台）调用失败"""
    def __init__(self, service: str, detail: str, code: str = "EXTERNAL_SERVICE_ERROR"):
        super().__init__(
            status=502,
            code=code,
            title="Bad Gateway",
            detail=detail,
            service=service
        )


# 仓储领域错误
class LocationNotFoundError(NotFoundError):
    """库位层级节点不存在（仓库/区/货架/层板）"""
    def __init__(self, level: str, node_id: str):
        self.level = level
        self.node_id = node_id
        super().__init__(
            code=f"{level.upper()}_NOT_FOUND",
            resource=f"{level.capitalize()} {node_id}",
            level=level,
            node_id=node_id
        )


class HierarchyMismatchError(MajimeException):
    """节点存在，但父级指针与请求的上级节点不一致"""
    def __init__(self, level: str, node_id: str, expected_parent_id: str, actual_parent_id: Optional[str]):
        self.level = level
        self.node_id = node_id
        self.expected_parent_id = expected_parent_id
        self.actual_parent_id = actual_parent_id
        super().__init__(
            status=400,
            code="HIERARCHY_MISMATCH",
            title="Hierarchy Mismatch",
            detail=f"{level.capitalize()} {node_id} does not belong to {expected_parent_id}",
            level=level,
            node_id=node_id,
            expected_parent_id=expected_parent_id,
            actual_parent_id=actual_parent_id
        )


class MissingUnitsError(NotFoundError):
    """部分库存单元不存在，列出全部缺失的 ID"""
    def __init__(self, missing_ids: List[str]):
        self.missing_ids = list(missing_ids)
        super().__init__(
            code="UNITS_NOT_FOUND",
            resource=f"{len(self.missing_ids)} stock unit(s)",
            missing_ids=self.missing_ids
        )


class InsufficientStockError(ConflictError):
    """可用库存不足，整单分配中止"""
    def __init__(self, product_ref: str, needed: int, found: int):
        self.product_ref = product_ref
        self.needed = needed
        self.found = found
        super().__init__(
            code="INSUFFICIENT_STOCK",
            detail=f"Insufficient stock for {product_ref}: need {needed}, found {found}",
            product_ref=product_ref,
            needed=needed,
            found=found
        )


class UnmappedProductError(UnprocessableError):
    """店铺商品未映射到业务库存商品"""
    def __init__(self, product_ref: str):
        self.product_ref = product_ref
        super().__init__(
            code="UNMAPPED_PRODUCT",
            detail=f"Product {product_ref} is not mapped to business inventory",
            product_ref=product_ref
        )


class InvalidTransitionError(ConflictError):
    """订单状态机不允许的转换"""
    def __init__(self, current_status: str, attempted_status: str, detail: Optional[str] = None):
        self.current_status = current_status
        self.attempted_status = attempted_status
        super().__init__(
            code="INVALID_TRANSITION",
            detail=detail or f"Cannot change order from '{current_status}' to '{attempted_status}'",
            current_status=current_status,
            attempted_status=attempted_status
        )

