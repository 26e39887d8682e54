"""
Majime FastAPI 主应用
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder

from mj_core.config import get_settings
from mj_core.utils.logger import setup_logging, get_logger
from mj_core.utils.errors import MajimeException
from mj_core.database import get_db_manager
from mj_core.middleware.logging import LoggingMiddleware
from mj_core.services.courier import close_clients
from mj_core.api import api_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    settings = get_settings()
    logger.info("Starting Majime application", version=settings.api_version)

    db_manager = get_db_manager()
    if not await db_manager.check_connection():
        logger.error("Database connection check failed")
        raise RuntimeError("Database connection failed")

    logger.info("Majime application started successfully")

    yield  # 应用运行期间

    logger.info("Shutting down Majime application")
    await close_clients()
    await db_manager.close()
    logger.info("Majime application shutdown complete")


def _error_body(status: int, title: str, detail: str, code: str, **extra) -> dict:
    return {
        "ok": False,
        "error": {
            "type": "about:blank",
            "title": title,
            "status": status,
            "detail": detail,
            "code": code,
            **extra,
        },
    }


def create_app() -> FastAPI:
    """创建 FastAPI 应用"""
    settings = get_settings()

    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format
    )

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="Majime warehouse allocation and order fulfillment API",
        docs_url="/docs" if settings.api_debug else None,
        redoc_url="/redoc" if settings.api_debug else None,
        openapi_url="/openapi.json" if settings.api_debug else None,
        lifespan=lifespan,
    )

    # 开发模式允许所有来源
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.api_debug else ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.exception_handler(MajimeException)
    async def majime_exception_handler(request: Request, exc: MajimeException):
        """处理 Majime 自定义异常"""
        if exc.status >= 500:
            logger.error("Request failed", code=exc.code, path=request.url.path)
        return exc.to_response(request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """请求校验失败统一返回 400"""
        logger.warning("Request validation failed", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(
            status_code=400,
            content=_error_body(
                400,
                "Validation Failed",
                "Request validation failed",
                "VALIDATION_ERROR",
                validation_errors=jsonable_encoder(exc.errors()),
            ),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理 FastAPI HTTP 异常"""
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, str(exc.detail), str(exc.detail), f"HTTP_{exc.status_code}"),
        )

    @app.exception_handler(Exception)
    async def internal_server_error_handler(request: Request, exc: Exception):
        """未捕获的异常：记录日志，不向调用方暴露内部信息"""
        logger.error("Unhandled server error", path=request.url.path, exc_info=True)
        return JSONResponse(
            status_code=500,
            content=_error_body(
                500,
                "Internal Server Error",
                "An internal server error occurred",
                "INTERNAL_SERVER_ERROR",
            ),
        )

    @app.get("/healthz")
    async def health_check():
        """健康检查端点"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


# 创建应用实例
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "mj_core.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
        log_level=settings.log_level.lower(),
        access_log=False,  # 使用自定义日志中间件
    )
