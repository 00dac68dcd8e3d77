import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.dead_letter_routes import router as dead_letter_router
from .api.system_routes import router as system_router
from .db import init_db
from .logging_config import logger
from .redis_client import close_redis_client, get_redis_client
from .settings import settings


async def handle_unexpected_error(request: Request, exc: Exception):
    """
    全局异常处理器，统一返回结构化错误响应并打印日志。
    """

    error_id = uuid.uuid4().hex
    logger.exception(
        "Unhandled error %s %s (error_id=%s)",
        request.method,
        request.url.path,
        error_id,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "服务器内部错误，请稍后再试",
            "code": 500,
            "details": {"error_id": error_id},
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理：
    - startup: 建表；PIPELINE_BACKEND=memory 时在当前事件循环内启动三条通道与 worker 池
    - shutdown: 停止内嵌 worker 池并关闭 Redis 连接
    """
    init_db()

    pipeline = None
    if settings.pipeline_backend == "memory":
        from .pipeline.worker_pool import EmbeddedPipeline

        pipeline = EmbeddedPipeline(get_redis_client())
        await pipeline.__aenter__()
        logger.info("in-process lanes started (PIPELINE_BACKEND=memory)")
    app.state.pipeline = pipeline

    try:
        yield
    finally:
        if pipeline is not None:
            await pipeline.__aexit__(None, None, None)
        app.state.pipeline = None
        await close_redis_client()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Reply Pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(Exception, handle_unexpected_error)

    # 运维接口：健康检查 / 指标 / 熔断器 / 会话状态 / 死信
    app.include_router(system_router)
    app.include_router(dead_letter_router)

    return app
