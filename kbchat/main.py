"""
FastAPI 应用入口

- 生命周期：开发/测试环境自动建表；启动时把上次中断的入库标记为失败；
  关闭时等待断线后补存的助手消息写完
- 中间件：请求追踪、CORS
- 错误响应统一为 {"detail": ..., "code": ...}
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from kbchat import __version__
from kbchat.api.routes import api_router
from kbchat.config import get_settings
from kbchat.db.session import SessionLocal, init_models
from kbchat.exceptions import KBChatError
from kbchat.infra.logging import get_logger, setup_logging
from kbchat.middleware import RequestTraceMiddleware
from kbchat.models import SourceFile, VectorStatus
from kbchat.services.streaming import drain_pending_saves

setup_logging()
logger = get_logger(__name__)

settings = get_settings()

INTERRUPTED_MESSAGE = "服务重启，入库中断，请重新入库"


async def _mark_interrupted_files() -> None:
    """
    入库在请求内同步完成，服务重启时仍为 pending 的文件不会再被处理，
    标记为 failed 后可通过 reingest 重试。
    """
    try:
        async with SessionLocal() as session:
            result = await session.execute(
                update(SourceFile)
                .where(SourceFile.vector_status == VectorStatus.PENDING)
                .values(vector_status=VectorStatus.FAILED, error_message=INTERRUPTED_MESSAGE)
            )
            await session.commit()
    except SQLAlchemyError as e:
        # 首次启动时表可能还不存在
        logger.debug(f"检查中断的入库任务失败: {e}")
        return

    if result.rowcount:
        logger.warning(f"{result.rowcount} 个文件的入库被中断，已标记为 failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"应用启动，环境: {settings.environment}")

    if settings.environment in ("dev", "development", "test"):
        await init_models()
        logger.info("数据库表已初始化（开发模式）")
    else:
        logger.info("跳过自动建表，请使用 alembic upgrade head")

    await _mark_interrupted_files()

    yield

    await drain_pending_saves()
    logger.info("应用关闭")


app = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)

# 后添加的中间件先执行
app.add_middleware(RequestTraceMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.exception_handler(KBChatError)
async def kbchat_error_handler(_: Request, exc: KBChatError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    """HTTPException 的 detail 可以是字符串，或 {"code", "detail"} 字典"""
    code = "UNKNOWN_ERROR"
    detail = exc.detail
    if isinstance(detail, dict):
        code = detail.get("code") or code
        detail = detail.get("detail") or detail.get("message") or detail
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": detail, "code": code},
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors()), "code": "VALIDATION_ERROR"},
    )
