"""
数据库会话管理

- engine: 数据库连接池
- SessionLocal: 会话工厂，每个请求（或每次流式保存）使用独立会话
- get_db: FastAPI 依赖注入函数

使用方式（在 FastAPI 路由中）：
    from kbchat.db.session import get_db

    @router.get("/v1/knowledge")
    async def list_knowledge(db: AsyncSession = Depends(get_db)):
        ...
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from kbchat.config import get_settings
from kbchat.db.base import Base


def build_engine(database_url: str) -> AsyncEngine:
    """创建异步引擎；SQLite 不支持连接池参数，只对服务端数据库配置连接池"""
    kwargs: dict = {"echo": False, "future": True}
    if not database_url.startswith("sqlite"):
        kwargs.update(
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
        )
    return create_async_engine(database_url, **kwargs)


settings = get_settings()

engine = build_engine(settings.database_url)

# expire_on_commit=False：提交后仍可访问对象属性，不触发额外查询
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话（FastAPI 依赖注入函数）"""
    async with SessionLocal() as session:
        yield session


async def init_models(bind: AsyncEngine | None = None) -> None:
    """
    初始化数据库表（仅开发/测试环境使用）

    生产环境使用 Alembic 迁移：alembic upgrade head
    """
    from kbchat import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
