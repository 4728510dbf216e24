"""
API 依赖注入函数

这个模块定义了所有 API 路由共用的依赖项。
认证由上游网关完成，网关在 X-User-Id 头中注入已认证的用户 ID，这里直接信任该值。

使用示例：
    @router.get("/example")
    async def example_endpoint(
        user_id: int = Depends(get_current_user_id),   # 当前用户
        db: AsyncSession = Depends(get_db_session),    # 数据库会话
    ):
        pass
"""

from fastapi import Header, HTTPException, status

from kbchat.db.session import get_db
from kbchat.services.files import FileService, get_file_service
from kbchat.services.responder import RetrievalResponder, get_responder
from kbchat.services.streaming import StreamCoordinator, get_stream_coordinator


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> int:
    """
    获取当前用户 ID

    缺失或格式错误时返回 401。
    """
    if not x_user_id or not x_user_id.strip().isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHENTICATED", "detail": "缺少有效的用户身份"},
        )
    return int(x_user_id.strip())


def get_files() -> FileService:
    return get_file_service()


def get_coordinator() -> StreamCoordinator:
    return get_stream_coordinator()


def get_chat_responder() -> RetrievalResponder:
    return get_responder()


# 重新导出数据库会话获取函数，方便路由模块导入
get_db_session = get_db
