"""
对话管理路由

端点：
- POST   /v1/conversations                      创建对话（带第一条消息，同步回复）
- GET    /v1/conversations                      对话列表（按类型/知识库筛选，分页）
- GET    /v1/conversations/current              当前对话（不存在时自动创建）
- POST   /v1/conversations/stream               流式回答（SSE）
- POST   /v1/conversations/ai-message           保存助手消息（配合 auto_save=false 使用）
- DELETE /v1/conversations/messages/{id}        删除单条消息
- GET    /v1/conversations/{id}                 对话详情（含消息）
- POST   /v1/conversations/{id}/messages        发送消息（同步回复）
- DELETE /v1/conversations/{id}                 删除对话
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from kbchat.api.deps import get_chat_responder, get_coordinator, get_current_user_id, get_db_session
from kbchat.schemas import (
    ConversationCreate,
    ConversationCreateResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationResponse,
    MessageResponse,
    SaveAiMessageRequest,
    SendMessageRequest,
    SendMessageResponse,
    StreamMessageRequest,
)
from kbchat.schemas.conversation import ConversationTypeLiteral
from kbchat.services import conversation as conversation_service
from kbchat.services.responder import RetrievalResponder
from kbchat.services.streaming import StreamCoordinator, relay_sse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/conversations", tags=["conversations"])


def _detail(conversation, messages) -> ConversationDetailResponse:
    return ConversationDetailResponse(
        id=conversation.id,
        user_id=conversation.user_id,
        type=conversation.type,
        knowledge_id=conversation.knowledge_id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        messages=[MessageResponse.model_validate(m) for m in messages],
    )


# ==================== 对话 CRUD ====================

@router.post("", response_model=ConversationCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    payload: ConversationCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    responder: RetrievalResponder = Depends(get_chat_responder),
):
    """
    创建新对话

    标题默认取第一条消息的前 20 个字符；知识库对话会先校验知识库访问权限。
    """
    conversation, messages = await conversation_service.create_conversation(
        db,
        user_id,
        conversation_type=payload.type,
        first_message=payload.first_message,
        knowledge_id=payload.knowledge_id,
        title=payload.title,
        responder=responder,
    )
    return ConversationCreateResponse(
        conversation=ConversationResponse.model_validate(conversation),
        messages=[MessageResponse.model_validate(m) for m in messages],
    )


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    type: ConversationTypeLiteral | None = Query(None, description="对话类型"),
    knowledge_id: int | None = Query(None, description="知识库 ID"),
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """获取对话列表，按更新时间倒序，附带最后一条消息与消息数量"""
    summaries, total = await conversation_service.list_conversations(
        db,
        user_id,
        conversation_type=type,
        knowledge_id=knowledge_id,
        page=page,
        limit=limit,
    )
    items = []
    for summary in summaries:
        item = ConversationResponse.model_validate(summary.conversation)
        item.last_message = (
            MessageResponse.model_validate(summary.last_message) if summary.last_message else None
        )
        item.message_count = summary.message_count
        items.append(item)
    return ConversationListResponse(items=items, total=total, page=page, limit=limit)


@router.get("/current", response_model=ConversationDetailResponse)
async def get_current_conversation(
    type: ConversationTypeLiteral = Query("global", description="对话类型"),
    knowledge_id: int | None = Query(None, description="知识库 ID（知识库对话必填）"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    if type == "knowledge" and knowledge_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "KNOWLEDGE_ID_REQUIRED", "detail": "知识库对话必须指定 knowledge_id"},
        )
    conversation, messages = await conversation_service.get_current_conversation(
        db, user_id, conversation_type=type, knowledge_id=knowledge_id
    )
    return _detail(conversation, messages)


# ==================== 流式回答 ====================

@router.post("/stream")
async def stream_message(
    payload: StreamMessageRequest,
    user_id: int = Depends(get_current_user_id),
    coordinator: StreamCoordinator = Depends(get_coordinator),
):
    """
    流式回答（SSE）

    对话归属在返回任何事件之前校验，失败时直接返回错误响应。

    事件格式：
    ```
    data: {"type": "token", "content": "这是", "timestamp": "..."}

    data: {"type": "token", "content": "回答", "timestamp": "..."}

    data: {"type": "done", "content": "", "timestamp": "..."}
    ```
    客户端断开时，已输出的部分以 is_success=false 保存。
    """
    run = await coordinator.stream_response(payload.conversation_id, payload.user_message, user_id)
    return StreamingResponse(
        relay_sse(coordinator, run, auto_save=payload.auto_save),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # 禁用 nginx 缓冲
        },
    )


@router.post("/ai-message", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def save_ai_message(
    payload: SaveAiMessageRequest,
    user_id: int = Depends(get_current_user_id),
    coordinator: StreamCoordinator = Depends(get_coordinator),
):
    """保存助手消息；isSuccess=false 表示用户中止，content 为已输出部分"""
    message = await coordinator.save_assistant_message(
        payload.conversation_id, payload.content, payload.is_success, user_id=user_id
    )
    return MessageResponse.model_validate(message)


# ==================== 消息 ====================

@router.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    message_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    await conversation_service.delete_message(db, message_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    conversation, messages = await conversation_service.get_conversation_detail(
        db, conversation_id, user_id
    )
    return _detail(conversation, messages)


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse)
async def send_message(
    conversation_id: int,
    payload: SendMessageRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    responder: RetrievalResponder = Depends(get_chat_responder),
):
    """发送消息并同步返回完整回答"""
    user_message, ai_message = await conversation_service.send_message(
        db, user_id, conversation_id, payload.content, responder
    )
    return SendMessageResponse(
        user_message=MessageResponse.model_validate(user_message),
        ai_message=MessageResponse.model_validate(ai_message),
    )


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """删除对话：对话逻辑删除，消息物理删除"""
    await conversation_service.delete_conversation(db, conversation_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
