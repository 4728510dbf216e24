"""
对话服务

管理对话与消息：
- 创建对话（带第一条消息，同步生成回复）
- 发送消息（同步生成回复）
- 对话列表（含最后一条消息与消息数）、对话详情
- 获取当前对话（不存在时自动创建）
- 删除对话（对话逻辑删除，消息物理删除）、删除单条消息

流式回复见 kbchat.services.streaming。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kbchat.config import get_settings
from kbchat.exceptions import (
    ConversationNotFoundError,
    MessageNotFoundError,
    UnauthorizedError,
)
from kbchat.models import Conversation, ConversationType, Message, SenderType
from kbchat.services.knowledge import validate_knowledge_access
from kbchat.services.responder import RetrievalResponder, build_history, get_responder

logger = logging.getLogger(__name__)

TITLE_LENGTH = 20


def generate_title(first_message: str) -> str:
    """取第一条消息的前 20 个字符作为标题"""
    first_message = first_message.strip()
    if len(first_message) > TITLE_LENGTH:
        return first_message[:TITLE_LENGTH] + "..."
    return first_message


def _validate_mode(conversation_type: str, knowledge_id: int | None) -> None:
    if conversation_type not in ConversationType.ALL:
        raise ValueError(f"未知的对话类型: {conversation_type}")
    if conversation_type == ConversationType.KNOWLEDGE and knowledge_id is None:
        raise ValueError("知识库对话必须指定 knowledge_id")


async def get_owned_conversation(
    session: AsyncSession,
    conversation_id: int,
    user_id: int,
) -> Conversation:
    """
    获取用户自己的对话

    Raises:
        ConversationNotFoundError: 对话不存在或已删除
        UnauthorizedError: 对话属于其他用户
    """
    conversation = await session.get(Conversation, conversation_id)
    if conversation is None or conversation.is_deleted:
        raise ConversationNotFoundError()
    if conversation.user_id != user_id:
        raise UnauthorizedError("无权访问该对话")
    return conversation


async def recent_messages(
    session: AsyncSession,
    conversation_id: int,
    limit: int | None = None,
) -> list[Message]:
    """最近 limit 条消息，按时间正序返回"""
    limit = limit or get_settings().history_limit
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
    )
    rows = (await session.execute(stmt)).scalars().all()
    return list(reversed(rows))


async def add_message(
    session: AsyncSession,
    conversation_id: int,
    sender_type: str,
    content: str,
    is_success: bool | None = None,
) -> Message:
    """写入一条消息并刷新对话的更新时间"""
    message = Message(
        conversation_id=conversation_id,
        sender_type=sender_type,
        content=content,
        is_success=is_success,
    )
    session.add(message)
    await session.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(updated_at=datetime.now(timezone.utc))
    )
    await session.commit()
    await session.refresh(message)
    return message


async def generate_reply(
    session: AsyncSession,
    conversation: Conversation,
    content: str,
    responder: RetrievalResponder | None = None,
) -> tuple[Message, Message]:
    """
    非流式回复：保存用户消息，完整生成回答后保存助手消息

    历史在保存用户消息之前读取，当前问题不会重复出现在历史中。
    """
    responder = responder or get_responder()
    history = build_history(await recent_messages(session, conversation.id))
    user_message = await add_message(session, conversation.id, SenderType.USER, content)

    parts = [
        piece async for piece in responder.respond(
            conversation.type, content, conversation.knowledge_id, history
        )
    ]
    ai_message = await add_message(
        session, conversation.id, SenderType.ASSISTANT, "".join(parts), is_success=True
    )
    return user_message, ai_message


async def create_conversation(
    session: AsyncSession,
    user_id: int,
    *,
    conversation_type: str,
    first_message: str,
    knowledge_id: int | None = None,
    title: str | None = None,
    responder: RetrievalResponder | None = None,
) -> tuple[Conversation, list[Message]]:
    """创建对话并回复第一条消息"""
    _validate_mode(conversation_type, knowledge_id)
    if conversation_type == ConversationType.KNOWLEDGE:
        await validate_knowledge_access(session, knowledge_id, user_id)

    conversation = Conversation(
        user_id=user_id,
        type=conversation_type,
        knowledge_id=knowledge_id if conversation_type == ConversationType.KNOWLEDGE else None,
        title=title or generate_title(first_message),
    )
    session.add(conversation)
    await session.commit()
    await session.refresh(conversation)
    logger.info(f"创建对话: {conversation.id} (type={conversation_type}, knowledge={knowledge_id})")

    user_message, ai_message = await generate_reply(session, conversation, first_message, responder)
    return conversation, [user_message, ai_message]


async def send_message(
    session: AsyncSession,
    user_id: int,
    conversation_id: int,
    content: str,
    responder: RetrievalResponder | None = None,
) -> tuple[Message, Message]:
    conversation = await get_owned_conversation(session, conversation_id, user_id)
    return await generate_reply(session, conversation, content, responder)


@dataclass
class ConversationSummary:
    conversation: Conversation
    last_message: Message | None
    message_count: int


async def list_conversations(
    session: AsyncSession,
    user_id: int,
    *,
    conversation_type: str | None = None,
    knowledge_id: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[ConversationSummary], int]:
    """分页查询对话列表，按更新时间倒序"""
    conditions = [Conversation.user_id == user_id, Conversation.is_deleted.is_(False)]
    if conversation_type:
        conditions.append(Conversation.type == conversation_type)
    if knowledge_id is not None:
        conditions.append(Conversation.knowledge_id == knowledge_id)

    total = (
        await session.execute(select(func.count()).select_from(Conversation).where(*conditions))
    ).scalar() or 0

    stmt = (
        select(Conversation)
        .where(*conditions)
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    conversations = (await session.execute(stmt)).scalars().all()

    items: list[ConversationSummary] = []
    for conv in conversations:
        last = (
            await session.execute(
                select(Message)
                .where(Message.conversation_id == conv.id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        count = (
            await session.execute(
                select(func.count()).select_from(Message).where(Message.conversation_id == conv.id)
            )
        ).scalar() or 0
        items.append(ConversationSummary(conversation=conv, last_message=last, message_count=count))

    return items, total


async def get_conversation_detail(
    session: AsyncSession,
    conversation_id: int,
    user_id: int,
) -> tuple[Conversation, list[Message]]:
    conversation = await get_owned_conversation(session, conversation_id, user_id)
    messages = (
        await session.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
    ).scalars().all()
    return conversation, list(messages)


async def get_current_conversation(
    session: AsyncSession,
    user_id: int,
    *,
    conversation_type: str,
    knowledge_id: int | None = None,
) -> tuple[Conversation, list[Message]]:
    """
    获取当前对话（最近更新的一个），不存在时创建一个空对话

    全网对话按 (用户, global) 查找，知识库对话按 (用户, knowledge, knowledge_id) 查找。
    """
    _validate_mode(conversation_type, knowledge_id)
    if conversation_type == ConversationType.KNOWLEDGE:
        await validate_knowledge_access(session, knowledge_id, user_id)

    conditions = [
        Conversation.user_id == user_id,
        Conversation.type == conversation_type,
        Conversation.is_deleted.is_(False),
    ]
    if conversation_type == ConversationType.KNOWLEDGE:
        conditions.append(Conversation.knowledge_id == knowledge_id)

    conversation = (
        await session.execute(
            select(Conversation)
            .where(*conditions)
            .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    if conversation is None:
        conversation = Conversation(
            user_id=user_id,
            type=conversation_type,
            knowledge_id=knowledge_id if conversation_type == ConversationType.KNOWLEDGE else None,
            title="新对话",
        )
        session.add(conversation)
        await session.commit()
        await session.refresh(conversation)
        logger.info(f"自动创建当前对话: {conversation.id} (type={conversation_type})")

    return await get_conversation_detail(session, conversation.id, user_id)


async def delete_conversation(session: AsyncSession, conversation_id: int, user_id: int) -> None:
    """对话逻辑删除，消息物理删除（不可恢复）"""
    conversation = await get_owned_conversation(session, conversation_id, user_id)
    conversation.is_deleted = True
    await session.execute(delete(Message).where(Message.conversation_id == conversation_id))
    await session.commit()
    logger.info(f"删除对话: {conversation_id}")


async def delete_message(session: AsyncSession, message_id: int, user_id: int) -> None:
    """物理删除单条消息（仅对话所有者）"""
    message = await session.get(Message, message_id)
    if message is None:
        raise MessageNotFoundError()

    conversation = await session.get(Conversation, message.conversation_id)
    if conversation is None or conversation.user_id != user_id:
        raise UnauthorizedError("无权限删除此消息")

    await session.delete(message)
    await session.commit()
    logger.info(f"删除消息: {message_id}")
