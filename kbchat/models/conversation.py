"""
对话模型 (Conversation & Message)

数据关系：
    Conversation (对话，type 为 global 或 knowledge)
       └── Message (消息)

对话逻辑删除；删除对话时其消息物理删除，不可恢复。
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kbchat.db.base import Base
from kbchat.models.mixins import SoftDeleteMixin, TimestampMixin


class ConversationType:
    """对话模式"""
    GLOBAL = "global"          # 全网对话，不检索知识库
    KNOWLEDGE = "knowledge"    # 基于知识库的检索增强对话

    ALL = (GLOBAL, KNOWLEDGE)


class SenderType:
    USER = "user"
    ASSISTANT = "assistant"


class Conversation(TimestampMixin, SoftDeleteMixin, Base):
    """
    对话表

    字段说明：
    - user_id: 所属用户
    - type: global / knowledge
    - knowledge_id: 知识库对话必填，全网对话为空
    - title: 对话标题（取首条消息前 20 个字符）
    """
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    type: Mapped[str] = mapped_column(String(20), nullable=False, default=ConversationType.GLOBAL)

    knowledge_id: Mapped[int | None] = mapped_column(
        ForeignKey("knowledge.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    title: Mapped[str | None] = mapped_column(String(255))

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by=lambda: [Message.created_at, Message.id],
    )


class Message(Base):
    """
    消息表

    字段说明：
    - sender_type: user / assistant
    - is_success: 助手消息完整生成为 True，被用户中止为 False；用户消息为空
    """
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    sender_type: Mapped[str] = mapped_column(String(20), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False, default="")

    is_success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    conversation: Mapped["Conversation"] = relationship(
        "Conversation",
        back_populates="messages",
    )
