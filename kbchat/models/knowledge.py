"""
知识库模型 (KnowledgeBase & KnowledgeMember)

数据关系：
    KnowledgeBase (知识库，owner_id 为创建者)
       ├── KnowledgeMember (加入该知识库的用户)
       └── SourceFile (上传的文件)

每个知识库对应一个向量集合 knowledge_{id}。
访问权限：创建者、成员，或 is_shared=True 的公开知识库。
"""

from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, UniqueConstraint, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kbchat.db.base import Base
from kbchat.models.mixins import SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from kbchat.models.file import SourceFile


class KnowledgeBase(TimestampMixin, SoftDeleteMixin, Base):
    """知识库表"""
    __tablename__ = "knowledge"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    avatar: Mapped[str | None] = mapped_column(String(500))
    description: Mapped[str | None] = mapped_column(Text)

    # 公开的知识库可被任何用户检索和加入
    is_shared: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )

    # 创建者（用户由上游认证服务管理，这里只保存 ID）
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    members: Mapped[list["KnowledgeMember"]] = relationship(
        "KnowledgeMember",
        back_populates="knowledge",
        cascade="all, delete-orphan",
    )

    files: Mapped[list["SourceFile"]] = relationship(
        "SourceFile",
        back_populates="knowledge",
    )


class KnowledgeMember(TimestampMixin, Base):
    """知识库成员表（用户加入的知识库）"""
    __tablename__ = "knowledge_members"
    __table_args__ = (
        UniqueConstraint("knowledge_id", "user_id", name="uq_knowledge_member"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    knowledge_id: Mapped[int] = mapped_column(
        ForeignKey("knowledge.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    knowledge: Mapped["KnowledgeBase"] = relationship("KnowledgeBase", back_populates="members")
