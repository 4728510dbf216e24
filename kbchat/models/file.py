"""
文件模型 (SourceFile)

记录上传到知识库的文件。文件字节保存在本地 uploads/ 目录，
file_url 保存对外的 static/ 地址；向量入库状态记录在 vector_status 中。
"""

from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kbchat.db.base import Base
from kbchat.models.mixins import SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from kbchat.models.knowledge import KnowledgeBase


class VectorStatus:
    """向量入库状态"""
    PENDING = "pending"
    INDEXED = "indexed"
    FAILED = "failed"


class SourceFile(TimestampMixin, SoftDeleteMixin, Base):
    """
    文件表

    字段说明：
    - name: 原始文件名
    - file_type: 大写扩展名（PDF / DOCX / PNG ...）
    - file_url: 对外地址（static/xxx.pdf）
    - vector_status: pending / indexed / failed
    - chunks_count: 最近一次成功入库的片段数
    """
    __tablename__ = "files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    knowledge_id: Mapped[int] = mapped_column(
        ForeignKey("knowledge.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str | None] = mapped_column(String(20))
    file_url: Mapped[str] = mapped_column(String(500), nullable=False)

    vector_status: Mapped[str] = mapped_column(
        String(20), default=VectorStatus.PENDING, nullable=False
    )
    chunks_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(String(500))

    knowledge: Mapped["KnowledgeBase"] = relationship("KnowledgeBase", back_populates="files")
