"""
初始化数据库结构

- knowledge: 知识库
- knowledge_members: 知识库成员
- files: 知识库文件（含向量入库状态）
- conversations: 对话（global / knowledge）
- messages: 消息（is_success 区分正常结束与用户中止）

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    """升级：创建全部业务表"""

    op.create_table(
        "knowledge",
        *_timestamps(),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("avatar", sa.String(length=500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_shared", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_knowledge_name", "knowledge", ["name"])
    op.create_index("ix_knowledge_owner_id", "knowledge", ["owner_id"])
    op.create_index("ix_knowledge_is_deleted", "knowledge", ["is_deleted"])

    op.create_table(
        "knowledge_members",
        *_timestamps(),
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("knowledge_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["knowledge_id"], ["knowledge.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("knowledge_id", "user_id", name="uq_knowledge_member"),
    )
    op.create_index("ix_knowledge_members_knowledge_id", "knowledge_members", ["knowledge_id"])
    op.create_index("ix_knowledge_members_user_id", "knowledge_members", ["user_id"])

    op.create_table(
        "files",
        *_timestamps(),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("knowledge_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("file_type", sa.String(length=20), nullable=True),
        sa.Column("file_url", sa.String(length=500), nullable=False),
        sa.Column("vector_status", sa.String(length=20), server_default="pending", nullable=False),
        sa.Column("chunks_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.ForeignKeyConstraint(["knowledge_id"], ["knowledge.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_files_knowledge_id", "files", ["knowledge_id"])
    op.create_index("ix_files_is_deleted", "files", ["is_deleted"])

    op.create_table(
        "conversations",
        *_timestamps(),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("knowledge_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["knowledge_id"], ["knowledge.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conversations_user_id", "conversations", ["user_id"])
    op.create_index("ix_conversations_knowledge_id", "conversations", ["knowledge_id"])
    op.create_index("ix_conversations_is_deleted", "conversations", ["is_deleted"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("conversation_id", sa.Integer(), nullable=False),
        sa.Column("sender_type", sa.String(length=20), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_success", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])


def downgrade() -> None:
    """降级：删除全部业务表"""
    op.drop_index("ix_messages_conversation_id", table_name="messages")
    op.drop_table("messages")

    op.drop_index("ix_conversations_is_deleted", table_name="conversations")
    op.drop_index("ix_conversations_knowledge_id", table_name="conversations")
    op.drop_index("ix_conversations_user_id", table_name="conversations")
    op.drop_table("conversations")

    op.drop_index("ix_files_is_deleted", table_name="files")
    op.drop_index("ix_files_knowledge_id", table_name="files")
    op.drop_table("files")

    op.drop_index("ix_knowledge_members_user_id", table_name="knowledge_members")
    op.drop_index("ix_knowledge_members_knowledge_id", table_name="knowledge_members")
    op.drop_table("knowledge_members")

    op.drop_index("ix_knowledge_is_deleted", table_name="knowledge")
    op.drop_index("ix_knowledge_owner_id", table_name="knowledge")
    op.drop_index("ix_knowledge_name", table_name="knowledge")
    op.drop_table("knowledge")
