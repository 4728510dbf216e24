"""
数据模型层 (ORM Models)

数据模型关系图：
    KnowledgeBase (知识库)
       ├── KnowledgeMember (成员)
       └── SourceFile (文件)

    Conversation (对话，可关联一个知识库)
       └── Message (消息)

用户由上游认证服务管理，表中只保存用户 ID。
"""

from kbchat.models.conversation import Conversation, ConversationType, Message, SenderType
from kbchat.models.file import SourceFile, VectorStatus
from kbchat.models.knowledge import KnowledgeBase, KnowledgeMember

__all__ = [
    "Conversation",
    "ConversationType",
    "KnowledgeBase",
    "KnowledgeMember",
    "Message",
    "SenderType",
    "SourceFile",
    "VectorStatus",
]
