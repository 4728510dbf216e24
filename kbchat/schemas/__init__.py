"""
数据模式层 (Schemas)

使用 Pydantic 定义 API 的请求和响应模型：
- 自动数据验证
- 自动生成 OpenAPI 文档
- 类型安全的序列化/反序列化
"""

from kbchat.schemas.conversation import (
    ClientFrame,
    ConversationCreate,
    ConversationCreateResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationResponse,
    MessageResponse,
    SaveAiMessageRequest,
    SendMessageRequest,
    SendMessageResponse,
    StartAiResponseData,
    StopAiResponseData,
    StreamEnvelope,
    StreamMessageRequest,
)
from kbchat.schemas.files import FileListResponse, FileResponse, FileTypeInfoResponse, Pagination
from kbchat.schemas.knowledge import (
    KnowledgeCreate,
    KnowledgeDetailResponse,
    KnowledgeFileItem,
    KnowledgeListResponse,
    KnowledgeResponse,
    MembershipResponse,
)

__all__ = [
    # Knowledge
    "KnowledgeCreate",
    "KnowledgeResponse",
    "KnowledgeDetailResponse",
    "KnowledgeFileItem",
    "KnowledgeListResponse",
    "MembershipResponse",
    # Files
    "FileResponse",
    "FileListResponse",
    "FileTypeInfoResponse",
    "Pagination",
    # Conversations
    "ConversationCreate",
    "ConversationCreateResponse",
    "ConversationResponse",
    "ConversationDetailResponse",
    "ConversationListResponse",
    "MessageResponse",
    "SendMessageRequest",
    "SendMessageResponse",
    "StreamMessageRequest",
    "SaveAiMessageRequest",
    # WebSocket
    "ClientFrame",
    "StartAiResponseData",
    "StopAiResponseData",
    "StreamEnvelope",
]
