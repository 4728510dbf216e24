"""
业务异常定义

所有对外暴露的错误都继承自 KBChatError，携带：
- code: 稳定的错误码（前端据此分支处理）
- message: 可读的错误信息
- status_code: 对应的 HTTP 状态码

FastAPI 层统一渲染为 {"detail": message, "code": code}。
"""


class KBChatError(Exception):
    """业务异常基类"""

    code = "UNKNOWN_ERROR"
    status_code = 500
    default_message = "服务器内部错误"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


# ==================== 文档入库 ====================

class UnsupportedFormatError(KBChatError):
    """不支持的文件类型"""
    code = "UNSUPPORTED_FORMAT"
    status_code = 400
    default_message = "不支持的文件类型"


class EmptyContentError(KBChatError):
    """文件中没有可用的文本内容"""
    code = "EMPTY_CONTENT"
    status_code = 400
    default_message = "无法从文件中提取内容"


class IngestionError(KBChatError):
    """文档入库失败（向量化或写入向量库出错）"""
    code = "INGESTION_FAILED"
    status_code = 500
    default_message = "文档入库失败"


class ExtractionError(IngestionError):
    """文本提取失败"""
    code = "EXTRACTION_FAILED"
    status_code = 422
    default_message = "文件内容提取失败"


# ==================== 基础设施 ====================

class EmbeddingError(KBChatError):
    """向量化错误"""
    code = "EMBEDDING_FAILED"
    status_code = 502
    default_message = "向量化服务调用失败"


class VectorStoreError(KBChatError):
    """向量存储错误"""
    code = "VECTOR_STORE_FAILED"
    status_code = 502
    default_message = "向量库操作失败"


class CollectionNotFoundError(VectorStoreError):
    """向量集合不存在（检索时视为空结果）"""
    code = "COLLECTION_NOT_FOUND"
    status_code = 404
    default_message = "向量集合不存在"


class LLMError(KBChatError):
    """对话模型调用错误"""
    code = "LLM_FAILED"
    status_code = 502
    default_message = "对话模型调用失败"


# ==================== 权限与资源 ====================

class UnauthorizedError(KBChatError):
    """无权访问该资源"""
    code = "UNAUTHORIZED"
    status_code = 403
    default_message = "无权限访问"


class KnowledgeNotFoundError(KBChatError):
    code = "KNOWLEDGE_NOT_FOUND"
    status_code = 404
    default_message = "知识库未找到"


class KnowledgeUnauthorizedError(KBChatError):
    code = "KNOWLEDGE_UNAUTHORIZED"
    status_code = 403
    default_message = "知识库不存在或无访问权限"


class KnowledgeNotSharedError(KBChatError):
    code = "KNOWLEDGE_NOT_SHARED"
    status_code = 400
    default_message = "知识库未公开，无法加入"


class ConversationNotFoundError(KBChatError):
    code = "CONVERSATION_NOT_FOUND"
    status_code = 404
    default_message = "对话不存在"


class MessageNotFoundError(KBChatError):
    code = "MESSAGE_NOT_FOUND"
    status_code = 404
    default_message = "消息不存在"


class SourceFileNotFoundError(KBChatError):
    code = "FILE_NOT_FOUND"
    status_code = 404
    default_message = "文件不存在"


class KnowledgeAlreadyJoinedError(KBChatError):
    code = "KNOWLEDGE_HAS_JOINED"
    status_code = 409
    default_message = "已经加入该知识库"


class KnowledgeOwnerLeaveError(KBChatError):
    code = "KNOWLEDGE_HAS_OWNED"
    status_code = 400
    default_message = "知识库创建者不能退出自己的知识库"


class KnowledgeNotJoinedError(KBChatError):
    code = "KNOWLEDGE_NOT_JOINED"
    status_code = 400
    default_message = "尚未加入该知识库"
