"""
对话相关的请求/响应模型

对话类型：global（全网对话）/ knowledge（知识库对话，必须带 knowledge_id）。
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


ConversationTypeLiteral = Literal["global", "knowledge"]


# ==================== 消息 ====================

class MessageResponse(BaseModel):
    """消息响应"""
    id: int
    conversation_id: int
    sender_type: str
    content: str
    is_success: bool | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SendMessageRequest(BaseModel):
    """发送消息请求（非流式）"""
    content: str = Field(..., min_length=1, description="消息内容")


class SendMessageResponse(BaseModel):
    user_message: MessageResponse
    ai_message: MessageResponse


# ==================== 对话 ====================

class ConversationCreate(BaseModel):
    """创建对话请求

    示例:
    ```json
    {
        "type": "knowledge",
        "knowledge_id": 7,
        "first_message": "退货流程是什么？"
    }
    ```
    """
    type: ConversationTypeLiteral = Field(default="global", description="对话类型")
    knowledge_id: int | None = Field(default=None, description="知识库 ID（知识库对话必填）")
    first_message: str = Field(..., min_length=1, description="第一条消息")
    title: str | None = Field(default=None, max_length=255, description="对话标题（默认取第一条消息前 20 个字符）")

    @model_validator(mode="after")
    def _check_knowledge(self) -> "ConversationCreate":
        if self.type == "knowledge" and self.knowledge_id is None:
            raise ValueError("知识库对话必须指定 knowledge_id")
        return self


class ConversationResponse(BaseModel):
    """对话响应（不含消息）"""
    id: int
    user_id: int
    type: str
    knowledge_id: int | None = None
    title: str | None = None
    created_at: datetime
    updated_at: datetime
    last_message: MessageResponse | None = None
    message_count: int | None = None

    model_config = {"from_attributes": True}


class ConversationDetailResponse(BaseModel):
    """对话详情响应（含消息）"""
    id: int
    user_id: int
    type: str
    knowledge_id: int | None = None
    title: str | None = None
    created_at: datetime
    updated_at: datetime
    messages: list[MessageResponse] = []

    model_config = {"from_attributes": True}


class ConversationCreateResponse(BaseModel):
    conversation: ConversationResponse
    messages: list[MessageResponse]


class ConversationListResponse(BaseModel):
    """对话列表响应"""
    items: list[ConversationResponse]
    total: int
    page: int | None = None
    limit: int | None = None


# ==================== 流式回答 ====================

class StreamMessageRequest(BaseModel):
    """流式回答请求

    auto_save=false 时服务端不保存助手消息，由客户端结束后调用保存接口。
    """
    conversation_id: int
    user_message: str = Field(..., min_length=1)
    auto_save: bool = Field(default=True, description="流结束或中断时是否由服务端保存助手消息")


class SaveAiMessageRequest(BaseModel):
    """保存助手消息（流式回答结束或中止后调用）"""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: int
    content: str = Field(default="")
    is_success: bool = Field(default=True, alias="isSuccess", description="false 表示用户中止")


# ==================== WebSocket 帧 ====================

class StreamEnvelope(BaseModel):
    """流式事件信封"""
    type: Literal["start", "token", "done", "error", "stopped"]
    content: str = ""
    timestamp: str


class StartAiResponseData(BaseModel):
    conversation_id: int
    user_message: str = Field(..., min_length=1)


class StopAiResponseData(BaseModel):
    conversation_id: int


class ClientFrame(BaseModel):
    """客户端帧：{"type": "startAiResponse" | "stopAiResponse", "data": {...}}"""
    type: str
    data: dict = Field(default_factory=dict)
