"""知识库相关的请求/响应模型"""

from datetime import datetime

from pydantic import BaseModel, Field


class KnowledgeCreate(BaseModel):
    """创建知识库请求

    示例:
    ```json
    {
        "name": "产品手册",
        "description": "存放产品说明与常见问题",
        "is_shared": true
    }
    ```
    """
    name: str = Field(..., min_length=1, max_length=100, description="知识库名称")
    description: str | None = Field(default=None, description="描述信息")
    avatar: str | None = Field(default=None, max_length=500, description="头像地址")
    is_shared: bool = Field(default=False, description="是否公开（公开后其他用户可加入）")


class KnowledgeResponse(BaseModel):
    """知识库响应"""
    id: int
    name: str
    description: str | None = None
    avatar: str | None = None
    is_shared: bool
    owner_id: int
    created_at: datetime
    updated_at: datetime
    file_count: int | None = None

    model_config = {"from_attributes": True}


class KnowledgeFileItem(BaseModel):
    id: int
    name: str
    file_type: str | None = None
    file_url: str
    vector_status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class KnowledgeDetailResponse(KnowledgeResponse):
    """知识库详情（含文件列表与成员）"""
    files: list[KnowledgeFileItem] = []
    member_ids: list[int] = []
    is_owner: bool = False
    is_member: bool = False


class KnowledgeListResponse(BaseModel):
    """知识库列表响应"""
    items: list[KnowledgeResponse]
    total: int
    page: int | None = None
    page_size: int | None = None
    pages: int | None = None


class MembershipResponse(BaseModel):
    knowledge_id: int
    user_id: int
    message: str
