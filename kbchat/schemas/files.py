"""文件相关的请求/响应模型"""

from datetime import datetime

from pydantic import BaseModel, Field


class FileResponse(BaseModel):
    """文件响应"""
    id: int
    knowledge_id: int
    name: str
    file_type: str | None = None
    file_url: str
    vector_status: str = Field(..., description="向量入库状态：pending / indexed / failed")
    chunks_count: int = 0
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class FileListResponse(BaseModel):
    """文件列表响应"""
    files: list[FileResponse]
    pagination: Pagination
    search_term: str | None = None


class FileTypeInfoResponse(BaseModel):
    """文件类型信息"""
    file_name: str
    extension: str
    type: str = Field(..., description="text / markdown / word / pdf / image / unknown")
    description: str
