"""
文件管理路由

端点：
- POST   /v1/files/upload               上传文件并入库向量
- GET    /v1/files                      知识库文件列表（分页）
- GET    /v1/files/search               按文件名搜索（不区分大小写）
- GET    /v1/files/type-info            根据文件名判断文件类型
- GET    /v1/files/{id}                 文件详情
- POST   /v1/files/{id}/reingest        重新入库（复用已保存的文件）
- DELETE /v1/files/{id}                 删除文件（记录逻辑删除，本地文件与向量物理删除）
"""

import math

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from kbchat.api.deps import get_current_user_id, get_db_session, get_files
from kbchat.pipeline import describe_file
from kbchat.schemas import FileListResponse, FileResponse, FileTypeInfoResponse, Pagination
from kbchat.services.files import FileService

router = APIRouter(prefix="/v1/files", tags=["files"])

MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def _page(files, total: int, page: int, limit: int, search_term: str | None = None) -> FileListResponse:
    return FileListResponse(
        files=[FileResponse.model_validate(f) for f in files],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
        search_term=search_term,
    )


@router.post("/upload", response_model=FileResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(..., description="要上传的文件（txt/md/docx/pdf/图片）"),
    knowledge_id: int = Form(..., description="目标知识库 ID"),
    file_name: str | None = Form(default=None, description="文件名（默认使用上传文件名）"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    files: FileService = Depends(get_files),
):
    """
    上传文件

    文件保存后同步完成向量入库；入库失败时文件记录保留，vector_status=failed，
    可调用 reingest 重试。
    """
    name = file_name or file.filename
    if not name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "FILE_NAME_REQUIRED", "detail": "缺少文件名"},
        )

    data = await file.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={"code": "FILE_TOO_LARGE", "detail": "文件大小超过 50MB 限制"},
        )

    record = await files.upload(db, user_id, knowledge_id, name, data)
    return FileResponse.model_validate(record)


@router.get("", response_model=FileListResponse)
async def list_files(
    knowledge_id: int = Query(..., description="知识库 ID"),
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    files: FileService = Depends(get_files),
):
    items, total = await files.list_files(db, user_id, knowledge_id, page=page, limit=limit)
    return _page(items, total, page, limit)


@router.get("/search", response_model=FileListResponse)
async def search_files(
    knowledge_id: int = Query(..., description="知识库 ID"),
    filename: str = Query(..., min_length=1, description="文件名关键字"),
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    files: FileService = Depends(get_files),
):
    items, total = await files.list_files(
        db, user_id, knowledge_id, filename=filename, page=page, limit=limit
    )
    return _page(items, total, page, limit, search_term=filename)


@router.get("/type-info", response_model=FileTypeInfoResponse)
async def file_type_info(path: str = Query(..., description="文件名或路径")):
    info = describe_file(path)
    return FileTypeInfoResponse(
        file_name=info.file_name,
        extension=info.extension,
        type=info.type,
        description=info.description,
    )


@router.get("/{file_id}", response_model=FileResponse)
async def get_file(
    file_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    files: FileService = Depends(get_files),
):
    record = await files.get_file(db, user_id, file_id)
    return FileResponse.model_validate(record)


@router.post("/{file_id}/reingest", response_model=FileResponse)
async def reingest_file(
    file_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    files: FileService = Depends(get_files),
):
    record = await files.reingest(db, user_id, file_id)
    return FileResponse.model_validate(record)


@router.delete("/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file(
    file_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    files: FileService = Depends(get_files),
):
    await files.delete(db, user_id, file_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
