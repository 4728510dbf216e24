"""
知识库管理路由

端点：
- POST   /v1/knowledge                  创建知识库
- GET    /v1/knowledge/shared           公开知识库列表（名称筛选 + 分页）
- GET    /v1/knowledge/joined           我加入的知识库
- GET    /v1/knowledge/owned            我创建的知识库
- GET    /v1/knowledge/{id}             知识库详情（含文件列表）
- POST   /v1/knowledge/{id}/join        加入公开知识库
- POST   /v1/knowledge/{id}/leave       退出知识库
- DELETE /v1/knowledge/{id}             删除知识库（仅创建者，同时删除向量集合）
"""

import math

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from kbchat.api.deps import get_current_user_id, get_db_session
from kbchat.schemas import (
    KnowledgeCreate,
    KnowledgeDetailResponse,
    KnowledgeFileItem,
    KnowledgeListResponse,
    KnowledgeResponse,
    MembershipResponse,
)
from kbchat.services import knowledge as knowledge_service

router = APIRouter(prefix="/v1/knowledge", tags=["knowledge"])


@router.post("", response_model=KnowledgeResponse, status_code=status.HTTP_201_CREATED)
async def create_knowledge(
    payload: KnowledgeCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """创建知识库，创建者即为当前用户"""
    knowledge = await knowledge_service.create_knowledge(
        db,
        user_id,
        name=payload.name,
        description=payload.description,
        avatar=payload.avatar,
        is_shared=payload.is_shared,
    )
    return KnowledgeResponse.model_validate(knowledge)


@router.get("/shared", response_model=KnowledgeListResponse)
async def list_shared_knowledge(
    name: str | None = Query(None, description="名称模糊匹配"),
    owner_id: int | None = Query(None, description="按创建者筛选"),
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=100, description="每页数量"),
    _: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    rows, total = await knowledge_service.list_shared_knowledge(
        db, name=name, owner_id=owner_id, page=page, page_size=page_size
    )
    items = []
    for kb, file_count in rows:
        item = KnowledgeResponse.model_validate(kb)
        item.file_count = file_count
        items.append(item)
    return KnowledgeListResponse(
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/joined", response_model=KnowledgeListResponse)
async def list_joined_knowledge(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    items = await knowledge_service.list_joined_knowledge(db, user_id)
    return KnowledgeListResponse(
        items=[KnowledgeResponse.model_validate(kb) for kb in items],
        total=len(items),
    )


@router.get("/owned", response_model=KnowledgeListResponse)
async def list_owned_knowledge(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    items = await knowledge_service.list_owned_knowledge(db, user_id)
    return KnowledgeListResponse(
        items=[KnowledgeResponse.model_validate(kb) for kb in items],
        total=len(items),
    )


@router.get("/{knowledge_id}", response_model=KnowledgeDetailResponse)
async def get_knowledge(
    knowledge_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """
    获取知识库详情

    创建者、成员或公开知识库可访问，否则返回 403。
    """
    detail = await knowledge_service.get_knowledge(db, knowledge_id, user_id)
    base = KnowledgeResponse.model_validate(detail["knowledge"])
    return KnowledgeDetailResponse(
        **base.model_dump(),
        files=[KnowledgeFileItem.model_validate(f) for f in detail["files"]],
        member_ids=detail["member_ids"],
        is_owner=detail["is_owner"],
        is_member=detail["is_member"],
    )


@router.post("/{knowledge_id}/join", response_model=MembershipResponse)
async def join_knowledge(
    knowledge_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    await knowledge_service.join_knowledge(db, knowledge_id, user_id)
    return MembershipResponse(knowledge_id=knowledge_id, user_id=user_id, message="加入知识库成功")


@router.post("/{knowledge_id}/leave", response_model=MembershipResponse)
async def leave_knowledge(
    knowledge_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    await knowledge_service.leave_knowledge(db, knowledge_id, user_id)
    return MembershipResponse(knowledge_id=knowledge_id, user_id=user_id, message="退出知识库成功")


@router.delete("/{knowledge_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_knowledge(
    knowledge_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """删除知识库（不可恢复：向量集合会被一并删除）"""
    await knowledge_service.delete_knowledge(db, knowledge_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
