"""
知识库服务

访问规则：知识库未删除，且当前用户是创建者、成员，或知识库已公开。
删除知识库只允许创建者操作，会同时删除其向量集合。
"""

import logging

from sqlalchemy import exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from kbchat.exceptions import (
    KnowledgeAlreadyJoinedError,
    KnowledgeNotFoundError,
    KnowledgeNotJoinedError,
    KnowledgeNotSharedError,
    KnowledgeOwnerLeaveError,
    KnowledgeUnauthorizedError,
)
from kbchat.models import KnowledgeBase, KnowledgeMember, SourceFile
from kbchat.services.ingestion import IngestionService, delete_knowledge_base

logger = logging.getLogger(__name__)


def _access_condition(user_id: int):
    is_member = exists().where(
        KnowledgeMember.knowledge_id == KnowledgeBase.id,
        KnowledgeMember.user_id == user_id,
    )
    return or_(
        KnowledgeBase.owner_id == user_id,
        KnowledgeBase.is_shared.is_(True),
        is_member,
    )


async def validate_knowledge_access(
    session: AsyncSession,
    knowledge_id: int,
    user_id: int,
) -> KnowledgeBase:
    """
    校验知识库访问权限

    Raises:
        KnowledgeUnauthorizedError: 知识库不存在、已删除或无权访问
    """
    stmt = select(KnowledgeBase).where(
        KnowledgeBase.id == knowledge_id,
        KnowledgeBase.is_deleted.is_(False),
        _access_condition(user_id),
    )
    knowledge = (await session.execute(stmt)).scalar_one_or_none()
    if knowledge is None:
        raise KnowledgeUnauthorizedError()
    return knowledge


async def create_knowledge(
    session: AsyncSession,
    user_id: int,
    *,
    name: str,
    description: str | None = None,
    avatar: str | None = None,
    is_shared: bool = False,
) -> KnowledgeBase:
    knowledge = KnowledgeBase(
        name=name,
        description=description,
        avatar=avatar,
        is_shared=is_shared,
        owner_id=user_id,
    )
    session.add(knowledge)
    await session.commit()
    await session.refresh(knowledge)
    logger.info(f"创建知识库: {knowledge.id} ({name})")
    return knowledge


async def list_shared_knowledge(
    session: AsyncSession,
    *,
    name: str | None = None,
    owner_id: int | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[tuple[KnowledgeBase, int]], int]:
    """
    分页查询公开知识库

    Returns:
        ([(知识库, 文件数)], 总数)
    """
    conditions = [KnowledgeBase.is_deleted.is_(False), KnowledgeBase.is_shared.is_(True)]
    if name:
        conditions.append(KnowledgeBase.name.ilike(f"%{name}%"))
    if owner_id is not None:
        conditions.append(KnowledgeBase.owner_id == owner_id)

    total = (
        await session.execute(select(func.count()).select_from(KnowledgeBase).where(*conditions))
    ).scalar() or 0

    file_count = (
        select(func.count(SourceFile.id))
        .where(SourceFile.knowledge_id == KnowledgeBase.id, SourceFile.is_deleted.is_(False))
        .correlate(KnowledgeBase)
        .scalar_subquery()
    )
    stmt = (
        select(KnowledgeBase, file_count)
        .where(*conditions)
        .order_by(KnowledgeBase.updated_at.desc(), KnowledgeBase.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    rows = (await session.execute(stmt)).all()
    return [(kb, count) for kb, count in rows], total


async def list_joined_knowledge(session: AsyncSession, user_id: int) -> list[KnowledgeBase]:
    """查询用户加入的公开知识库"""
    stmt = (
        select(KnowledgeBase)
        .join(KnowledgeMember, KnowledgeMember.knowledge_id == KnowledgeBase.id)
        .where(
            KnowledgeMember.user_id == user_id,
            KnowledgeBase.is_shared.is_(True),
            KnowledgeBase.is_deleted.is_(False),
        )
        .order_by(KnowledgeBase.updated_at.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def list_owned_knowledge(session: AsyncSession, user_id: int) -> list[KnowledgeBase]:
    stmt = (
        select(KnowledgeBase)
        .where(KnowledgeBase.owner_id == user_id, KnowledgeBase.is_deleted.is_(False))
        .order_by(KnowledgeBase.updated_at.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def _get_active(session: AsyncSession, knowledge_id: int) -> KnowledgeBase:
    knowledge = await session.get(KnowledgeBase, knowledge_id)
    if knowledge is None or knowledge.is_deleted:
        raise KnowledgeNotFoundError()
    return knowledge


async def _is_member(session: AsyncSession, knowledge_id: int, user_id: int) -> bool:
    stmt = select(KnowledgeMember.id).where(
        KnowledgeMember.knowledge_id == knowledge_id,
        KnowledgeMember.user_id == user_id,
    )
    return (await session.execute(stmt)).first() is not None


async def get_knowledge(session: AsyncSession, knowledge_id: int, user_id: int) -> dict:
    """
    知识库详情

    Raises:
        KnowledgeNotFoundError: 不存在或已删除
        KnowledgeUnauthorizedError: 非创建者、非成员且未公开
    """
    knowledge = await _get_active(session, knowledge_id)
    is_owner = knowledge.owner_id == user_id
    is_member = await _is_member(session, knowledge_id, user_id)
    if not (is_owner or is_member or knowledge.is_shared):
        raise KnowledgeUnauthorizedError()

    files = (
        await session.execute(
            select(SourceFile)
            .where(SourceFile.knowledge_id == knowledge_id, SourceFile.is_deleted.is_(False))
            .order_by(SourceFile.created_at.desc(), SourceFile.id.desc())
        )
    ).scalars().all()
    member_ids = (
        await session.execute(
            select(KnowledgeMember.user_id).where(KnowledgeMember.knowledge_id == knowledge_id)
        )
    ).scalars().all()

    return {
        "knowledge": knowledge,
        "files": list(files),
        "member_ids": list(member_ids),
        "is_owner": is_owner,
        "is_member": is_member,
    }


async def join_knowledge(session: AsyncSession, knowledge_id: int, user_id: int) -> KnowledgeMember:
    """加入公开知识库"""
    knowledge = await _get_active(session, knowledge_id)
    if not knowledge.is_shared:
        raise KnowledgeNotSharedError()
    if await _is_member(session, knowledge_id, user_id):
        raise KnowledgeAlreadyJoinedError()

    member = KnowledgeMember(knowledge_id=knowledge_id, user_id=user_id)
    session.add(member)
    await session.commit()
    logger.info(f"用户 {user_id} 加入知识库 {knowledge_id}")
    return member


async def leave_knowledge(session: AsyncSession, knowledge_id: int, user_id: int) -> None:
    """退出知识库（创建者不能退出）"""
    knowledge = await _get_active(session, knowledge_id)
    if knowledge.owner_id == user_id:
        raise KnowledgeOwnerLeaveError()

    member = (
        await session.execute(
            select(KnowledgeMember).where(
                KnowledgeMember.knowledge_id == knowledge_id,
                KnowledgeMember.user_id == user_id,
            )
        )
    ).scalar_one_or_none()
    if member is None:
        raise KnowledgeNotJoinedError()

    await session.delete(member)
    await session.commit()
    logger.info(f"用户 {user_id} 退出知识库 {knowledge_id}")


async def delete_knowledge(
    session: AsyncSession,
    knowledge_id: int,
    user_id: int,
    ingestion: IngestionService | None = None,
) -> None:
    """
    删除知识库（仅创建者）

    先逻辑删除记录，再删除向量集合；向量集合删除后不可恢复。
    """
    knowledge = await _get_active(session, knowledge_id)
    if knowledge.owner_id != user_id:
        raise KnowledgeUnauthorizedError("只有知识库创建者可以删除知识库")

    knowledge.is_deleted = True
    await session.commit()

    if ingestion is None:
        await delete_knowledge_base(knowledge_id)
    else:
        await ingestion.delete_knowledge_base(knowledge_id)
    logger.info(f"删除知识库: {knowledge_id}")
