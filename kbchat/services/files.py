"""
文件服务

上传流程：
1. 校验知识库访问权限
2. 保存文件字节到本地存储
3. 创建文件记录（失败时删除已保存的字节）
4. 入库向量：成功 vector_status=indexed；失败 vector_status=failed，
   记录与字节都保留，可通过 reingest 重试

删除流程：逻辑删除记录 → 删除本地字节 → 移除该文件的全部向量。
"""

import logging
from pathlib import PurePosixPath

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from kbchat.exceptions import KBChatError, SourceFileNotFoundError
from kbchat.infra.storage import LocalFileStorage, file_storage
from kbchat.models import SourceFile, VectorStatus
from kbchat.services.ingestion import IngestionResult, IngestionService, get_ingestion_service
from kbchat.services.knowledge import validate_knowledge_access

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LENGTH = 500


def file_type_of(file_name: str) -> str | None:
    """大写扩展名（不含点号），没有扩展名返回 None"""
    suffix = PurePosixPath(file_name).suffix
    return suffix[1:].upper() if suffix else None


class FileService:
    """知识库文件管理"""

    def __init__(
        self,
        storage: LocalFileStorage | None = None,
        ingestion: IngestionService | None = None,
    ):
        self.storage = storage or file_storage
        self._ingestion = ingestion

    @property
    def ingestion(self) -> IngestionService:
        if self._ingestion is None:
            self._ingestion = get_ingestion_service()
        return self._ingestion

    async def upload(
        self,
        session: AsyncSession,
        user_id: int,
        knowledge_id: int,
        file_name: str,
        data: bytes,
    ) -> SourceFile:
        """
        上传文件并入库

        Raises:
            KnowledgeUnauthorizedError: 无权访问知识库
            UnsupportedFormatError / EmptyContentError / IngestionError: 入库失败
        """
        await validate_knowledge_access(session, knowledge_id, user_id)

        stored = await self.storage.save(file_name, data)
        try:
            record = SourceFile(
                knowledge_id=knowledge_id,
                name=file_name,
                file_type=file_type_of(file_name),
                file_url=stored.url,
                vector_status=VectorStatus.PENDING,
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
        except Exception:
            await session.rollback()
            await self.storage.remove(stored.path)
            raise

        logger.info(f"创建文件记录: {record.id} ({file_name}) -> 知识库 {knowledge_id}")
        await self._ingest(session, record, stored.path, stored.extension)
        return record

    async def reingest(self, session: AsyncSession, user_id: int, file_id: int) -> SourceFile:
        """
        重新入库（复用已保存的文件字节）

        先移除该文件已有的向量，避免重复片段。
        """
        record = await self.get_file(session, user_id, file_id)
        path = self.storage.resolve(record.file_url)
        await self.ingestion.retract(record.knowledge_id, record.id)
        await self._ingest(session, record, path, path.suffix)
        return record

    async def _ingest(self, session: AsyncSession, record: SourceFile, path, extension: str) -> IngestionResult:
        try:
            result = await self.ingestion.ingest(
                record.knowledge_id,
                record.id,
                path,
                extension,
                metadata={"file_name": record.name, "file_type": record.file_type},
            )
        except KBChatError as e:
            record.vector_status = VectorStatus.FAILED
            record.error_message = e.message[:ERROR_MESSAGE_LENGTH]
            await session.commit()
            logger.error(f"文件 {record.id} 入库失败: {e.message}")
            raise

        record.vector_status = VectorStatus.INDEXED
        record.chunks_count = result.chunks_count
        record.error_message = None
        await session.commit()
        await session.refresh(record)
        return result

    async def get_file(self, session: AsyncSession, user_id: int, file_id: int) -> SourceFile:
        """
        Raises:
            SourceFileNotFoundError: 文件不存在或已删除
            KnowledgeUnauthorizedError: 无权访问文件所属知识库
        """
        record = await session.get(SourceFile, file_id)
        if record is None or record.is_deleted:
            raise SourceFileNotFoundError()
        await validate_knowledge_access(session, record.knowledge_id, user_id)
        return record

    async def list_files(
        self,
        session: AsyncSession,
        user_id: int,
        knowledge_id: int,
        *,
        filename: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[SourceFile], int]:
        """分页查询知识库文件，filename 按名称模糊匹配（不区分大小写）"""
        await validate_knowledge_access(session, knowledge_id, user_id)

        conditions = [SourceFile.knowledge_id == knowledge_id, SourceFile.is_deleted.is_(False)]
        if filename:
            conditions.append(SourceFile.name.ilike(f"%{filename}%"))

        total = (
            await session.execute(select(func.count()).select_from(SourceFile).where(*conditions))
        ).scalar() or 0
        files = (
            await session.execute(
                select(SourceFile)
                .where(*conditions)
                .order_by(SourceFile.created_at.desc(), SourceFile.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        ).scalars().all()
        return list(files), total

    async def delete(self, session: AsyncSession, user_id: int, file_id: int) -> None:
        """删除文件：记录逻辑删除，本地字节与向量物理删除"""
        record = await self.get_file(session, user_id, file_id)
        record.is_deleted = True
        await session.commit()

        try:
            await self.storage.remove(self.storage.resolve(record.file_url))
        except ValueError as e:
            logger.warning(f"文件 {file_id} 的地址无法解析，跳过删除本地文件: {e}")

        await self.ingestion.retract(record.knowledge_id, record.id)
        logger.info(f"删除文件: {file_id} (知识库 {record.knowledge_id})")


_service: FileService | None = None


def get_file_service() -> FileService:
    global _service
    if _service is None:
        _service = FileService()
    return _service
