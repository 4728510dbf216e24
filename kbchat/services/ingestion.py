"""
文档入库服务 (Ingestion Service)

把单个文件写入所属知识库的向量集合：
1. 文本提取（Extracting）
2. 文本切分（Chunking）
3. 分批向量化（Embedding），批与批之间按配置延迟，避免触发上游限流
4. 一次性写入向量库（Indexing）

任何一步失败都会进入 Failed 状态，且不会留下部分写入的向量：
向量化全部完成后才发起唯一一次 upsert。

删除是入库的逆操作：retract 按 file_id 删除该文件的全部向量，重复调用不报错。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from kbchat.config import get_settings
from kbchat.exceptions import (
    EmptyContentError,
    IngestionError,
    UnsupportedFormatError,
)
from kbchat.infra.embeddings import EmbeddingClient, get_embedding_client
from kbchat.infra.vector_store import PassagePayload, QdrantVectorIndex, VectorEntry, vector_index
from kbchat.pipeline import classify, extract_text, split_passages
from kbchat.pipeline.base import ChunkPiece, DocumentKind

logger = logging.getLogger(__name__)


class IngestionStage(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class IngestionRun:
    """
    单次入库运行的状态

    记录阶段流转与处理日志，失败时 error 保存错误信息。
    """
    knowledge_id: int
    file_id: int
    stage: IngestionStage = IngestionStage.PENDING
    logs: list[str] = field(default_factory=list)
    error: str | None = None

    def add_log(self, msg: str, level: str = "INFO") -> None:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        self.logs.append(f"[{ts}] [{level}] {msg}")
        extra = {"knowledge_id": self.knowledge_id, "file_id": self.file_id, "stage": self.stage.value}
        if level == "ERROR":
            logger.error(msg, extra=extra)
        elif level == "WARNING":
            logger.warning(msg, extra=extra)
        else:
            logger.info(msg, extra=extra)

    def advance(self, stage: IngestionStage, msg: str | None = None) -> None:
        if self.stage in (IngestionStage.DONE, IngestionStage.FAILED):
            raise RuntimeError(f"入库运行已结束 ({self.stage.value})，不能再进入 {stage.value}")
        self.stage = stage
        self.add_log(msg or f"进入阶段: {stage.value}")

    def fail(self, error: Exception) -> None:
        self.stage = IngestionStage.FAILED
        self.error = str(error)
        self.add_log(f"入库失败: {error}", level="ERROR")


@dataclass
class IngestionResult:
    chunks_count: int
    content_length: int
    run: IngestionRun | None = None


def _scalar_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """只保留标量值，嵌套结构不写入 payload"""
    if not metadata:
        return {}
    return {
        k: v for k, v in metadata.items()
        if v is None or isinstance(v, (str, int, float, bool))
    }


class IngestionService:
    """
    文档入库编排

    Args:
        embedder: Embedding 客户端
        index: 向量索引
        batch_size: 每批向量化的片段数
        batch_delay_ms: 批间延迟（毫秒）
        provenance_chars: 每个片段携带的原文前缀长度
    """

    def __init__(
        self,
        embedder: EmbeddingClient | None = None,
        index: QdrantVectorIndex | None = None,
        batch_size: int | None = None,
        batch_delay_ms: int | None = None,
        provenance_chars: int | None = None,
    ):
        settings = get_settings()
        self._embedder = embedder
        self.index = index or vector_index
        self.batch_size = batch_size or settings.embedding_batch_size
        self.batch_delay_ms = settings.embedding_batch_delay_ms if batch_delay_ms is None else batch_delay_ms
        self.provenance_chars = provenance_chars or settings.provenance_chars

    @property
    def embedder(self) -> EmbeddingClient:
        if self._embedder is None:
            self._embedder = get_embedding_client()
        return self._embedder

    async def ingest(
        self,
        knowledge_id: int,
        file_id: int,
        path: str | Path,
        extension: str,
        metadata: dict[str, Any] | None = None,
    ) -> IngestionResult:
        """
        入库单个文件

        Raises:
            UnsupportedFormatError: 未知扩展名
            EmptyContentError: 没有提取到文本，或切分结果为空
            ExtractionError: 文件解析失败
            IngestionError: 向量化或写入向量库失败（原始异常在 __cause__ 中）
        """
        run = IngestionRun(knowledge_id=knowledge_id, file_id=file_id)
        run.add_log(f"开始入库文件 {file_id} -> 知识库 {knowledge_id}")

        try:
            run.advance(IngestionStage.EXTRACTING)
            content = await extract_text(path, extension)
            if not content or not content.strip():
                raise EmptyContentError()
            run.add_log(f"提取文本 {len(content)} 个字符")

            run.advance(IngestionStage.CHUNKING)
            pieces = split_passages(content, is_markdown=classify(extension) is DocumentKind.MARKDOWN)
            if not pieces:
                raise EmptyContentError()
            run.add_log(f"切分为 {len(pieces)} 个片段")

            run.advance(IngestionStage.EMBEDDING)
            vectors = await self._embed_in_batches(pieces, run)

            run.advance(IngestionStage.INDEXING)
            entries = self._build_entries(knowledge_id, file_id, content, pieces, vectors, metadata)
            await self.index.ensure_collection(knowledge_id)
            await self.index.upsert(knowledge_id, entries)

            run.advance(IngestionStage.DONE, f"入库完成: {len(entries)} 个片段")
        except (UnsupportedFormatError, EmptyContentError, IngestionError) as e:
            run.fail(e)
            raise
        except Exception as e:
            run.fail(e)
            raise IngestionError(f"文档入库失败: {e}") from e

        return IngestionResult(chunks_count=len(pieces), content_length=len(content), run=run)

    async def _embed_in_batches(self, pieces: list[ChunkPiece], run: IngestionRun) -> list[list[float]]:
        texts = [p.text for p in pieces]
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size
        vectors: list[list[float]] = []

        for batch_no, start in enumerate(range(0, len(texts), self.batch_size), start=1):
            batch = texts[start:start + self.batch_size]
            run.add_log(f"向量化批次 {batch_no}/{total_batches} ({len(batch)} 个片段)")
            batch_vectors = await self.embedder.embed_batch(batch)
            if len(batch_vectors) != len(batch):
                raise IngestionError(
                    f"向量数量不匹配: 批次 {batch_no} 期望 {len(batch)}, 实际 {len(batch_vectors)}"
                )
            vectors.extend(batch_vectors)

            if batch_no < total_batches and self.batch_delay_ms > 0:
                await asyncio.sleep(self.batch_delay_ms / 1000)

        return vectors

    def _build_entries(
        self,
        knowledge_id: int,
        file_id: int,
        content: str,
        pieces: list[ChunkPiece],
        vectors: list[list[float]],
        metadata: dict[str, Any] | None,
    ) -> list[VectorEntry]:
        provenance = content[: self.provenance_chars]
        extra = _scalar_metadata(metadata)
        return [
            VectorEntry(
                vector=vector,
                payload=PassagePayload(
                    knowledge_id=knowledge_id,
                    file_id=file_id,
                    content=piece.text,
                    chunk_index=piece.index,
                    original_content=provenance,
                    extra=dict(extra),
                ),
            )
            for piece, vector in zip(pieces, vectors)
        ]

    async def retract(self, knowledge_id: int, file_id: int) -> None:
        """删除文件的全部向量；从未入库或已删除的文件直接返回"""
        await self.index.delete_by_file(knowledge_id, file_id)
        logger.info(f"已移除文件 {file_id} 的向量 (知识库 {knowledge_id})")

    async def delete_knowledge_base(self, knowledge_id: int) -> None:
        """删除知识库的整个向量集合（不可恢复）"""
        await self.index.delete_collection(knowledge_id)


@lru_cache(maxsize=1)
def get_ingestion_service() -> IngestionService:
    """获取全局入库服务单例"""
    return IngestionService()


async def ingest_file(
    knowledge_id: int,
    file_id: int,
    path: str | Path,
    extension: str,
    metadata: dict[str, Any] | None = None,
) -> IngestionResult:
    return await get_ingestion_service().ingest(knowledge_id, file_id, path, extension, metadata)


async def retract_file(knowledge_id: int, file_id: int) -> None:
    await get_ingestion_service().retract(knowledge_id, file_id)


async def delete_knowledge_base(knowledge_id: int) -> None:
    await get_ingestion_service().delete_knowledge_base(knowledge_id)
