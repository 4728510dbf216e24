"""
向量数据库模块 (Vector Store)

封装 Qdrant 向量数据库的操作，每个知识库独立一个 Collection（{prefix}{knowledge_id}）：
- ensure_collection: 幂等创建（余弦相似度，维度取自配置）
- upsert: 一次调用写入一次入库运行的全部片段
- delete_by_file: 按 payload.file_id 删除，仅作用于该知识库的 Collection
- delete_collection: 删除整个知识库的向量
- search: 相似度检索；Collection 不存在时返回空列表

Payload 固定字段：knowledge_id / file_id / content / chunk_index / original_content，
调用方附带的额外元数据放在 extra 字段中，不会覆盖固定字段。

特性：
- 使用 AsyncQdrantClient，不阻塞事件循环
- qdrant_url=":memory:" 时使用进程内 Qdrant（测试与本地调试）
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models

from kbchat.config import get_settings
from kbchat.exceptions import CollectionNotFoundError, VectorStoreError

logger = logging.getLogger(__name__)

# 额外元数据只允许标量值
Scalar = str | int | float | bool | None


@dataclass
class PassagePayload:
    """向量条目的 payload：固定字段 + 额外元数据"""
    knowledge_id: int
    file_id: int
    content: str
    chunk_index: int
    original_content: str
    extra: dict[str, Scalar] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "knowledge_id": self.knowledge_id,
            "file_id": self.file_id,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "original_content": self.original_content,
            "extra": dict(self.extra),
        }


@dataclass
class VectorEntry:
    """一条向量记录，id 随机生成，重复入库不会与旧条目冲突"""
    vector: list[float]
    payload: PassagePayload
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class SearchHit:
    """检索结果"""
    content: str
    score: float
    metadata: dict[str, Any]


def _create_client() -> AsyncQdrantClient:
    settings = get_settings()
    if settings.qdrant_url == ":memory:":
        return AsyncQdrantClient(location=":memory:")
    return AsyncQdrantClient(
        url=settings.qdrant_url,
        api_key=settings.qdrant_api_key,
        timeout=10.0,
        prefer_grpc=False,
    )


@lru_cache(maxsize=1)
def _get_async_client() -> AsyncQdrantClient:
    """获取异步 Qdrant 客户端（单例）"""
    return _create_client()


class QdrantVectorIndex:
    """
    按知识库隔离的 Qdrant 向量索引

    注意：所有方法都是异步的，需要使用 await 调用。
    同一文件的入库与删除不在这里加锁，调用方需要保证同一 file_id 同时只有一个操作。
    """

    def __init__(self, client: AsyncQdrantClient | None = None, dim: int | None = None):
        settings = get_settings()
        self._client = client
        self.dim = dim or settings.embedding_dim
        self.collection_prefix = settings.qdrant_collection_prefix

    @property
    def client(self) -> AsyncQdrantClient:
        if self._client is None:
            self._client = _get_async_client()
        return self._client

    def collection_name(self, knowledge_id: int) -> str:
        return f"{self.collection_prefix}{knowledge_id}"

    async def collection_exists(self, knowledge_id: int) -> bool:
        name = self.collection_name(knowledge_id)
        try:
            return await self.client.collection_exists(name)
        except Exception as e:
            raise VectorStoreError(f"查询 Collection 失败: {name}: {e}") from e

    async def ensure_collection(self, knowledge_id: int) -> bool:
        """
        确保知识库的 Collection 存在

        Returns:
            True 表示本次新建，False 表示已存在
        """
        name = self.collection_name(knowledge_id)
        if await self.collection_exists(knowledge_id):
            return False

        try:
            await self.client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(
                    size=self.dim,
                    distance=models.Distance.COSINE,
                ),
            )
            await self.client.create_payload_index(
                collection_name=name,
                field_name="file_id",
                field_schema=models.PayloadSchemaType.INTEGER,
            )
        except Exception as e:
            # 可能被并发请求创建
            if await self.collection_exists(knowledge_id):
                logger.debug(f"Collection 已被并发创建: {name}")
                return False
            raise VectorStoreError(f"创建 Collection 失败: {name}: {e}") from e

        logger.info(f"创建 Collection: {name} (维度: {self.dim}, 距离: Cosine)")
        return True

    async def upsert(self, knowledge_id: int, entries: list[VectorEntry]) -> int:
        """
        写入/覆盖向量条目（按 id）

        一次调用对应一次 Qdrant upsert 请求，wait=True 保证返回时已可检索。
        """
        if not entries:
            return 0

        name = self.collection_name(knowledge_id)
        points = [
            models.PointStruct(id=e.id, vector=e.vector, payload=e.payload.to_dict())
            for e in entries
        ]
        try:
            await self.client.upsert(collection_name=name, points=points, wait=True)
        except Exception as e:
            raise VectorStoreError(f"写入向量失败: {name}: {e}") from e

        logger.debug(f"批量 upsert {len(points)} 条向量到 {name}")
        return len(points)

    async def delete_by_file(self, knowledge_id: int, file_id: int) -> None:
        """删除某个文件的全部向量（Collection 不存在时视为已删除）"""
        name = self.collection_name(knowledge_id)
        if not await self.collection_exists(knowledge_id):
            logger.debug(f"Collection 不存在，跳过删除: {name} file={file_id}")
            return

        try:
            result = await self.client.delete(
                collection_name=name,
                points_selector=models.FilterSelector(
                    filter=models.Filter(
                        must=[
                            models.FieldCondition(
                                key="file_id",
                                match=models.MatchValue(value=file_id),
                            )
                        ]
                    )
                ),
                wait=True,
            )
        except Exception as e:
            raise VectorStoreError(f"删除文件向量失败: {name} file={file_id}: {e}") from e

        logger.info(f"删除文件 {file_id} 的向量 ({name})，状态: {result.status}")

    async def delete_collection(self, knowledge_id: int) -> None:
        """删除知识库 Collection（不可恢复）"""
        name = self.collection_name(knowledge_id)
        if not await self.collection_exists(knowledge_id):
            logger.debug(f"Collection 不存在，跳过删除: {name}")
            return
        try:
            await self.client.delete_collection(collection_name=name)
        except Exception as e:
            raise VectorStoreError(f"删除 Collection 失败: {name}: {e}") from e
        logger.info(f"删除 Collection: {name}")

    async def search(
        self,
        knowledge_id: int,
        query_vector: list[float],
        top_k: int = 5,
    ) -> list[SearchHit]:
        """
        相似度检索，按分数降序返回

        从未成功入库过的知识库没有 Collection，返回空列表而不是报错。
        """
        try:
            points = await self._query(knowledge_id, query_vector, top_k)
        except CollectionNotFoundError:
            logger.info(f"知识库 {knowledge_id} 尚无向量数据，返回空结果")
            return []

        hits = [
            SearchHit(
                content=(point.payload or {}).get("content", ""),
                score=point.score or 0.0,
                metadata=dict(point.payload or {}),
            )
            for point in points
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    async def _query(
        self,
        knowledge_id: int,
        query_vector: list[float],
        top_k: int,
    ) -> list[models.ScoredPoint]:
        name = self.collection_name(knowledge_id)
        if not await self.collection_exists(knowledge_id):
            raise CollectionNotFoundError(f"Collection 不存在: {name}")
        try:
            response = await self.client.query_points(
                collection_name=name,
                query=query_vector,
                limit=top_k,
                with_payload=True,
            )
        except Exception as e:
            raise VectorStoreError(f"向量检索失败: {name}: {e}") from e
        return response.points

    async def count(self, knowledge_id: int, file_id: int | None = None) -> int:
        """统计向量条目数（可按文件过滤），Collection 不存在时为 0"""
        if not await self.collection_exists(knowledge_id):
            return 0
        count_filter = None
        if file_id is not None:
            count_filter = models.Filter(
                must=[models.FieldCondition(key="file_id", match=models.MatchValue(value=file_id))]
            )
        result = await self.client.count(
            collection_name=self.collection_name(knowledge_id),
            count_filter=count_filter,
            exact=True,
        )
        return result.count


# 全局实例（异步）
vector_index = QdrantVectorIndex()
