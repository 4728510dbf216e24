"""
文本向量化模块 (Embeddings)

将文档片段与检索问题转换为固定维度的向量。

支持的 Embedding 提供者：
- OpenAI 兼容接口（DashScope text-embedding-v4、SiliconFlow 等）
- Ollama（本地模型：bge-m3 等）

批次划分与批间延迟由入库流程负责，这里每次 embed_batch 只发起一次远程调用
（Ollama 不支持批量接口，按文本顺序逐条请求）。

使用示例：
    from kbchat.infra.embeddings import get_embedding_client

    client = get_embedding_client()
    vec = await client.embed_query("什么是 RAG？")
    vecs = await client.embed_batch(["文本1", "文本2"])
"""

import hashlib
import logging
import math
from functools import lru_cache
from typing import Any

import httpx
from openai import AsyncOpenAI

from kbchat.config import get_settings
from kbchat.exceptions import EmbeddingError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=8)
def _get_openai_compatible_client(api_key: str | None, base_url: str | None) -> AsyncOpenAI:
    """获取 OpenAI 兼容客户端（按 key/base_url 缓存）"""
    return AsyncOpenAI(
        api_key=api_key or "dummy",
        base_url=base_url,
        timeout=60.0,
    )


class EmbeddingClient:
    """
    远程 Embedding 服务客户端

    Args:
        config: 提供商配置（provider, model, api_key, base_url），默认读取全局配置
        dim: 期望的向量维度，返回维度不一致时抛出 EmbeddingError
        client: 可选的 AsyncOpenAI 实例（测试时注入）
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        dim: int | None = None,
        client: AsyncOpenAI | None = None,
    ):
        settings = get_settings()
        self.config = config or settings.get_embedding_config()
        self.dim = dim or settings.embedding_dim
        self.provider = self.config["provider"]
        self._client = client

    @property
    def model(self) -> str:
        return self.config["model"]

    def _openai_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.config.get("api_key"):
                raise EmbeddingError("EMBEDDING_API_KEY 未配置，无法生成 Embedding")
            self._client = _get_openai_compatible_client(
                self.config.get("api_key"), self.config.get("base_url")
            )
        return self._client

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        批量获取文本向量，顺序与输入一致

        Raises:
            EmbeddingError: 配置缺失或返回维度不符
            openai.APIError / httpx.HTTPError: 远程调用失败（原样抛出）
        """
        if not texts:
            return []

        try:
            if self.provider == "ollama":
                vectors = [await self._ollama_embedding(text) for text in texts]
            else:
                vectors = await self._openai_embeddings(texts)
        except EmbeddingError:
            raise
        except Exception as e:
            logger.error(f"批量 Embedding 生成失败 ({self.provider}): {e}")
            raise

        self._check_dimensions(vectors)
        logger.debug(f"Embedding 完成: {len(texts)} 条, model={self.model}")
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """获取单个检索问题的向量"""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def _openai_embeddings(self, texts: list[str]) -> list[list[float]]:
        client = self._openai_client()
        response = await client.embeddings.create(
            model=self.model,
            input=texts,
            dimensions=self.dim,
        )
        sorted_data = sorted(response.data, key=lambda x: x.index)
        return [d.embedding for d in sorted_data]

    async def _ollama_embedding(self, text: str) -> list[float]:
        url = f"{self.config['base_url']}/api/embeddings"
        async with httpx.AsyncClient(timeout=60.0) as client:
            response = await client.post(url, json={"model": self.model, "prompt": text})
            response.raise_for_status()
            return response.json()["embedding"]

    def _check_dimensions(self, vectors: list[list[float]]) -> None:
        for vec in vectors:
            if len(vec) != self.dim:
                raise EmbeddingError(
                    f"Embedding 维度不匹配: 期望 {self.dim}, 实际 {len(vec)}"
                )


@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    """获取全局 Embedding 客户端单例"""
    return EmbeddingClient()


def deterministic_hash_embed(text: str, dim: int = 1024) -> list[float]:
    """
    确定性哈希 Embedding（无需 API，用于测试与本地调试）

    注意：只有词面重合信息，没有语义。
    """
    vec = [0.0] * dim
    for token in text.split():
        h = int(hashlib.md5(token.encode()).hexdigest(), 16)
        vec[h % dim] += 1.0

    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]
