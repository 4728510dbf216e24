"""
测试公共夹具

- 关系库：SQLite 内存库（aiosqlite + StaticPool），每个测试独立建表
- 向量库：进程内 Qdrant（AsyncQdrantClient(":memory:")），维度 8
- Embedding / 对话模型：确定性的假实现，不访问网络
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("QDRANT_URL", ":memory:")  # 使用内存向量库
os.environ.setdefault("EMBEDDING_BATCH_DELAY_MS", "0")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from qdrant_client import AsyncQdrantClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from kbchat.db.session import init_models  # noqa: E402
from kbchat.infra.embeddings import deterministic_hash_embed  # noqa: E402
from kbchat.infra.vector_store import QdrantVectorIndex  # noqa: E402
from kbchat.models import KnowledgeBase  # noqa: E402

TEST_DIM = 8


class FakeEmbedder:
    """确定性 Embedding：词面相同的文本得到相同向量，首维恒为 1 避免零向量"""

    provider = "fake"
    model = "fake-embedding"

    def __init__(self, dim: int = TEST_DIM, fail_on_call: int | None = None):
        self.dim = dim
        self.fail_on_call = fail_on_call
        self.calls: list[list[str]] = []

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("embedding service unavailable")
        return [[1.0] + deterministic_hash_embed(t, self.dim - 1) for t in texts]

    async def embed_query(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]


class FakeChatModel:
    """按预设片段流式输出，记录每次收到的消息序列"""

    def __init__(self, pieces: list[str] | None = None, fail_after: int | None = None):
        self.pieces = pieces if pieces is not None else ["你好", "，", "世界"]
        self.fail_after = fail_after
        self.calls: list[list[dict]] = []

    async def stream_chat(self, messages):
        self.calls.append(messages)
        for i, piece in enumerate(self.pieces):
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("chat model disconnected")
            yield piece


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def fake_chat_model():
    return FakeChatModel()


@pytest_asyncio.fixture
async def qdrant_client():
    client = AsyncQdrantClient(location=":memory:")
    yield client
    await client.close()


@pytest.fixture
def vector_index(qdrant_client):
    return QdrantVectorIndex(client=qdrant_client, dim=TEST_DIM)


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def knowledge(db_session) -> KnowledgeBase:
    """用户 1 创建的私有知识库"""
    kb = KnowledgeBase(name="产品手册", owner_id=1, is_shared=False)
    db_session.add(kb)
    await db_session.commit()
    await db_session.refresh(kb)
    return kb


@pytest.fixture
def embedder_factory():
    """按参数创建 FakeEmbedder（例如 fail_on_call=2 让第二批失败）"""
    return FakeEmbedder


@pytest.fixture
def chat_model_factory():
    return FakeChatModel
