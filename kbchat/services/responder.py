"""
检索增强回答服务 (Retrieval-Augmented Responder)

两种模式：
- 全网对话（global）：系统提示 + 最近 10 条历史 + 用户问题，直接流式调用对话模型
- 知识库对话（knowledge）：先检索 top-K 片段；没有命中时只输出一条固定提示，
  不调用对话模型；有命中时按相似度降序拼接上下文，套入模板后作为最后一条用户消息

respond 返回单次、不可重放的异步序列，调用方需要边消费边累积。
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import AsyncIterator, Iterable

from kbchat.config import get_settings
from kbchat.infra.embeddings import EmbeddingClient, get_embedding_client
from kbchat.infra.llm import ChatMessage, ChatModelClient, get_chat_model
from kbchat.infra.vector_store import QdrantVectorIndex, SearchHit, vector_index
from kbchat.models import ConversationType, SenderType

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = "你是一个有用的AI助手，请友好、准确地回答用户的问题。"

RAG_PROMPT_TEMPLATE = """你是一个智能助手，请基于以下提供的知识库内容来回答用户的问题。
如果知识库中没有相关信息，请明确告知用户。

知识库内容：
{context}

用户问题：{question}

请基于上述知识库内容回答用户问题："""

NO_RELEVANT_CONTENT = "抱歉，在知识库中没有找到与您的问题相关的内容，请尝试换个问法或上传相关文档。"


@dataclass
class HistoryTurn:
    """对话历史中的一条消息（只保留角色与内容）"""
    role: str       # user / assistant
    content: str


def build_history(messages: Iterable, limit: int | None = None) -> list[HistoryTurn]:
    """
    把消息记录转换为对话历史

    只保留最近 limit 条（按时间正序），未知角色的消息丢弃。
    """
    limit = limit or get_settings().history_limit
    turns = [
        HistoryTurn(role=m.sender_type, content=m.content)
        for m in messages
        if m.sender_type in (SenderType.USER, SenderType.ASSISTANT)
    ]
    return turns[-limit:]


def build_context(hits: list[SearchHit]) -> str:
    """按相似度降序拼接片段，片段之间空一行"""
    ordered = sorted(hits, key=lambda h: h.score, reverse=True)
    return "\n\n".join(h.content for h in ordered)


def build_messages(
    query: str,
    history: list[HistoryTurn],
    history_limit: int = 10,
    context: str | None = None,
) -> list[ChatMessage]:
    """
    组装发送给对话模型的消息序列

    顺序：1 条系统消息 → 最近 history_limit 条历史 → 用户消息。
    传入 context 时，用户消息为套用知识库模板后的完整提示。
    """
    messages: list[ChatMessage] = [{"role": "system", "content": SYSTEM_PROMPT}]
    for turn in history[-history_limit:]:
        if turn.role == SenderType.USER:
            messages.append({"role": "user", "content": turn.content})
        elif turn.role == SenderType.ASSISTANT:
            messages.append({"role": "assistant", "content": turn.content})

    if context is None:
        messages.append({"role": "user", "content": query})
    else:
        messages.append({
            "role": "user",
            "content": RAG_PROMPT_TEMPLATE.format(context=context, question=query),
        })
    return messages


class RetrievalResponder:
    """检索增强回答"""

    def __init__(
        self,
        embedder: EmbeddingClient | None = None,
        index: QdrantVectorIndex | None = None,
        chat_model: ChatModelClient | None = None,
        top_k: int | None = None,
        history_limit: int | None = None,
    ):
        settings = get_settings()
        self._embedder = embedder
        self._chat_model = chat_model
        self.index = index or vector_index
        self.top_k = top_k or settings.search_top_k
        self.history_limit = history_limit or settings.history_limit

    @property
    def embedder(self) -> EmbeddingClient:
        if self._embedder is None:
            self._embedder = get_embedding_client()
        return self._embedder

    @property
    def chat_model(self) -> ChatModelClient:
        if self._chat_model is None:
            self._chat_model = get_chat_model()
        return self._chat_model

    async def retrieve(self, knowledge_id: int, query: str) -> list[SearchHit]:
        query_vector = await self.embedder.embed_query(query)
        hits = await self.index.search(knowledge_id, query_vector, self.top_k)
        logger.info(f"知识库 {knowledge_id} 检索到 {len(hits)} 个相关片段")
        return hits

    async def respond(
        self,
        mode: str,
        query: str,
        knowledge_id: int | None = None,
        history: list[HistoryTurn] | None = None,
    ) -> AsyncIterator[str]:
        """
        流式生成回答

        Args:
            mode: global / knowledge
            query: 用户问题
            knowledge_id: 知识库模式必填
            history: 对话历史（按时间正序）

        Yields:
            str: 回答片段
        """
        history = history or []

        if mode == ConversationType.KNOWLEDGE:
            if knowledge_id is None:
                raise ValueError("知识库对话必须指定 knowledge_id")
            hits = await self.retrieve(knowledge_id, query)
            if not hits:
                yield NO_RELEVANT_CONTENT
                return
            messages = build_messages(query, history, self.history_limit, context=build_context(hits))
        elif mode == ConversationType.GLOBAL:
            messages = build_messages(query, history, self.history_limit)
        else:
            raise ValueError(f"未知的对话模式: {mode}")

        async for piece in self.chat_model.stream_chat(messages):
            yield piece


@lru_cache(maxsize=1)
def get_responder() -> RetrievalResponder:
    """获取全局回答服务单例"""
    return RetrievalResponder()
