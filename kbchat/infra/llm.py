"""
对话模型客户端

支持的提供商：
- OpenAI 兼容接口（SiliconFlow DeepSeek-R1、DashScope、DeepSeek 官方等）
- Ollama（本地模型）

消息格式统一为 OpenAI 风格：[{"role": "system"|"user"|"assistant", "content": "..."}]

使用示例：
    from kbchat.infra.llm import get_chat_model

    model = get_chat_model()
    async for piece in model.stream_chat(messages):
        print(piece, end="")
"""

import json
import logging
from functools import lru_cache
from typing import Any, AsyncIterator

import httpx
from openai import AsyncOpenAI

from kbchat.config import get_settings
from kbchat.exceptions import LLMError

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]


@lru_cache(maxsize=8)
def _get_openai_compatible_client(api_key: str | None, base_url: str | None) -> AsyncOpenAI:
    """获取 OpenAI 兼容客户端"""
    return AsyncOpenAI(
        api_key=api_key or "dummy",
        base_url=base_url,
        timeout=120.0,
    )


class ChatModelClient:
    """
    远程对话模型客户端

    stream_chat 返回的是单次、不可重放的异步序列，对应一次远程流式调用。
    消费方提前停止迭代时会关闭底层连接，但不保证远端停止生成。
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        client: AsyncOpenAI | None = None,
    ):
        settings = get_settings()
        self.config = config or settings.get_llm_config()
        self.provider = self.config["provider"]
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_tokens = settings.llm_max_tokens if max_tokens is None else max_tokens
        self._client = client

    @property
    def model(self) -> str:
        return self.config["model"]

    def _openai_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.config.get("api_key"):
                raise LLMError("LLM_API_KEY 未配置")
            self._client = _get_openai_compatible_client(
                self.config.get("api_key"), self.config.get("base_url")
            )
        return self._client

    async def stream_chat(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        """
        流式对话补全

        Yields:
            str: 模型生成的文本片段（空片段会被跳过）
        """
        logger.debug(f"LLM 流式调用: provider={self.provider}, model={self.model}, messages={len(messages)}")
        try:
            if self.provider == "ollama":
                async for piece in self._ollama_stream(messages):
                    yield piece
            else:
                async for piece in self._openai_stream(messages):
                    yield piece
        except LLMError:
            raise
        except Exception as e:
            logger.error(f"LLM 流式调用失败 ({self.provider}): {e}")
            raise

    async def complete(self, messages: list[ChatMessage]) -> str:
        """非流式调用，返回完整回复"""
        parts = [piece async for piece in self.stream_chat(messages)]
        return "".join(parts)

    async def _openai_stream(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        client = self._openai_client()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
        }
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens

        stream = await client.chat.completions.create(**kwargs)
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                # 推理模型的思考过程在 reasoning_content 中，不输出给用户
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        finally:
            await stream.close()

    async def _ollama_stream(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        url = f"{self.config['base_url']}/api/chat"
        options: dict[str, Any] = {"temperature": self.temperature}
        if self.max_tokens:
            options["num_predict"] = self.max_tokens

        async with httpx.AsyncClient(timeout=120.0) as client:
            async with client.stream(
                "POST",
                url,
                json={
                    "model": self.model,
                    "messages": messages,
                    "stream": True,
                    "options": options,
                },
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line:
                        continue
                    data = json.loads(line)
                    if content := data.get("message", {}).get("content"):
                        yield content
                    if data.get("done"):
                        break


@lru_cache(maxsize=1)
def get_chat_model() -> ChatModelClient:
    """获取全局对话模型客户端单例"""
    return ChatModelClient()
