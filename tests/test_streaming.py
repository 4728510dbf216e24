"""
流式协调单元测试

测试 kbchat/services/streaming.py：
- 中止后只保存一条助手消息，内容为已输出的前 N 个片段，is_success=False
- 正常结束 is_success=True
- SSE 帧序列与客户端断开
- WebSocket 帧序列与停止
- 对话归属校验发生在任何输出之前
"""

import asyncio
import json

import pytest
import pytest_asyncio

from kbchat.exceptions import ConversationNotFoundError, UnauthorizedError
from kbchat.services.conversation import get_conversation_detail, get_current_conversation
from kbchat.schemas import StreamEnvelope
from kbchat.services.responder import RetrievalResponder
from kbchat.services.streaming import (
    StreamCoordinator,
    StreamEvent,
    drain_pending_saves,
    format_sse,
    make_envelope,
    relay_sse,
    relay_websocket,
)


class GatedChatModel:
    """输出 ready 个片段后挂起，直到被取消"""

    def __init__(self, pieces: list[str], ready: int):
        self.pieces = pieces
        self.ready = ready
        self.reached = asyncio.Event()

    async def stream_chat(self, messages):
        for i, piece in enumerate(self.pieces):
            if i == self.ready:
                self.reached.set()
                await asyncio.Event().wait()
            yield piece


class SlowSaveCoordinator(StreamCoordinator):
    """写入助手消息前先等待，便于在保存过程中取消"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.saving = asyncio.Event()

    async def save_assistant_message(self, conversation_id, content, success, user_id=None):
        self.saving.set()
        await asyncio.sleep(0.2)
        return await super().save_assistant_message(conversation_id, content, success, user_id)


class SlowStartCoordinator(StreamCoordinator):
    """用户消息写入后等待一段时间才返回运行"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = asyncio.Event()

    async def stream_response(self, conversation_id, user_message, user_id):
        run = await super().stream_response(conversation_id, user_message, user_id)
        self.started.set()
        await asyncio.sleep(0.2)
        return run


def _parse_sse(frames: list[str]) -> list[dict]:
    return [json.loads(frame[len("data: "):].strip()) for frame in frames]


@pytest_asyncio.fixture
async def conversation(session_factory):
    async with session_factory() as session:
        conv, _ = await get_current_conversation(session, 1, conversation_type="global")
    return conv


def _coordinator(session_factory, embedder, index, chat_model) -> StreamCoordinator:
    responder = RetrievalResponder(embedder=embedder, index=index, chat_model=chat_model)
    return StreamCoordinator(session_factory=session_factory, responder=responder)


async def _messages(session_factory, conversation_id: int, user_id: int = 1):
    async with session_factory() as session:
        _, messages = await get_conversation_detail(session, conversation_id, user_id)
    return messages


class TestEnvelope:
    """测试消息信封"""

    def test_envelope_fields(self):
        envelope = make_envelope(StreamEvent.TOKEN, "片段")
        assert envelope["type"] == "token"
        assert envelope["content"] == "片段"
        assert envelope["timestamp"].endswith("+00:00")
        assert StreamEnvelope.model_validate(envelope).type == "token"

    def test_sse_format(self):
        frame = format_sse({"type": "done", "content": ""})
        assert frame == 'data: {"type": "done", "content": ""}\n\n'


class TestStreamCoordinator:
    """测试流式协调器"""

    @pytest.mark.asyncio
    async def test_natural_completion_saves_success(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, fake_chat_model)

        run = await coordinator.stream_response(conversation.id, "你好", 1)
        pieces = [piece async for piece in run]
        message = await coordinator.finish(run, success=True)

        assert pieces == ["你好", "，", "世界"]
        assert message.content == "你好，世界"
        assert message.is_success is True
        messages = await _messages(session_factory, conversation.id)
        assert [(m.sender_type, m.content) for m in messages] == [("user", "你好"), ("assistant", "你好，世界")]

    @pytest.mark.asyncio
    async def test_stop_after_n_increments(
        self, session_factory, conversation, fake_embedder, vector_index, chat_model_factory
    ):
        chat_model = chat_model_factory(pieces=["一", "二", "三", "四", "五"])
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, chat_model)

        run = await coordinator.stream_response(conversation.id, "数数", 1)
        async for _ in run:
            if run.increments == 2:
                break
        await coordinator.finish(run, success=False)
        # 重复结束不再保存
        assert await coordinator.finish(run, success=True) is None

        messages = await _messages(session_factory, conversation.id)
        assistant = [m for m in messages if m.sender_type == "assistant"]
        assert len(assistant) == 1
        assert assistant[0].content == "一二"
        assert assistant[0].is_success is False

    @pytest.mark.asyncio
    async def test_history_read_before_user_message(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, fake_chat_model)

        run = await coordinator.stream_response(conversation.id, "第一问", 1)
        [piece async for piece in run]

        messages = fake_chat_model.calls[0]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert messages[-1]["content"] == "第一问"

    @pytest.mark.asyncio
    async def test_ownership_checked_first(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, fake_chat_model)

        with pytest.raises(UnauthorizedError):
            await coordinator.stream_response(conversation.id, "你好", 2)
        with pytest.raises(ConversationNotFoundError):
            await coordinator.stream_response(999, "你好", 1)

        assert fake_chat_model.calls == []
        assert await _messages(session_factory, conversation.id) == []

    @pytest.mark.asyncio
    async def test_save_assistant_message_checks_owner(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, fake_chat_model)

        with pytest.raises(UnauthorizedError):
            await coordinator.save_assistant_message(conversation.id, "内容", True, user_id=2)

        message = await coordinator.save_assistant_message(conversation.id, "内容", False, user_id=1)
        assert message.is_success is False


class TestRelaySSE:
    """测试 SSE 转发"""

    @pytest.mark.asyncio
    async def test_tokens_then_done(self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model):
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, fake_chat_model)
        run = await coordinator.stream_response(conversation.id, "你好", 1)

        envelopes = _parse_sse([frame async for frame in relay_sse(coordinator, run)])

        assert [e["type"] for e in envelopes] == ["token", "token", "token", "done"]
        assert "".join(e["content"] for e in envelopes) == "你好，世界"
        messages = await _messages(session_factory, conversation.id)
        assert messages[-1].is_success is True

    @pytest.mark.asyncio
    async def test_without_auto_save(self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model):
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, fake_chat_model)
        run = await coordinator.stream_response(conversation.id, "你好", 1)

        [frame async for frame in relay_sse(coordinator, run, auto_save=False)]

        messages = await _messages(session_factory, conversation.id)
        assert [m.sender_type for m in messages] == ["user"]

    @pytest.mark.asyncio
    async def test_model_failure_emits_error(
        self, session_factory, conversation, fake_embedder, vector_index, chat_model_factory
    ):
        chat_model = chat_model_factory(fail_after=2)
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, chat_model)
        run = await coordinator.stream_response(conversation.id, "你好", 1)

        envelopes = _parse_sse([frame async for frame in relay_sse(coordinator, run)])

        assert [e["type"] for e in envelopes] == ["token", "token", "error"]
        assert envelopes[-1]["content"] == "chat model disconnected"
        messages = await _messages(session_factory, conversation.id)
        assert messages[-1].content == "你好，"
        assert messages[-1].is_success is False

    @pytest.mark.asyncio
    async def test_client_disconnect_saves_partial(
        self, session_factory, conversation, fake_embedder, vector_index, chat_model_factory
    ):
        chat_model = chat_model_factory(pieces=["一", "二", "三", "四"])
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, chat_model)
        run = await coordinator.stream_response(conversation.id, "数数", 1)

        frames = relay_sse(coordinator, run)
        received = [await frames.__anext__(), await frames.__anext__()]
        await frames.aclose()
        await drain_pending_saves()

        assert len(received) == 2
        messages = await _messages(session_factory, conversation.id)
        assistant = [m for m in messages if m.sender_type == "assistant"]
        assert len(assistant) == 1
        assert assistant[0].content == "一二"
        assert assistant[0].is_success is False


class TestRelayWebSocket:
    """测试 WebSocket 转发"""

    @pytest.mark.asyncio
    async def test_start_tokens_done(self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model):
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, fake_chat_model)
        sent: list[dict] = []

        async def send(envelope):
            sent.append(envelope)

        await relay_websocket(coordinator, send, conversation.id, "你好", 1)

        assert [e["type"] for e in sent] == ["start", "token", "token", "token", "done"]

    @pytest.mark.asyncio
    async def test_cancel_saves_partial_and_sends_stopped(
        self, session_factory, conversation, fake_embedder, vector_index
    ):
        chat_model = GatedChatModel(["甲", "乙", "丙", "丁"], ready=2)
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, chat_model)
        sent: list[dict] = []

        async def send(envelope):
            sent.append(envelope)

        task = asyncio.create_task(relay_websocket(coordinator, send, conversation.id, "写一首诗", 1))
        await asyncio.wait_for(chat_model.reached.wait(), timeout=5)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert [e["type"] for e in sent] == ["start", "token", "token", "stopped"]
        messages = await _messages(session_factory, conversation.id)
        assert messages[-1].sender_type == "assistant"
        assert messages[-1].content == "甲乙"
        assert messages[-1].is_success is False

    @pytest.mark.asyncio
    async def test_foreign_conversation_sends_error(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = _coordinator(session_factory, fake_embedder, vector_index, fake_chat_model)
        sent: list[dict] = []

        async def send(envelope):
            sent.append(envelope)

        await relay_websocket(coordinator, send, conversation.id, "你好", 2)

        assert [e["type"] for e in sent] == ["start", "error"]
        assert sent[-1]["content"] == "无权访问该对话"
        assert fake_chat_model.calls == []


class TestCancelDuringSave:
    """测试在启动或保存过程中取消：每次运行仍然只保存一条助手消息"""

    @staticmethod
    def _build(cls, session_factory, embedder, index, chat_model):
        responder = RetrievalResponder(embedder=embedder, index=index, chat_model=chat_model)
        return cls(session_factory=session_factory, responder=responder)

    @pytest.mark.asyncio
    async def test_websocket_stop_while_saving_completed_answer(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = self._build(SlowSaveCoordinator, session_factory, fake_embedder, vector_index, fake_chat_model)
        sent: list[dict] = []

        async def send(envelope):
            sent.append(envelope)

        task = asyncio.create_task(relay_websocket(coordinator, send, conversation.id, "你好", 1))
        await asyncio.wait_for(coordinator.saving.wait(), timeout=5)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await drain_pending_saves()

        assert [e["type"] for e in sent] == ["start", "token", "token", "token", "stopped"]
        messages = await _messages(session_factory, conversation.id)
        assistant = [m for m in messages if m.sender_type == "assistant"]
        assert len(assistant) == 1
        assert assistant[0].content == "你好，世界"
        assert assistant[0].is_success is True

    @pytest.mark.asyncio
    async def test_websocket_stop_before_first_token(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = self._build(SlowStartCoordinator, session_factory, fake_embedder, vector_index, fake_chat_model)
        sent: list[dict] = []

        async def send(envelope):
            sent.append(envelope)

        task = asyncio.create_task(relay_websocket(coordinator, send, conversation.id, "数数", 1))
        await asyncio.wait_for(coordinator.started.wait(), timeout=5)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert [e["type"] for e in sent] == ["start", "stopped"]
        messages = await _messages(session_factory, conversation.id)
        assert [(m.sender_type, m.content, m.is_success) for m in messages] == [
            ("user", "数数", None),
            ("assistant", "", False),
        ]
        assert fake_chat_model.calls == []

    @pytest.mark.asyncio
    async def test_sse_disconnect_while_saving_completed_answer(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = self._build(SlowSaveCoordinator, session_factory, fake_embedder, vector_index, fake_chat_model)
        run = await coordinator.stream_response(conversation.id, "你好", 1)
        frames = relay_sse(coordinator, run)

        async def consume():
            return [frame async for frame in frames]

        task = asyncio.create_task(consume())
        await asyncio.wait_for(coordinator.saving.wait(), timeout=5)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await drain_pending_saves()

        assert run.saved
        messages = await _messages(session_factory, conversation.id)
        assistant = [m for m in messages if m.sender_type == "assistant"]
        assert len(assistant) == 1
        assert assistant[0].content == "你好，世界"
        assert assistant[0].is_success is True

    @pytest.mark.asyncio
    async def test_concurrent_finish_saves_once(
        self, session_factory, conversation, fake_embedder, vector_index, fake_chat_model
    ):
        coordinator = self._build(SlowSaveCoordinator, session_factory, fake_embedder, vector_index, fake_chat_model)
        run = await coordinator.stream_response(conversation.id, "你好", 1)
        [piece async for piece in run]

        first, second = await asyncio.gather(
            coordinator.finish(run, success=True),
            coordinator.finish(run, success=False),
        )

        assert first.is_success is True
        assert second is None
        messages = await _messages(session_factory, conversation.id)
        assert [m.sender_type for m in messages] == ["user", "assistant"]
