"""
WebSocket 网关测试

测试 kbchat/api/routes/ws.py：
- 帧格式错误 / 未知类型
- 开始、停止、重复开始
- 连接关闭时取消进行中的回答
- 缺少用户身份时以 4401 关闭
"""

import asyncio
import json

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect, WebSocketState

from kbchat.api.routes.ws import UNAUTHENTICATED_CLOSE_CODE, WebSocketGateway
from kbchat.main import app
from kbchat.services.conversation import get_conversation_detail, get_current_conversation
from kbchat.services.responder import RetrievalResponder
from kbchat.services.streaming import StreamCoordinator


class FakeWebSocket:
    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.sent: list[dict] = []

    async def send_json(self, frame: dict) -> None:
        self.sent.append(frame)


class GatedChatModel:
    """输出两个片段后挂起，直到被取消"""

    def __init__(self):
        self.reached = asyncio.Event()

    async def stream_chat(self, messages):
        yield "第一段"
        yield "第二段"
        self.reached.set()
        await asyncio.Event().wait()
        yield "不会输出"


def _frame(type_: str, **data) -> str:
    return json.dumps({"type": type_, "data": data})


def _ai_types(ws: FakeWebSocket) -> list[str]:
    return [f["data"]["type"] for f in ws.sent if f["type"] == "aiResponse"]


@pytest_asyncio.fixture
async def conversation(session_factory):
    async with session_factory() as session:
        conv, _ = await get_current_conversation(session, 1, conversation_type="global")
    return conv


@pytest.fixture
def gated_model():
    return GatedChatModel()


@pytest.fixture
def gateway(session_factory, fake_embedder, vector_index, gated_model):
    responder = RetrievalResponder(embedder=fake_embedder, index=vector_index, chat_model=gated_model)
    coordinator = StreamCoordinator(session_factory=session_factory, responder=responder)
    return WebSocketGateway(FakeWebSocket(), user_id=1, coordinator=coordinator)


class TestFrames:
    """测试帧解析"""

    @pytest.mark.asyncio
    async def test_malformed_json(self, gateway):
        await gateway.handle("{not json")
        assert gateway.websocket.sent[-1]["type"] == "error"
        assert gateway.websocket.sent[-1]["data"]["message"] == "消息格式错误"

    @pytest.mark.asyncio
    async def test_missing_fields(self, gateway):
        await gateway.handle(_frame("startAiResponse", conversation_id=1))
        assert gateway.websocket.sent[-1]["data"]["message"] == "消息格式错误"

    @pytest.mark.asyncio
    async def test_unknown_type(self, gateway):
        await gateway.handle(_frame("ping"))
        assert gateway.websocket.sent[-1]["data"]["message"] == "未知消息类型: ping"

    @pytest.mark.asyncio
    async def test_closed_socket_drops_frames(self, gateway):
        gateway.websocket.client_state = WebSocketState.DISCONNECTED
        await gateway.send_error("x")
        assert gateway.websocket.sent == []


class TestStartStop:
    """测试开始与停止"""

    @pytest.mark.asyncio
    async def test_stop_without_run(self, gateway):
        await gateway.handle(_frame("stopAiResponse", conversation_id=42))
        assert _ai_types(gateway.websocket) == ["stopped"]

    @pytest.mark.asyncio
    async def test_stop_saves_partial(self, gateway, gated_model, conversation, session_factory):
        await gateway.handle(_frame("startAiResponse", conversation_id=conversation.id, user_message="讲个故事"))
        await asyncio.wait_for(gated_model.reached.wait(), timeout=5)

        await gateway.handle(_frame("stopAiResponse", conversation_id=conversation.id))

        assert _ai_types(gateway.websocket) == ["start", "token", "token", "stopped"]
        assert gateway.active_conversations == []
        async with session_factory() as session:
            _, messages = await get_conversation_detail(session, conversation.id, 1)
        assert messages[-1].content == "第一段第二段"
        assert messages[-1].is_success is False

    @pytest.mark.asyncio
    async def test_duplicate_start_rejected(self, gateway, gated_model, conversation):
        start = _frame("startAiResponse", conversation_id=conversation.id, user_message="你好")
        await gateway.handle(start)
        await asyncio.wait_for(gated_model.reached.wait(), timeout=5)

        await gateway.handle(start)

        last = gateway.websocket.sent[-1]["data"]
        assert last["type"] == "error"
        assert last["content"] == "该对话已有进行中的回答"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_close_cancels_runs(self, gateway, gated_model, conversation, session_factory):
        await gateway.handle(_frame("startAiResponse", conversation_id=conversation.id, user_message="你好"))
        await asyncio.wait_for(gated_model.reached.wait(), timeout=5)

        await gateway.close()

        assert gateway.active_conversations == []
        async with session_factory() as session:
            _, messages = await get_conversation_detail(session, conversation.id, 1)
        assert [m.sender_type for m in messages] == ["user", "assistant"]
        assert messages[-1].is_success is False


class TestEndpoint:
    """测试连接鉴权"""

    def test_missing_user_closes_connection(self):
        client = TestClient(app)
        with client.websocket_connect("/ws") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()
        assert exc_info.value.code == UNAUTHENTICATED_CLOSE_CODE

    def test_malformed_frame_over_socket(self):
        client = TestClient(app)
        with client.websocket_connect("/ws?user_id=1") as ws:
            ws.send_text("hello")
            frame = ws.receive_json()
        assert frame["type"] == "error"
        assert frame["data"]["message"] == "消息格式错误"
