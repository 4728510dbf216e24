"""
WebSocket 流式回答网关

路径：/ws（可通过 WS_PATH 配置）

客户端帧：
    {"type": "startAiResponse", "data": {"conversation_id": 1, "user_message": "..."}}
    {"type": "stopAiResponse",  "data": {"conversation_id": 1}}

服务端帧：
    {"type": "aiResponse", "data": {"type": "start|token|done|error|stopped", "content": "...", "timestamp": "..."}}
    {"type": "error", "data": {"message": "...", "timestamp": "..."}}   # 帧格式错误

用户身份来自 user_id 查询参数或 X-User-Id 头（由上游网关注入），缺失时以 4401 关闭连接。
每个对话同时只允许一个进行中的回答；停止或断开连接时取消对应任务，已输出的部分以 is_success=false 保存。
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from kbchat.config import get_settings
from kbchat.infra.logging import set_request_id, set_user_id
from kbchat.schemas import ClientFrame, StartAiResponseData, StopAiResponseData
from kbchat.services.streaming import (
    StreamCoordinator,
    StreamEvent,
    get_stream_coordinator,
    make_envelope,
    relay_websocket,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

UNAUTHENTICATED_CLOSE_CODE = 4401


class WebSocketGateway:
    """单个 WebSocket 连接上的流式回答管理"""

    def __init__(self, websocket: WebSocket, user_id: int, coordinator: StreamCoordinator):
        self.websocket = websocket
        self.user_id = user_id
        self.coordinator = coordinator
        self._send_lock = asyncio.Lock()
        self._tasks: dict[int, asyncio.Task] = {}

    @property
    def active_conversations(self) -> list[int]:
        return [cid for cid, task in self._tasks.items() if not task.done()]

    async def send(self, frame: dict) -> None:
        async with self._send_lock:
            if self.websocket.client_state != WebSocketState.CONNECTED:
                return
            try:
                await self.websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"WebSocket 已关闭，丢弃帧: {e}")

    async def send_envelope(self, envelope: dict) -> None:
        await self.send({"type": "aiResponse", "data": envelope})

    async def send_error(self, message: str) -> None:
        await self.send({
            "type": "error",
            "data": {"message": message, "timestamp": datetime.now(timezone.utc).isoformat()},
        })

    async def handle(self, raw: str) -> None:
        """处理一条客户端帧"""
        try:
            frame = ClientFrame.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"解析 WebSocket 消息失败: {e}")
            await self.send_error("消息格式错误")
            return

        if frame.type == "startAiResponse":
            await self._start(frame.data)
        elif frame.type == "stopAiResponse":
            await self._stop(frame.data)
        else:
            await self.send_error(f"未知消息类型: {frame.type}")

    async def _start(self, data: dict) -> None:
        try:
            payload = StartAiResponseData.model_validate(data)
        except ValidationError:
            await self.send_error("消息格式错误")
            return

        cid = payload.conversation_id
        if cid in self.active_conversations:
            await self.send_envelope(make_envelope(StreamEvent.ERROR, "该对话已有进行中的回答"))
            return

        logger.info(f"开始 WebSocket 流式回答: conversation={cid}")
        task = asyncio.create_task(
            relay_websocket(self.coordinator, self.send_envelope, cid, payload.user_message, self.user_id)
        )
        self._tasks[cid] = task
        task.add_done_callback(lambda t, cid=cid: self._forget(cid, t))

    def _forget(self, conversation_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(conversation_id) is task:
            del self._tasks[conversation_id]

    async def _stop(self, data: dict) -> None:
        try:
            payload = StopAiResponseData.model_validate(data)
        except ValidationError:
            await self.send_error("消息格式错误")
            return

        cid = payload.conversation_id
        task = self._tasks.get(cid)
        logger.info(f"用户停止回答: conversation={cid}")
        if task is None or task.done():
            # 没有进行中的回答，直接确认
            await self.send_envelope(make_envelope(StreamEvent.STOPPED))
            return

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        """取消所有进行中的回答并等待其保存完成"""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def serve(self) -> None:
        try:
            while True:
                raw = await self.websocket.receive_text()
                await self.handle(raw)
        except WebSocketDisconnect:
            logger.info(f"WebSocket 客户端断开: user={self.user_id}")
        finally:
            await self.close()


def _resolve_user_id(websocket: WebSocket) -> int | None:
    raw = websocket.query_params.get("user_id") or websocket.headers.get("x-user-id")
    if raw and raw.strip().isdigit():
        return int(raw.strip())
    return None


@router.websocket(get_settings().ws_path)
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()

    user_id = _resolve_user_id(websocket)
    if user_id is None:
        logger.warning("WebSocket 连接缺少用户身份，关闭连接")
        await websocket.close(code=UNAUTHENTICATED_CLOSE_CODE)
        return

    set_request_id(str(uuid.uuid4()))
    set_user_id(user_id)
    logger.info(f"WebSocket 客户端连接: user={user_id}")

    gateway = WebSocketGateway(websocket, user_id, get_stream_coordinator())
    await gateway.serve()
