"""
对话流式协调 (Conversation Stream Coordinator)

把一次检索增强回答绑定到对话上：
1. 校验对话归属（在产生任何输出、调用任何远程服务之前）
2. 读取最近 10 条消息作为历史，再保存本次用户消息
3. 返回 StreamRun：逐片段转发给传输层，同时累积已输出的文本
4. 结束后由传输层显式调用 finish / save_assistant_message 保存助手消息：
   正常结束 is_success=True，用户中止 is_success=False（保存已输出部分）

每次运行只保存一条助手消息；中止是消费方停止迭代，远端模型可能仍在生成。

传输层消息信封：{"type": start|token|done|error|stopped, "content": str, "timestamp": ISO8601}
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from kbchat.db.session import SessionLocal
from kbchat.models import Message, SenderType
from kbchat.schemas.conversation import StreamEnvelope
from kbchat.services.conversation import add_message, get_owned_conversation, recent_messages
from kbchat.services.responder import RetrievalResponder, build_history, get_responder

logger = logging.getLogger(__name__)


class StreamEvent(str, Enum):
    START = "start"
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"
    STOPPED = "stopped"


def make_envelope(event: StreamEvent, content: str = "") -> dict:
    return StreamEnvelope(
        type=event.value,
        content=content,
        timestamp=datetime.now(timezone.utc).isoformat(),
    ).model_dump()


def format_sse(envelope: dict) -> str:
    return f"data: {json.dumps(envelope, ensure_ascii=False)}\n\n"


class StreamRun:
    """
    一次进行中的流式回答

    异步迭代得到回答片段；已产出的片段按顺序累积在 content 中。
    只能迭代一次。
    """

    def __init__(self, conversation_id: int, user_id: int, source: AsyncIterator[str]):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._source = source
        self._parts: list[str] = []
        self.save_task: asyncio.Task | None = None

    def __aiter__(self) -> "StreamRun":
        return self

    async def __anext__(self) -> str:
        piece = await self._source.__anext__()
        self._parts.append(piece)
        return piece

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def increments(self) -> int:
        return len(self._parts)

    @property
    def saved(self) -> bool:
        """助手消息已写入（保存任务已成功完成）"""
        return (
            self.save_task is not None
            and self.save_task.done()
            and not self.save_task.cancelled()
            and self.save_task.exception() is None
        )

    async def aclose(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()


class StreamCoordinator:
    """
    流式对话协调器

    每次数据库操作使用独立会话，保存动作可能发生在请求会话关闭之后（例如客户端断开）。
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        responder: RetrievalResponder | None = None,
    ):
        self.session_factory = session_factory
        self._responder = responder

    @property
    def responder(self) -> RetrievalResponder:
        if self._responder is None:
            self._responder = get_responder()
        return self._responder

    async def stream_response(self, conversation_id: int, user_message: str, user_id: int) -> StreamRun:
        """
        开始一次流式回答

        Raises:
            ConversationNotFoundError: 对话不存在或已删除
            UnauthorizedError: 对话属于其他用户
        """
        async with self.session_factory() as session:
            conversation = await get_owned_conversation(session, conversation_id, user_id)
            history = build_history(await recent_messages(session, conversation_id))
            await add_message(session, conversation_id, SenderType.USER, user_message)
            mode, knowledge_id = conversation.type, conversation.knowledge_id

        logger.info(f"开始流式回答: conversation={conversation_id}, mode={mode}, history={len(history)}")
        source = self.responder.respond(mode, user_message, knowledge_id, history)
        return StreamRun(conversation_id, user_id, source)

    async def save_assistant_message(
        self,
        conversation_id: int,
        content: str,
        success: bool,
        user_id: int | None = None,
    ) -> Message:
        """
        保存助手消息

        success=False 表示用户中止，content 为中止前已输出的部分。
        传入 user_id 时先校验对话归属（供外部保存接口使用）。
        """
        async with self.session_factory() as session:
            if user_id is not None:
                await get_owned_conversation(session, conversation_id, user_id)
            message = await add_message(
                session, conversation_id, SenderType.ASSISTANT, content, is_success=success
            )
        logger.info(
            f"保存助手消息: conversation={conversation_id}, success={success}, length={len(content)}"
        )
        return message

    def start_save(self, run: StreamRun, success: bool) -> asyncio.Task:
        """
        在独立任务中保存助手消息，返回保存任务

        同一运行只会创建一个保存任务，之后的调用返回已有任务。
        保存任务不随调用方一起取消，应用关闭时由 drain_pending_saves 等待。
        """
        if run.save_task is None:
            task = asyncio.ensure_future(self._save_run(run, success))
            _pending_saves.add(task)
            task.add_done_callback(_pending_saves.discard)
            task.add_done_callback(_log_save_failure)
            run.save_task = task
        return run.save_task

    async def finish(self, run: StreamRun, success: bool) -> Message | None:
        """
        结束一次运行并保存助手消息

        同一运行重复调用只保存一次，后续调用返回 None。
        调用方在保存过程中被取消时，保存照常完成。
        """
        if run.save_task is not None:
            return None
        return await asyncio.shield(self.start_save(run, success))

    async def _save_run(self, run: StreamRun, success: bool) -> Message:
        await run.aclose()
        return await self.save_assistant_message(run.conversation_id, run.content, success)


# 进行中的保存任务，保持引用直到完成
_pending_saves: set[asyncio.Task] = set()


def schedule_finish(coordinator: StreamCoordinator, run: StreamRun, success: bool) -> asyncio.Task:
    """不等待结果地保存（当前任务已被取消或生成器正在关闭时使用）"""
    return coordinator.start_save(run, success)


def _log_save_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"保存助手消息失败: {task.exception()}")


async def drain_pending_saves() -> None:
    """等待所有保存任务完成（应用关闭时调用）"""
    if _pending_saves:
        await asyncio.gather(*list(_pending_saves), return_exceptions=True)


async def relay_sse(
    coordinator: StreamCoordinator,
    run: StreamRun,
    auto_save: bool = True,
) -> AsyncIterator[str]:
    """
    把一次运行转成 SSE 事件

    SSE 没有 start 事件：若干 token 之后以 done 或 error 结束。
    客户端断开时（生成器被取消或关闭）以 is_success=False 保存已输出部分；
    断开发生在正常结束的保存过程中时，该保存照常完成，不再另存。
    auto_save=False 时不保存，由客户端调用保存接口。
    """
    try:
        async for piece in run:
            yield format_sse(make_envelope(StreamEvent.TOKEN, piece))
        if auto_save:
            await coordinator.finish(run, success=True)
        yield format_sse(make_envelope(StreamEvent.DONE))
    except (asyncio.CancelledError, GeneratorExit):
        logger.info(
            f"SSE 客户端断开: conversation={run.conversation_id}, 已输出 {run.increments} 个片段"
        )
        if auto_save:
            schedule_finish(coordinator, run, success=False)
        raise
    except Exception as e:
        logger.exception(f"SSE 流式回答失败: {e}")
        if auto_save and run.content:
            await coordinator.finish(run, success=False)
        yield format_sse(make_envelope(StreamEvent.ERROR, str(e)))


async def _started_run(starting: asyncio.Task) -> StreamRun | None:
    """等待已发起的 stream_response 完成；启动失败时没有需要保存的运行"""
    try:
        return await starting
    except Exception as e:
        logger.info(f"回答未能开始: {e}")
        return None


async def relay_websocket(
    coordinator: StreamCoordinator,
    send: Callable[[dict], Awaitable[None]],
    conversation_id: int,
    user_message: str,
    user_id: int,
) -> None:
    """
    把一次运行转发到 WebSocket 连接

    帧序列：start → 若干 token → done / error / stopped。
    该协程被取消（用户发送停止或断开连接）时，以 is_success=False 保存已输出部分并发送 stopped。
    在第一个片段之前停止也会保存一条空的助手消息，与已保存的用户消息对应。
    """
    await send(make_envelope(StreamEvent.START))
    # 用户消息一旦写入就必须拿到 run，取消不能打断启动过程
    starting = asyncio.ensure_future(coordinator.stream_response(conversation_id, user_message, user_id))
    run: StreamRun | None = None
    try:
        run = await asyncio.shield(starting)
        async for piece in run:
            await send(make_envelope(StreamEvent.TOKEN, piece))
        await coordinator.finish(run, success=True)
        await send(make_envelope(StreamEvent.DONE))
        logger.info(f"WebSocket 流式回答完成: conversation={conversation_id}")
    except asyncio.CancelledError:
        if run is None:
            run = await _started_run(starting)
        logger.info(
            f"用户停止回答: conversation={conversation_id}, "
            f"已输出 {run.increments if run else 0} 个片段"
        )
        if run is not None:
            await coordinator.finish(run, success=False)
        await send(make_envelope(StreamEvent.STOPPED))
        raise
    except Exception as e:
        logger.error(f"WebSocket 流式回答失败: conversation={conversation_id}: {e}")
        if run is not None and run.content:
            await coordinator.finish(run, success=False)
        await send(make_envelope(StreamEvent.ERROR, getattr(e, "message", None) or str(e)))


_coordinator: StreamCoordinator | None = None


def get_stream_coordinator() -> StreamCoordinator:
    """获取全局流式协调器"""
    global _coordinator
    if _coordinator is None:
        _coordinator = StreamCoordinator()
    return _coordinator
