"""
请求追踪中间件

- 请求 ID：取 X-Request-ID 头，没有时生成；写入日志上下文并在响应头中返回
- 用户 ID：取上游网关注入的 X-User-Id 头，只用于日志上下文（鉴权见 api.deps）
- 每个请求记录一条访问日志，4xx 记 WARNING，5xx 记 ERROR

BaseHTTPMiddleware 只处理 http 作用域，WebSocket 连接的日志上下文由网关自行设置。
流式响应的耗时只统计到响应头发出为止。
"""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from kbchat.infra.logging import Stopwatch, get_logger, set_request_id, set_user_id

logger = get_logger(__name__)

QUIET_PATHS = {"/healthz", "/favicon.ico"}


def _parse_user_id(raw: str | None) -> int | None:
    if raw and raw.strip().isdigit():
        return int(raw.strip())
    return None


class RequestTraceMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        set_request_id(request_id)
        set_user_id(_parse_user_id(request.headers.get("X-User-Id")))

        watch = Stopwatch()
        path = request.url.path
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"{request.method} {path} 未处理异常 ({watch.elapsed_ms:.0f}ms): {e}",
                extra={"method": request.method, "path": path, "duration_ms": watch.elapsed_ms},
            )
            raise

        duration = watch.elapsed_ms
        extra = {
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration,
        }
        line = f"{request.method} {path} {response.status_code} {duration:.0f}ms"
        if response.status_code >= 500:
            logger.error(line, extra=extra)
        elif response.status_code >= 400:
            logger.warning(line, extra=extra)
        elif path not in QUIET_PATHS:
            logger.info(line, extra=extra)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration:.0f}ms"
        return response
