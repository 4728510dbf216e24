"""
API 路由汇总

将所有子路由注册到主路由器，统一对外暴露。

路由模块说明：
- health.py        : 健康检查接口
- knowledge.py     : 知识库管理（创建、公开列表、加入/退出、删除）
- files.py         : 文件管理（上传入库、列表、搜索、重新入库、删除）
- conversations.py : 对话管理与 SSE 流式回答
- ws.py            : WebSocket 流式回答网关
"""

from fastapi import APIRouter

from kbchat.api.routes import conversations, files, health, knowledge, ws

# 主路由器，包含所有 API 端点
api_router = APIRouter()

# 注册各子路由，tags 用于 API 文档分组
api_router.include_router(health.router, tags=["health"])
api_router.include_router(knowledge.router)
api_router.include_router(files.router)
api_router.include_router(conversations.router)
api_router.include_router(ws.router)
