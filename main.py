"""
KB Chat Service - 启动入口

运行方式：
    - 直接执行：python main.py
    - 或者使用：uvicorn kbchat.main:app --reload

服务启动后可以访问：
    - API 文档：http://localhost:8000/docs
    - 健康检查：http://localhost:8000/healthz
    - WebSocket：ws://localhost:8000/ws?user_id=<用户ID>
"""

import uvicorn


def main() -> None:
    """启动 FastAPI 服务器（开发模式自动重载）"""
    uvicorn.run(
        "kbchat.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    main()
