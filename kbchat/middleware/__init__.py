from kbchat.middleware.request_trace import RequestTraceMiddleware

__all__ = ["RequestTraceMiddleware"]
