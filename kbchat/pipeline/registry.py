"""
入库组件注册表

提取器按文件类型注册（"extractor", "pdf"），切分器按策略名注册（"chunker", "markdown"）：

    @register_operator("chunker", "recursive")
    class RecursiveChunker: ...

    operator_registry.get("chunker", "recursive")   # -> RecursiveChunker
"""

from __future__ import annotations

from typing import Any, Callable


class OperatorRegistry:
    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], Any] = {}

    def register(self, kind: str, name: str, op: Any) -> None:
        key = (kind, name)
        if key in self._entries and self._entries[key] is not op:
            raise ValueError(f"重复注册组件: {kind}/{name}")
        self._entries[key] = op

    def get(self, kind: str, name: str) -> Any:
        """未注册时返回 None"""
        return self._entries.get((kind, name))

    def names(self, kind: str) -> list[str]:
        return sorted(name for k, name in self._entries if k == kind)


operator_registry = OperatorRegistry()


def register_operator(kind: str, name: str) -> Callable[[Any], Any]:
    def decorator(op: Any) -> Any:
        operator_registry.register(kind, name, op)
        return op

    return decorator
