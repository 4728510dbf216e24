"""
Pipeline 基础类型定义

定义入库流程中可插拔组件的接口：
- 提取器（extractor）：文件 -> 原始文本
- 切分器（chunker）：原始文本 -> 片段列表

使用 Protocol 而非抽象基类，统一的 name/kind 属性便于注册和发现。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol


class DocumentKind(str, Enum):
    """文件类型（按扩展名分类）"""
    TEXT = "text"
    MARKDOWN = "markdown"
    WORD = "word"
    PDF = "pdf"
    IMAGE = "image"
    UNSUPPORTED = "unknown"


@dataclass
class ChunkPiece:
    """
    文本片段数据结构

    切分器的输出单元，index 为片段在文档中的顺序号（从 0 开始）。
    """
    text: str
    index: int
    metadata: dict = field(default_factory=dict)


class BaseOperator(Protocol):
    """组件基础协议"""
    name: str
    kind: str


class BaseExtractorOperator(BaseOperator, Protocol):
    """
    提取器协议

    只读访问源文件，不修改也不删除。阻塞的解析工作由调用方放到线程中执行。
    """
    kind: str = "extractor"

    def extract(self, path: Path) -> str:
        """读取文件并返回原始文本"""
        ...


class BaseChunkerOperator(BaseOperator, Protocol):
    """切分器协议"""
    kind: str = "chunker"

    def chunk(self, text: str, metadata: dict | None = None) -> list[ChunkPiece]:
        """
        将文本切分为多个片段

        Args:
            text: 原始文本
            metadata: 附加元数据（会传递到每个片段）
        """
        ...
