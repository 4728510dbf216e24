"""
递归字符切分器

按优先级选择文本中出现的第一个分隔符切分，超长片段再用更细的分隔符递归切分，
最后把小片段合并回接近 chunk_size 的片段，相邻片段保留 chunk_overlap 的重叠。

分隔符优先级："\n\n"（段落）→ "\n"（行）→ " "（空格）→ ""（字符）

分隔符保留在后一个片段的开头，合并后的片段去除首尾空白。
"""

import logging
import re
from collections import deque

from kbchat.pipeline.base import BaseChunkerOperator, ChunkPiece
from kbchat.pipeline.registry import register_operator

logger = logging.getLogger(__name__)


@register_operator("chunker", "recursive")
class RecursiveChunker(BaseChunkerOperator):
    """
    递归字符切分器

    切分策略：
    1. 选择文本中出现的最高优先级分隔符分割文本
    2. 小于 chunk_size 的片段暂存，等待合并
    3. 超过 chunk_size 的片段用剩余分隔符继续递归分割
    4. 暂存片段合并时，每输出一个片段就从头部丢弃内容，直到剩余长度不超过 chunk_overlap
    """
    name = "recursive"
    kind = "chunker"

    DEFAULT_SEPARATORS = ["\n\n", "\n", " ", ""]

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        separators: list[str] | None = None,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size 必须大于 0，当前为 {chunk_size}")
        if chunk_overlap >= chunk_size:
            raise ValueError(f"chunk_overlap ({chunk_overlap}) 必须小于 chunk_size ({chunk_size})")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = list(separators) if separators is not None else list(self.DEFAULT_SEPARATORS)

    def chunk(self, text: str, metadata: dict | None = None) -> list[ChunkPiece]:
        if not text or not text.strip():
            return []

        texts = self.split_text(text)
        return [
            ChunkPiece(text=t, index=i, metadata=dict(metadata or {}))
            for i, t in enumerate(texts)
        ]

    def split_text(self, text: str) -> list[str]:
        return self._split_text(text, self.separators)

    def _split_text(self, text: str, separators: list[str]) -> list[str]:
        final_chunks: list[str] = []

        # 选择文本中出现的第一个分隔符
        separator = separators[-1]
        new_separators: list[str] = []
        for i, sep in enumerate(separators):
            if sep == "":
                separator = sep
                break
            if sep in text:
                separator = sep
                new_separators = separators[i + 1:]
                break

        good_splits: list[str] = []
        for piece in self._split_with_separator(text, separator):
            if len(piece) < self.chunk_size:
                good_splits.append(piece)
                continue
            if good_splits:
                final_chunks.extend(self._merge_splits(good_splits))
                good_splits = []
            if new_separators:
                final_chunks.extend(self._split_text(piece, new_separators))
            else:
                final_chunks.append(piece)

        if good_splits:
            final_chunks.extend(self._merge_splits(good_splits))
        return final_chunks

    @staticmethod
    def _split_with_separator(text: str, separator: str) -> list[str]:
        """按分隔符切分，分隔符留在后一段开头"""
        if separator == "":
            return list(text)

        parts = re.split(f"({re.escape(separator)})", text)
        splits = [parts[0]] + [parts[i] + parts[i + 1] for i in range(1, len(parts), 2)]
        return [s for s in splits if s]

    def _merge_splits(self, splits: list[str]) -> list[str]:
        docs: list[str] = []
        current: deque[str] = deque()
        total = 0

        for piece in splits:
            length = len(piece)
            if total + length > self.chunk_size:
                if total > self.chunk_size:
                    logger.warning(f"片段长度 {total} 超过 chunk_size {self.chunk_size}")
                if current:
                    doc = "".join(current).strip()
                    if doc:
                        docs.append(doc)
                    # 丢弃头部内容，直到剩余部分可以作为下一片段的重叠
                    while total > self.chunk_overlap or (
                        total + length > self.chunk_size and total > 0
                    ):
                        total -= len(current.popleft())
            current.append(piece)
            total += length

        doc = "".join(current).strip()
        if doc:
            docs.append(doc)
        return docs
