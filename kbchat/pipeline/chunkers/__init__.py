"""
文本切分器模块

- RecursiveChunker : 递归字符切分，优先保持段落/行/词边界
- MarkdownChunker  : 先按二到四级标题切分，再回退到通用分隔符
"""

from kbchat.config import get_settings
from kbchat.pipeline.base import ChunkPiece
from kbchat.pipeline.chunkers.markdown import MarkdownChunker
from kbchat.pipeline.chunkers.recursive import RecursiveChunker
from kbchat.pipeline.registry import operator_registry


def split_passages(
    text: str,
    is_markdown: bool = False,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> list[ChunkPiece]:
    """
    把原始文本切分为带序号的片段

    空文本返回空列表，由调用方决定是否视为失败。
    """
    settings = get_settings()
    name = "markdown" if is_markdown else "recursive"
    chunker_cls = operator_registry.get("chunker", name)
    chunker = chunker_cls(
        chunk_size=chunk_size or settings.chunk_size,
        chunk_overlap=settings.chunk_overlap if chunk_overlap is None else chunk_overlap,
    )
    return chunker.chunk(text)


__all__ = ["MarkdownChunker", "RecursiveChunker", "split_passages"]
