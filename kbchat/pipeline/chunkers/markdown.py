"""
Markdown 感知切分器

在通用递归切分的基础上，优先在二到四级标题（##、###、####）处切分，
再回退到段落、行、空格和字符。一级标题通常是文档标题，不作为切分点。
"""

from kbchat.pipeline.chunkers.recursive import RecursiveChunker
from kbchat.pipeline.registry import register_operator


@register_operator("chunker", "markdown")
class MarkdownChunker(RecursiveChunker):
    """Markdown 感知切分器"""
    name = "markdown"
    kind = "chunker"

    MARKDOWN_SEPARATORS = ["\n## ", "\n### ", "\n#### ", "\n\n", "\n", " ", ""]

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200):
        super().__init__(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=self.MARKDOWN_SEPARATORS,
        )
