"""纯文本与 Markdown 提取器"""

import logging
from pathlib import Path

from kbchat.pipeline.base import BaseExtractorOperator, DocumentKind
from kbchat.pipeline.registry import register_operator

logger = logging.getLogger(__name__)


def decode_bytes(data: bytes) -> str:
    """按 UTF-8 → GBK 的顺序解码，都失败时按 UTF-8 替换非法字节"""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    try:
        return data.decode("gbk")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


@register_operator("extractor", DocumentKind.TEXT.value)
class TextExtractor(BaseExtractorOperator):
    name = DocumentKind.TEXT.value
    kind = "extractor"

    def extract(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8-sig")
        except UnicodeDecodeError:
            logger.debug(f"UTF-8 解码失败，按原始字节解码: {path.name}")
            return decode_bytes(path.read_bytes())


@register_operator("extractor", DocumentKind.MARKDOWN.value)
class MarkdownExtractor(TextExtractor):
    """Markdown 原样读取，结构交给 Markdown 切分器处理"""
    name = DocumentKind.MARKDOWN.value
