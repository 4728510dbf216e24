"""Word 文档提取器 (python-docx)"""

from pathlib import Path

from docx import Document

from kbchat.pipeline.base import BaseExtractorOperator, DocumentKind
from kbchat.pipeline.registry import register_operator


@register_operator("extractor", DocumentKind.WORD.value)
class WordExtractor(BaseExtractorOperator):
    """
    提取段落文本与表格

    表格按行输出为 "| a | b |" 形式，放在正文段落之后。
    旧版二进制 .doc 文件无法被 python-docx 打开，会以提取失败报错。
    """
    name = DocumentKind.WORD.value
    kind = "extractor"

    def extract(self, path: Path) -> str:
        doc = Document(str(path))
        parts = [p.text for p in doc.paragraphs if p.text.strip()]

        for table in doc.tables:
            rows = [
                "| " + " | ".join(cell.text.strip() for cell in row.cells) + " |"
                for row in table.rows
            ]
            if rows:
                parts.append("\n".join(rows))

        return "\n".join(parts)
