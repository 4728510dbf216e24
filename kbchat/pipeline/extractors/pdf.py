"""PDF 提取器 (pdfplumber)"""

from pathlib import Path

import pdfplumber

from kbchat.pipeline.base import BaseExtractorOperator, DocumentKind
from kbchat.pipeline.registry import register_operator


@register_operator("extractor", DocumentKind.PDF.value)
class PdfExtractor(BaseExtractorOperator):
    """整本 PDF 提取为一段文本，页与页之间用换行连接"""
    name = DocumentKind.PDF.value
    kind = "extractor"

    def extract(self, path: Path) -> str:
        pages: list[str] = []
        with pdfplumber.open(str(path)) as pdf:
            for page in pdf.pages:
                text = page.extract_text()
                if text and text.strip():
                    pages.append(text)
        return "\n".join(pages)
