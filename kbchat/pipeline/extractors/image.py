"""图片 OCR 提取器 (pytesseract + Pillow)"""

import logging
from pathlib import Path

import pytesseract
from PIL import Image

from kbchat.config import get_settings
from kbchat.exceptions import ExtractionError
from kbchat.pipeline.base import BaseExtractorOperator, DocumentKind
from kbchat.pipeline.registry import register_operator

logger = logging.getLogger(__name__)


@register_operator("extractor", DocumentKind.IMAGE.value)
class ImageExtractor(BaseExtractorOperator):
    """
    中英双语 OCR

    语言包由 ocr_languages 配置（默认 chi_sim+eng），需要本机安装 tesseract 及对应语言数据。
    """
    name = DocumentKind.IMAGE.value
    kind = "extractor"

    def __init__(self, languages: str | None = None):
        self.languages = languages or get_settings().ocr_languages

    def extract(self, path: Path) -> str:
        logger.info(f"开始 OCR: {path.name} (lang={self.languages})")
        with Image.open(path) as image:
            text = pytesseract.image_to_string(image, lang=self.languages)

        if not text or not text.strip():
            raise ExtractionError("OCR 未能从图片中提取到文本内容")

        logger.info(f"OCR 完成: {path.name}, 提取 {len(text)} 个字符")
        return text
