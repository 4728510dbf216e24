"""
文档提取器

按扩展名把文件分为 text / markdown / word / pdf / image 五类，每类一个提取器；
未知扩展名归为 unknown，提取时抛出 UnsupportedFormatError。

解析库都是同步阻塞的，extract_text 通过 asyncio.to_thread 在线程中执行。
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from kbchat.exceptions import ExtractionError, KBChatError, UnsupportedFormatError
from kbchat.pipeline.base import DocumentKind
from kbchat.pipeline.extractors import image, pdf, text, word  # noqa: F401
from kbchat.pipeline.registry import operator_registry

logger = logging.getLogger(__name__)

EXTENSION_KINDS: dict[str, DocumentKind] = {
    ".txt": DocumentKind.TEXT,
    ".md": DocumentKind.MARKDOWN,
    ".docx": DocumentKind.WORD,
    ".doc": DocumentKind.WORD,
    ".pdf": DocumentKind.PDF,
    ".jpg": DocumentKind.IMAGE,
    ".jpeg": DocumentKind.IMAGE,
    ".png": DocumentKind.IMAGE,
    ".bmp": DocumentKind.IMAGE,
    ".tiff": DocumentKind.IMAGE,
}

KIND_DESCRIPTIONS: dict[DocumentKind, str] = {
    DocumentKind.TEXT: "纯文本文件",
    DocumentKind.MARKDOWN: "Markdown文档",
    DocumentKind.WORD: "Word文档",
    DocumentKind.PDF: "PDF文档",
    DocumentKind.IMAGE: "图片文件",
    DocumentKind.UNSUPPORTED: "未知文件类型",
}


def normalize_extension(extension: str) -> str:
    """统一为小写、带点号的形式：'PDF' -> '.pdf'"""
    ext = extension.strip().lower()
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return ext


def classify(extension: str) -> DocumentKind:
    """根据扩展名判断文件类型，未知扩展名返回 UNSUPPORTED"""
    return EXTENSION_KINDS.get(normalize_extension(extension), DocumentKind.UNSUPPORTED)


@dataclass
class FileTypeInfo:
    file_name: str
    extension: str
    type: str
    description: str


def describe_file(path: str | Path) -> FileTypeInfo:
    """返回文件名、扩展名、类型与中文描述"""
    p = Path(path)
    ext = p.suffix.lower()
    kind = classify(ext)
    return FileTypeInfo(
        file_name=p.name,
        extension=ext,
        type=kind.value,
        description=KIND_DESCRIPTIONS[kind],
    )


def get_extractor(kind: DocumentKind):
    extractor_cls = operator_registry.get("extractor", kind.value)
    if extractor_cls is None:
        raise UnsupportedFormatError(f"不支持的文件类型: {kind.value}")
    return extractor_cls()


async def extract_text(path: str | Path, extension: str) -> str:
    """
    提取文件文本

    Args:
        path: 本地文件路径（只读）
        extension: 声明的扩展名，决定使用哪个提取器

    Raises:
        UnsupportedFormatError: 未知扩展名
        ExtractionError: 解析失败或 OCR 结果为空
    """
    path = Path(path)
    kind = classify(extension)
    if kind is DocumentKind.UNSUPPORTED:
        raise UnsupportedFormatError(f"不支持的文件类型: {normalize_extension(extension) or extension}")

    extractor = get_extractor(kind)
    logger.info(f"正在处理文件: {path.name}, 类型: {kind.value}")
    try:
        return await asyncio.to_thread(extractor.extract, path)
    except KBChatError:
        raise
    except Exception as e:
        logger.error(f"不能处理的文件 {path.name}: {e}")
        raise ExtractionError(f"处理{KIND_DESCRIPTIONS[kind]}失败: {e}") from e


__all__ = [
    "EXTENSION_KINDS",
    "FileTypeInfo",
    "classify",
    "describe_file",
    "extract_text",
    "normalize_extension",
]
