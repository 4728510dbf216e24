"""
文档入库 Pipeline

- extractors/ : 按文件类型提取原始文本（纯文本、Markdown、Word、PDF、图片 OCR）
- chunkers/   : 递归字符切分（Markdown 优先按标题切分）
- registry.py : 组件注册表

使用示例：
    from kbchat.pipeline import extract_text, split_passages

    text = await extract_text(path, ".pdf")
    pieces = split_passages(text, is_markdown=False)
"""

from kbchat.pipeline.chunkers import split_passages
from kbchat.pipeline.extractors import classify, describe_file, extract_text
from kbchat.pipeline.registry import operator_registry

__all__ = [
    "classify",
    "describe_file",
    "extract_text",
    "operator_registry",
    "split_passages",
]
