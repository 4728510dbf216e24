"""
文本切分器单元测试

测试 kbchat/pipeline/chunkers 的核心功能：
- 片段长度上限与相邻片段重叠
- 段落/行/词边界优先
- Markdown 标题优先切分
- 空文本
"""

import pytest

from kbchat.pipeline import split_passages
from kbchat.pipeline.chunkers import MarkdownChunker, RecursiveChunker
from kbchat.pipeline.registry import operator_registry


class TestRecursiveChunker:
    """测试递归字符切分"""

    def test_3000_chars_gives_four_passages(self):
        """3000 字符、1000/200 → 1000, 1000, 1000, 600"""
        text = "".join(chr(ord("a") + i % 26) for i in range(3000))
        pieces = split_passages(text, chunk_size=1000, chunk_overlap=200)

        assert [len(p.text) for p in pieces] == [1000, 1000, 1000, 600]
        assert [p.index for p in pieces] == [0, 1, 2, 3]
        for prev, nxt in zip(pieces, pieces[1:]):
            assert prev.text[-200:] == nxt.text[:200]

    def test_short_text_single_passage(self):
        pieces = split_passages("一段很短的文本")
        assert len(pieces) == 1
        assert pieces[0].text == "一段很短的文本"

    @pytest.mark.parametrize("text", ["", "   ", "\n\n\t"])
    def test_empty_text(self, text):
        assert split_passages(text) == []

    def test_prefers_paragraph_boundaries(self):
        paragraphs = ["甲" * 60, "乙" * 60, "丙" * 60]
        chunker = RecursiveChunker(chunk_size=100, chunk_overlap=0)
        texts = chunker.split_text("\n\n".join(paragraphs))
        assert texts == paragraphs

    def test_word_boundaries_with_overlap(self):
        words = [f"w{i:03d}" for i in range(200)]
        chunker = RecursiveChunker(chunk_size=100, chunk_overlap=20)
        texts = chunker.split_text(" ".join(words))

        assert len(texts) > 1
        assert all(len(t) <= 100 for t in texts)
        # 词不会被截断
        for t in texts:
            assert all(len(token) == 4 for token in t.split())
        # 相邻片段共享结尾的词
        for prev, nxt in zip(texts, texts[1:]):
            assert prev.split()[-1] in nxt.split()

    def test_metadata_copied_to_each_piece(self):
        chunker = RecursiveChunker(chunk_size=10, chunk_overlap=2)
        pieces = chunker.chunk("abcdefghijklmnopqrst", metadata={"file_id": 3})
        assert all(p.metadata == {"file_id": 3} for p in pieces)
        pieces[0].metadata["file_id"] = 99
        assert pieces[1].metadata["file_id"] == 3

    def test_invalid_overlap(self):
        with pytest.raises(ValueError):
            RecursiveChunker(chunk_size=100, chunk_overlap=100)


class TestMarkdownChunker:
    """测试 Markdown 感知切分"""

    def test_splits_on_headings_first(self):
        sections = [
            "# 用户手册\n\n简介",
            "## 安装\n" + "安装步骤。" * 10,
            "## 配置\n" + "配置说明。" * 10,
        ]
        chunker = MarkdownChunker(chunk_size=60, chunk_overlap=0)
        texts = chunker.split_text("\n".join(sections))

        assert texts[0] == "# 用户手册\n\n简介"
        assert texts[1].startswith("## 安装")
        assert texts[2].startswith("## 配置")

    def test_split_passages_selects_markdown(self):
        text = "## A\n" + "x" * 50 + "\n## B\n" + "y" * 50
        pieces = split_passages(text, is_markdown=True, chunk_size=60, chunk_overlap=0)
        assert [p.text[:4] for p in pieces] == ["## A", "## B"]

    def test_registered(self):
        assert operator_registry.get("chunker", "markdown") is MarkdownChunker
        assert operator_registry.get("chunker", "recursive") is RecursiveChunker
        assert operator_registry.names("chunker") == ["markdown", "recursive"]
        assert operator_registry.get("chunker", "semantic") is None

    def test_conflicting_registration(self):
        with pytest.raises(ValueError, match="重复注册"):
            operator_registry.register("chunker", "markdown", RecursiveChunker)
