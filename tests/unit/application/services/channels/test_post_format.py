"""Unit tests for post formatting helpers."""

import pytest

from feishu_channel.application.services.channels.post_format import (
    chunk_text,
    has_code_block,
    markdown_to_post,
    wrap_post,
)


@pytest.mark.unit
class TestMarkdownToPost:
    def test_text_and_code(self):
        post = markdown_to_post("Intro\n```python\nprint(1)\n```\nOutro")

        assert post == [
            [{"tag": "text", "text": "Intro"}],
            [{"tag": "code_block", "language": "python", "text": "print(1)"}],
            [{"tag": "text", "text": "Outro"}],
        ]

    def test_fence_without_language(self):
        post = markdown_to_post("```\nraw\n```")

        assert post == [[{"tag": "code_block", "language": "plain_text", "text": "raw"}]]

    def test_unterminated_fence_is_closed(self):
        post = markdown_to_post("```sh\necho hi")

        assert post == [[{"tag": "code_block", "language": "sh", "text": "echo hi"}]]

    def test_empty_result_falls_back_to_text(self):
        assert markdown_to_post("```\n```") == [[{"tag": "text", "text": "```\n```"}]]

    def test_has_code_block(self):
        assert has_code_block("a ```b``` c")
        assert not has_code_block("plain")

    def test_wrap_post(self):
        content = [[{"tag": "text", "text": "x"}]]
        assert wrap_post(content, "T") == {"zh_cn": {"title": "T", "content": content}}


@pytest.mark.unit
class TestChunkText:
    def test_short_text_single_chunk(self):
        assert chunk_text("hello", 10) == ["hello"]

    def test_empty_text(self):
        assert chunk_text("", 10) == []

    def test_prefers_line_breaks(self):
        assert chunk_text("aaaa\nbbbb\ncccc", 10) == ["aaaa\nbbbb", "cccc"]

    def test_hard_split_without_newline(self):
        assert chunk_text("abcdefghij", 4) == ["abcd", "efgh", "ij"]
