"""Helpers for rendering reply text as Feishu post (rich text) content."""

from typing import Any

CODE_FENCE = "```"


def has_code_block(text: str) -> bool:
    """Whether text contains a fenced code block marker."""
    return CODE_FENCE in text


def markdown_to_post(markdown: str) -> list[list[dict[str, Any]]]:
    """Convert markdown with fenced code blocks into post paragraphs.

    Text outside fences becomes ``text`` elements; fenced regions become
    ``code_block`` elements carrying the fence language (``plain_text`` when
    none is given). An unterminated fence is closed at the end of input.
    """
    content: list[list[dict[str, Any]]] = []
    text_lines: list[str] = []
    code_lines: list[str] = []
    code_language = ""
    in_code_block = False

    def flush_text() -> None:
        text = "\n".join(text_lines).strip()
        if text:
            content.append([{"tag": "text", "text": text}])
        text_lines.clear()

    def flush_code() -> None:
        nonlocal code_language
        if code_lines:
            content.append(
                [
                    {
                        "tag": "code_block",
                        "language": code_language or "plain_text",
                        "text": "\n".join(code_lines),
                    }
                ]
            )
        code_lines.clear()
        code_language = ""

    for line in markdown.split("\n"):
        if line.startswith(CODE_FENCE):
            if in_code_block:
                flush_code()
                in_code_block = False
            else:
                flush_text()
                code_language = line[len(CODE_FENCE) :].strip() or "plain_text"
                in_code_block = True
        elif in_code_block:
            code_lines.append(line)
        else:
            text_lines.append(line)

    flush_text()
    if in_code_block:
        flush_code()

    return content or [[{"tag": "text", "text": markdown}]]


def wrap_post(content: list[list[dict[str, Any]]], title: str = "") -> dict[str, Any]:
    """Wrap post paragraphs in the localized envelope the message API expects."""
    return {"zh_cn": {"title": title, "content": content}}


def chunk_text(text: str, limit: int = 4000) -> list[str]:
    """Split text into chunks no longer than ``limit``, preferring line breaks."""
    if limit <= 0 or len(text) <= limit:
        return [text] if text else []

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    if remaining:
        chunks.append(remaining)
    return chunks
