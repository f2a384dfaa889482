from __future__ import annotations

import re
from io import BytesIO


def normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ").replace("\x0c", "\n")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class ExtractService:
    """Plain-text extraction from rendered or downloaded PDF documents."""

    def __init__(self, *, max_chars: int = 0):
        self.max_chars = max(int(max_chars), 0)

    def pdf_to_text(self, data: bytes) -> str:
        if not data:
            return ""
        from markitdown import MarkItDown

        result = MarkItDown().convert_stream(BytesIO(data), file_extension=".pdf")
        text_content = getattr(result, "text_content", "")
        if not isinstance(text_content, str):
            return ""
        text = normalize_text(text_content)
        if self.max_chars and len(text) > self.max_chars:
            text = text[: self.max_chars]
        return text
