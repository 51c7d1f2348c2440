from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import frontmatter

from ..errors import ContentParseError
from .base import Extracted
from .lesson import lesson_metadata, normalize_lesson

@dataclass
class MarkdownExtractor:
    """Markdown with optional YAML frontmatter.

    When frontmatter is present, the structured fields are normalized like a
    JSON lesson and the markdown body becomes the lesson content.
    """
    supported_suffixes = (".md",)

    def extract(self, raw: str, rel_path: str) -> Extracted:
        try:
            post = frontmatter.loads(raw)
        except Exception as e:
            raise ContentParseError(rel_path, f"invalid frontmatter ({e})") from e

        fm: dict[str, Any] = dict(post.metadata or {})
        if not fm:
            return Extracted(text=post.content, metadata={})

        data = dict(fm, content=post.content)
        return Extracted(text=normalize_lesson(data), metadata=lesson_metadata(fm))
