"""Normalization of structured lesson and course records into plain text."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable

from ..errors import ContentParseError
from .base import Extracted

LESSON_METADATA_KEYS = ("title", "type", "duration")


def _first(data: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if data.get(k):
            return data[k]
    return None


def normalize_lesson(data: dict[str, Any]) -> str:
    """Concatenate title, description, body, examples and key points."""
    parts: list[str] = []

    if data.get("title"):
        parts.append(f"Title: {data['title']}")
    if data.get("description"):
        parts.append(f"Description: {data['description']}")
    if data.get("content"):
        parts.append(f"Content: {data['content']}")

    example = _first(data, "codeExample", "code_example")
    if isinstance(example, dict):
        if example.get("code"):
            parts.append(f"Code Example: {example['code']}")
        if example.get("explanation"):
            parts.append(f"Explanation: {example['explanation']}")
    elif isinstance(example, str):
        parts.append(f"Code Example: {example}")

    takeaways = _first(data, "keyTakeaways", "key_takeaways")
    if isinstance(takeaways, list) and takeaways:
        parts.append(f"Key Takeaways: {', '.join(str(t) for t in takeaways)}")

    modules = data.get("modules")
    if isinstance(modules, list) and modules:
        titles = [str(m.get("title", m.get("id", ""))) for m in modules if isinstance(m, dict)]
        titles = [t for t in titles if t]
        if titles:
            parts.append(f"Modules: {', '.join(titles)}")

    return "\n\n".join(parts)


def lesson_metadata(data: dict[str, Any]) -> dict[str, Any]:
    return {k: data[k] for k in LESSON_METADATA_KEYS if data.get(k) is not None}


@dataclass
class JsonLessonExtractor:
    """Structured lesson/course files stored as JSON objects."""
    supported_suffixes = (".json",)
    normalizer: Callable[[dict[str, Any]], str] = field(default=normalize_lesson)

    def extract(self, raw: str, rel_path: str) -> Extracted:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ContentParseError(rel_path, f"invalid JSON ({e.msg} at line {e.lineno})") from e
        if not isinstance(data, dict):
            raise ContentParseError(rel_path, f"expected a JSON object, got {type(data).__name__}")
        return Extracted(text=self.normalizer(data), metadata=lesson_metadata(data))
