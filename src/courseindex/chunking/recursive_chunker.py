from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .base import Chunked

DEFAULT_SEPARATORS = ["\n\n", "\n", ". ", " ", ""]


@dataclass
class RecursiveTextChunker:
    """Split text into overlapping chunks of at most `chunk_size` characters.

    Tries each separator in turn (paragraphs, lines, sentences, words, then
    characters) and only descends to a finer separator for pieces that are
    still too large. Adjacent chunks share up to `chunk_overlap` characters
    of trailing context.
    """
    chunk_size: int = 1000
    chunk_overlap: int = 200
    separators: list[str] = field(default_factory=lambda: list(DEFAULT_SEPARATORS))

    def __post_init__(self) -> None:
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )

    def chunk(self, extracted_text: str, extracted_metadata: dict[str, Any]) -> list[Chunked]:
        pieces = self.split_text(extracted_text)
        return [
            Chunked(index=i, text=piece, metadata=dict(extracted_metadata))
            for i, piece in enumerate(pieces)
        ]

    def split_text(self, text: str) -> list[str]:
        if not text.strip():
            return []
        return self._split(text, self.separators)

    def _split(self, text: str, separators: list[str]) -> list[str]:
        separator = separators[-1]
        remaining: list[str] = []
        for i, sep in enumerate(separators):
            if sep == "":
                separator = sep
                break
            if sep in text:
                separator = sep
                remaining = separators[i + 1:]
                break

        splits = text.split(separator) if separator else list(text)

        final: list[str] = []
        fitting: list[str] = []
        for piece in splits:
            if len(piece) < self.chunk_size:
                fitting.append(piece)
                continue
            if fitting:
                final.extend(self._merge(fitting, separator))
                fitting = []
            if remaining:
                final.extend(self._split(piece, remaining))
            else:
                final.append(piece)
        if fitting:
            final.extend(self._merge(fitting, separator))
        return final

    def _merge(self, splits: list[str], separator: str) -> list[str]:
        sep_len = len(separator)
        docs: list[str] = []
        current: list[str] = []
        total = 0

        for piece in splits:
            extra = sep_len if current else 0
            if current and total + len(piece) + extra > self.chunk_size:
                doc = separator.join(current).strip()
                if doc:
                    docs.append(doc)
                # Keep a tail of the previous chunk as overlap
                while current and (
                    total > self.chunk_overlap
                    or total + len(piece) + (sep_len if current else 0) > self.chunk_size
                ):
                    total -= len(current[0]) + (sep_len if len(current) > 1 else 0)
                    current.pop(0)
            current.append(piece)
            total += len(piece) + (sep_len if len(current) > 1 else 0)

        doc = separator.join(current).strip()
        if doc:
            docs.append(doc)
        return docs
