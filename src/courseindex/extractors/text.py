from __future__ import annotations

from dataclasses import dataclass

from .base import Extracted

@dataclass
class PlainTextExtractor:
    supported_suffixes = (".txt",)

    def extract(self, raw: str, rel_path: str) -> Extracted:
        return Extracted(text=raw, metadata={})
