from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

@dataclass(frozen=True)
class Chunked:
    index: int
    text: str
    metadata: dict[str, Any]

class Chunker(Protocol):
    def chunk(self, extracted_text: str, extracted_metadata: dict[str, Any]) -> list[Chunked]:
        ...
