from __future__ import annotations

from typing import Protocol, Sequence
import numpy as np

class Embedder(Protocol):
    """Embedding provider. Implementations apply their own rate limits."""
    model_id: str
    dims: int

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        ...

    def embed_text(self, text: str) -> np.ndarray:
        ...
