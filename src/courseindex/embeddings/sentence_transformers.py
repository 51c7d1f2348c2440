from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence
import numpy as np

@dataclass
class SentenceTransformersEmbedder:
    model_id: str
    device: str = "cpu"
    batch_size: int = 32

    def __post_init__(self) -> None:
        # Suppress harmless multiprocessing resource tracker warnings on macOS
        import warnings
        warnings.filterwarnings("ignore", message="resource_tracker: There appear to be.*leaked semaphore")

        from sentence_transformers import SentenceTransformer  # type: ignore
        self._model = SentenceTransformer(self.model_id, device=self.device)
        # Determine dims from a small encode
        v = self._model.encode(["dimension_probe"], batch_size=1, convert_to_numpy=True, normalize_embeddings=True)
        self.dims = int(v.shape[1])

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        return self._model.encode(list(texts), batch_size=self.batch_size, convert_to_numpy=True, normalize_embeddings=True)

    def embed_text(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]
