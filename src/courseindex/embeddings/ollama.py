from __future__ import annotations

import json
import logging
import urllib.request
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class OllamaEmbedder:
    """Adapter for a local Ollama server's batch `/api/embed` endpoint.

    Each `embed_texts` call is one request carrying up to `batch_size`
    inputs; the orchestrator decides how many batches run at once. Network
    failures propagate so the job queue can retry the job.
    """
    model_id: str
    endpoint: str = "http://127.0.0.1:11434/api/embed"
    timeout_s: float = 30.0
    batch_size: int = 16
    dims: int = 0

    def _post(self, inputs: list[str]) -> list[list[float]]:
        payload: dict[str, Any] = {"model": self.model_id, "input": inputs}
        req = urllib.request.Request(
            self.endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
            out = json.loads(resp.read().decode("utf-8"))
        vectors = out.get("embeddings")
        if not isinstance(vectors, list) or len(vectors) != len(inputs):
            raise RuntimeError(f"Unexpected Ollama response for {len(inputs)} inputs: {str(out)[:200]}")
        return vectors

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        rows: list[list[float]] = []
        size = max(1, self.batch_size)
        for i in range(0, len(texts), size):
            rows.extend(self._post(list(texts[i:i + size])))
        arr = np.asarray(rows, dtype=np.float32)
        if self.dims == 0:
            self.dims = int(arr.shape[1])
            logger.debug(f"[embed] Ollama model {self.model_id} returns {self.dims}-dim vectors")
        elif arr.shape[1] != self.dims:
            raise RuntimeError(f"Ollama returned {arr.shape[1]}-dim vectors, expected {self.dims}")
        return arr

    def embed_text(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]
