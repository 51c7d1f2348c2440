from __future__ import annotations

from ..config import IndexConfig
from .base import Embedder


def build_embedder(cfg: IndexConfig) -> Embedder:
    if cfg.embedding_provider == "sentence_transformers":
        from .sentence_transformers import SentenceTransformersEmbedder
        return SentenceTransformersEmbedder(
            model_id=cfg.embedding_model,
            device=cfg.embedding_device,
            batch_size=cfg.embedding_batch_size,
        )
    if cfg.embedding_provider == "ollama":
        from .ollama import OllamaEmbedder
        return OllamaEmbedder(
            model_id=cfg.embedding_model,
            endpoint=cfg.ollama_endpoint,
            batch_size=cfg.embedding_batch_size,
        )
    raise ValueError(f"Unknown embedding provider: {cfg.embedding_provider}")
