from __future__ import annotations

import hashlib


def blake2b_hex(data: bytes) -> str:
    h = hashlib.blake2b(digest_size=32)
    h.update(data)
    return h.hexdigest()


def hash_text(text: str) -> str:
    return blake2b_hex(text.encode("utf-8"))


def record_id(file_path: str, chunk_index: int) -> str:
    """Stable id for the chunk at `chunk_index` of `file_path`."""
    return blake2b_hex(f"{file_path}:{chunk_index}".encode("utf-8"))[:32]
