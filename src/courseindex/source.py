from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class FileSystemSource:
    """Read-only view of the content tree, addressed by root-relative paths."""
    root: Path
    max_bytes: int = 10_000_000

    def abspath(self, rel_path: str) -> Path:
        return self.root / rel_path

    def exists(self, rel_path: str) -> bool:
        return self.abspath(rel_path).is_file()

    def is_dir(self, rel_path: str) -> bool:
        return self.abspath(rel_path).is_dir()

    def list_dir(self, rel_path: str = "") -> list[str]:
        """Sorted entry names of a directory; empty if it does not exist."""
        p = self.abspath(rel_path) if rel_path else self.root
        if not p.is_dir():
            return []
        return sorted(entry.name for entry in p.iterdir())

    def stat(self, rel_path: str) -> os.stat_result:
        return self.abspath(rel_path).stat()

    def read_text(self, rel_path: str) -> str:
        b = self.abspath(rel_path).read_bytes()
        if len(b) > self.max_bytes:
            raise ValueError(f"File too large for text read: {rel_path} ({len(b)} bytes)")
        return b.decode("utf-8", errors="replace")
