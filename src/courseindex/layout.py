"""Naming conventions of the content tree.

Expected structure::

    <root>/<collection>/index.json
    <root>/<collection>/<group>/lesson-1-2.json

The first segment under the root is the collection, a directory matching
`group_pattern` is the group, and a filename matching `item_pattern` is an
item whose id is the pattern's first capture group.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import IndexConfig

logger = logging.getLogger(__name__)


def relpath(root: Path, path: Path) -> str:
    return str(path.resolve().relative_to(root.resolve())).replace("\\", "/")


def is_within(root: Path, path: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except (ValueError, OSError):
        logger.debug(f"Path {path} is not within {root}")
        return False


@dataclass(frozen=True)
class ContentRef:
    rel_path: str
    collection_id: str
    group_id: Optional[str] = None
    item_id: Optional[str] = None
    is_collection_index: bool = False


class ContentLayout:
    def __init__(self, cfg: IndexConfig) -> None:
        self.cfg = cfg
        self.group_re = re.compile(cfg.group_pattern)
        self.item_re = re.compile(cfg.item_pattern)

    def is_group_dir(self, name: str) -> bool:
        return bool(self.group_re.match(name))

    def item_id_for(self, filename: str) -> Optional[str]:
        m = self.item_re.match(filename)
        if not m:
            return None
        return m.group(1) if m.groups() else Path(filename).stem

    def map_path(self, rel_path: str) -> Optional[ContentRef]:
        """Map a root-relative path to its logical identifiers.

        Returns None when no collection can be derived (files directly under
        the root, or paths escaping it).
        """
        rel_path = rel_path.replace("\\", "/").strip("/")
        parts = rel_path.split("/")
        if len(parts) < 2 or any(p in ("", ".", "..") for p in parts):
            return None

        collection_id = parts[0]
        group_id = parts[1] if len(parts) > 2 and self.is_group_dir(parts[1]) else None
        filename = parts[-1]
        return ContentRef(
            rel_path=rel_path,
            collection_id=collection_id,
            group_id=group_id,
            item_id=self.item_id_for(filename),
            is_collection_index=len(parts) == 2 and filename in self.cfg.index_filenames,
        )

    def priority_for(self, ref: ContentRef) -> int:
        """Structural files settle before content details."""
        if ref.is_collection_index:
            return self.cfg.priority_index
        if ref.item_id:
            return self.cfg.priority_item
        return self.cfg.priority_other

    def item_candidates(self, collection_id: str, group_id: Optional[str], item_id: str) -> list[str]:
        """Root-relative paths an item may live at, in preference order."""
        stem = self.cfg.item_filename.format(item_id=item_id)
        base = f"{collection_id}/{group_id}" if group_id else collection_id
        return [f"{base}/{stem}{suffix}" for suffix in self.cfg.item_suffixes]
