from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatch

from ..source import FileSystemSource


def matches_ignore_pattern(rel_path: str, patterns: list[str]) -> bool:
    """Check if a root-relative path matches any of the ignore patterns.

    Supports glob patterns like:
    - "**/node_modules/**" - anything under a node_modules directory at any depth
    - ".git/**" - everything under a top-level .git directory
    - "**/*.test.*" - test files in any directory
    - "drafts/*.md" - plain fnmatch against the whole path
    """
    rel_path = rel_path.replace("\\", "/")
    parts = rel_path.split("/")

    for pattern in patterns:
        pattern = pattern.replace("\\", "/")

        if pattern.startswith("**/"):
            suffix = pattern[3:]
            # "**/name/**" matches when any directory segment is `name`
            if suffix.endswith("/**"):
                dirname = suffix[:-3]
                if any(fnmatch(part, dirname) for part in parts[:-1]) or fnmatch(rel_path, dirname):
                    return True
                continue
            if fnmatch(rel_path, suffix) or fnmatch(parts[-1], suffix):
                return True
            for i in range(len(parts)):
                if fnmatch("/".join(parts[i:]), suffix):
                    return True

        elif pattern.endswith("/**"):
            prefix = pattern[:-3]
            if rel_path.startswith(prefix + "/") or rel_path == prefix:
                return True

        elif fnmatch(rel_path, pattern):
            return True

    return False


@dataclass
class CollectionScanner:
    """Discovers collections in the content tree, respecting ignore patterns."""
    source: FileSystemSource
    ignore: list[str] = field(default_factory=list)

    def collections(self) -> list[str]:
        return [
            name for name in self.source.list_dir()
            if self.source.is_dir(name) and not matches_ignore_pattern(name, self.ignore)
        ]
