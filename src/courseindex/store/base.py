from __future__ import annotations

from typing import Protocol, Any, Sequence

from ..models import VectorRecord

class VectorStore(Protocol):
    """Storage adapter interface.

    Filters match on the record metadata fields `collection_id`, `group_id`,
    `item_id` and `file_path`. Deleting an empty selection is not an error.
    """

    def init(self) -> None:
        ...

    def upsert_batch(self, records: Sequence[VectorRecord]) -> int:
        ...

    def replace_file(self, file_path: str, records: Sequence[VectorRecord]) -> int:
        ...

    def delete_by_filter(self, filter: dict[str, Any]) -> int:
        ...

    def delete_by_collection(self, collection_id: str) -> int:
        ...

    def file_paths(self, collection_id: str) -> list[str]:
        ...

    def records_for(self, **filter: Any) -> list[VectorRecord]:
        ...

    def status(self, collection_id: str) -> dict[str, Any]:
        ...
