"""
In-memory inverted index from tag to record ids.

The index is derived from the record store and never authoritative:
it can be thrown away and rebuilt from ``RecordStore.list_records()``
at any time, which is what startup does.
"""

import threading
from collections.abc import Iterable

from .tags import normalize_tag
from .types import TaggedRecord


class SearchIndex:
    """Tag → record-id index with exact, prefix and substring lookup."""

    def __init__(self) -> None:
        self._by_tag: dict[str, set[str]] = {}
        self._by_record: dict[str, frozenset[str]] = {}
        self._lock = threading.Lock()

    def _remove(self, record_id: str) -> None:
        for tag in self._by_record.pop(record_id, frozenset()):
            ids = self._by_tag.get(tag)
            if ids is None:
                continue
            ids.discard(record_id)
            if not ids:
                del self._by_tag[tag]

    def index(self, record: TaggedRecord) -> None:
        """Add a record, replacing whatever was indexed for it before."""
        tags = frozenset(t for t in (normalize_tag(x) for x in record.tags) if t)
        with self._lock:
            self._remove(record.id)
            self._by_record[record.id] = tags
            for tag in tags:
                self._by_tag.setdefault(tag, set()).add(record.id)

    def unindex(self, record_id: str) -> None:
        """Remove every entry for a record. Unknown ids are ignored."""
        with self._lock:
            self._remove(record_id)

    def rebuild(self, records: Iterable[TaggedRecord]) -> None:
        """Discard the current contents and index records from scratch."""
        fresh = SearchIndex()
        for record in records:
            fresh.index(record)
        with self._lock:
            self._by_tag = fresh._by_tag
            self._by_record = fresh._by_record

    def query(self, tag: str) -> set[str]:
        """Ids of records carrying exactly this tag."""
        tag = normalize_tag(tag)
        with self._lock:
            return set(self._by_tag.get(tag, ()))

    def query_prefix(self, prefix: str) -> set[str]:
        """Ids of records with any tag starting with prefix."""
        prefix = normalize_tag(prefix)
        if not prefix:
            return set()
        with self._lock:
            return {
                record_id
                for tag, ids in self._by_tag.items() if tag.startswith(prefix)
                for record_id in ids
            }

    def query_substring(self, fragment: str) -> set[str]:
        """Ids of records with any tag containing fragment."""
        fragment = normalize_tag(fragment)
        if not fragment:
            return set()
        with self._lock:
            return {
                record_id
                for tag, ids in self._by_tag.items() if fragment in tag
                for record_id in ids
            }

    def tags(self) -> list[str]:
        """All distinct indexed tags, sorted."""
        with self._lock:
            return sorted(self._by_tag)

    def __contains__(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._by_record

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_record)
