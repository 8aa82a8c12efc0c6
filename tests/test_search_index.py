"""
Tests for the in-memory tag index.
"""

import random
from datetime import datetime, timezone

from snaptag.search_index import SearchIndex
from snaptag.types import TaggedRecord

_T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _rec(id: str, *tags: str) -> TaggedRecord:
    return TaggedRecord(id=id, photo_ref=f"ref-{id}", tags=list(tags), comment="",
                        created_at=_T0, updated_at=_T0)


class TestQuery:

    def test_exact_match(self):
        idx = SearchIndex()
        idx.index(_rec("1", "cat", "dog"))
        idx.index(_rec("2", "cat"))
        idx.index(_rec("3", "category"))
        assert idx.query("cat") == {"1", "2"}
        assert idx.query("dog") == {"1"}
        assert idx.query("bird") == set()

    def test_query_normalizes_token(self):
        idx = SearchIndex()
        idx.index(_rec("1", "cat"))
        assert idx.query("  cat ") == {"1"}

    def test_query_is_case_sensitive(self):
        idx = SearchIndex()
        idx.index(_rec("1", "Cat"))
        assert idx.query("cat") == set()

    def test_prefix_and_substring(self):
        idx = SearchIndex()
        idx.index(_rec("1", "category"))
        idx.index(_rec("2", "bobcat"))
        idx.index(_rec("3", "dog"))
        assert idx.query_prefix("cat") == {"1"}
        assert idx.query_substring("cat") == {"1", "2"}
        assert idx.query_prefix("") == set()
        assert idx.query_substring("  ") == set()

    def test_returned_set_is_a_copy(self):
        idx = SearchIndex()
        idx.index(_rec("1", "cat"))
        idx.query("cat").add("intruder")
        assert idx.query("cat") == {"1"}


class TestMaintenance:

    def test_reindex_replaces_old_tags(self):
        idx = SearchIndex()
        idx.index(_rec("1", "cat", "dog"))
        idx.index(_rec("1", "bird"))
        assert idx.query("cat") == set()
        assert idx.query("bird") == {"1"}
        assert idx.tags() == ["bird"]

    def test_unindex_removes_every_entry(self):
        idx = SearchIndex()
        idx.index(_rec("1", "cat", "dog"))
        idx.index(_rec("2", "dog"))
        idx.unindex("1")
        assert idx.query("cat") == set()
        assert idx.query("dog") == {"2"}
        assert "1" not in idx
        assert len(idx) == 1

    def test_unindex_unknown_is_ignored(self):
        idx = SearchIndex()
        idx.unindex("ghost")
        assert len(idx) == 0

    def test_rebuild_discards_previous_contents(self):
        idx = SearchIndex()
        idx.index(_rec("old", "cat"))
        idx.rebuild([_rec("new", "dog")])
        assert idx.query("cat") == set()
        assert idx.query("dog") == {"new"}

    def test_rebuild_matches_incremental_maintenance(self):
        """After random create/delete sequences both paths answer alike."""
        rng = random.Random(1234)
        vocabulary = ["cat", "dog", "vet", "park", "beach", "receipt"]
        incremental = SearchIndex()
        live: dict[str, TaggedRecord] = {}

        for step in range(300):
            if live and rng.random() < 0.35:
                victim = rng.choice(sorted(live))
                del live[victim]
                incremental.unindex(victim)
            else:
                rec = _rec(f"r{step}", *rng.sample(vocabulary, rng.randint(0, 3)))
                live[rec.id] = rec
                incremental.index(rec)

        rebuilt = SearchIndex()
        rebuilt.rebuild(live.values())
        for tag in vocabulary:
            assert incremental.query(tag) == rebuilt.query(tag)
        assert incremental.tags() == rebuilt.tags()
        assert len(incremental) == len(rebuilt) == len(live)
