"""
Tests for the User / Project / Global tier stores and the embeddings table DAO.
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from layered_memory.core.dao import (
    EmbeddingStore,
    GlobalMemoryStore,
    ProjectMemoryStore,
    UserMemoryStore,
    metadata_snapshot,
)
from layered_memory.core.db import health_check, init_db
from layered_memory.core.errors import InvalidArgument, StoreUnavailable
from layered_memory.core.schema import MemoryCategory, MemoryRecord, MemoryScope
from layered_memory.vector.types import VectorRecord

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "memory.db")
    init_db(path)
    return path


def user_record(content, owner="u1", category=MemoryCategory.DESIGN_PREFERENCE, minutes=0, metadata=None):
    return MemoryRecord(
        id=f"user-{content}",
        scope=MemoryScope.USER,
        content=content,
        category=category,
        metadata=metadata or {},
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        owner_id=owner,
    )


def global_record(content, relevance, frequency=1, category=MemoryCategory.SUCCESSFUL_OUTPUT, minutes=0):
    return MemoryRecord(
        id=f"global-{content}",
        scope=MemoryScope.GLOBAL,
        content=content,
        category=category,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        relevance_score=relevance,
        frequency=frequency,
    )


def test_init_db_is_idempotent(db_path):
    init_db(db_path)
    assert health_check(db_path) is True


def test_health_check_on_empty_database(tmp_path):
    assert health_check(str(tmp_path / "empty.db")) is False


class TestUserAndProjectTiers:

    def test_store_and_query_newest_first(self, db_path):
        store = UserMemoryStore(db_path)
        store.store(user_record("first", minutes=0))
        store.store(user_record("third", minutes=2))
        store.store(user_record("second", minutes=1))

        results = store.query("u1")

        assert [r.content for r in results] == ["third", "second", "first"]
        assert results[0].timestamp == BASE_TIME + timedelta(minutes=2)
        assert results[0].owner_id == "u1"

    def test_query_is_owner_scoped(self, db_path):
        store = UserMemoryStore(db_path)
        store.store(user_record("mine", owner="u1"))
        store.store(user_record("theirs", owner="u2"))

        assert [r.content for r in store.query("u1")] == ["mine"]
        assert store.query("") == []

    def test_category_filter_is_or_matched(self, db_path):
        store = UserMemoryStore(db_path)
        store.store(user_record("design", category=MemoryCategory.DESIGN_PREFERENCE))
        store.store(user_record("tone", category=MemoryCategory.TONE_PREFERENCE))
        store.store(user_record("color", category=MemoryCategory.COLOR_PREFERENCE))

        results = store.query("u1", {"categories": {MemoryCategory.DESIGN_PREFERENCE, "TonePreference"}})

        assert sorted(r.content for r in results) == ["design", "tone"]

    def test_time_range_filter(self, db_path):
        store = UserMemoryStore(db_path)
        for minutes in range(5):
            store.store(user_record(f"m{minutes}", minutes=minutes))

        results = store.query("u1", {"time_range": {
            "from": BASE_TIME + timedelta(minutes=1),
            "to": BASE_TIME + timedelta(minutes=3),
        }})

        assert [r.content for r in results] == ["m3", "m2", "m1"]

    def test_metadata_filters_are_and_matched(self, db_path):
        store = ProjectMemoryStore(db_path)
        for name, metadata in (("a", {"industry": "retail", "page": "home"}),
                               ("b", {"industry": "retail", "page": "about"}),
                               ("c", {"industry": "finance", "page": "home"})):
            store.store(MemoryRecord.create(MemoryScope.PROJECT, name, MemoryCategory.PROJECT_CONTEXT,
                                            owner_id="p1", metadata=metadata))

        results = store.query("p1", {"metadata_filters": {"industry": "retail", "page": "home"}})

        assert [r.content for r in results] == ["a"]
        assert results[0].scope == MemoryScope.PROJECT

    def test_limit_and_offset(self, db_path):
        store = UserMemoryStore(db_path)
        for minutes in range(6):
            store.store(user_record(f"m{minutes}", minutes=minutes))

        page = store.query("u1", {"limit": 2, "offset": 2})

        assert [r.content for r in page] == ["m3", "m2"]

    def test_invalid_options_raise(self, db_path):
        store = UserMemoryStore(db_path)
        with pytest.raises(InvalidArgument):
            store.query("u1", {"limit": 0})
        with pytest.raises(InvalidArgument):
            store.query("u1", {"metadata_filters": {"": "x"}})

    def test_store_rejects_wrong_scope(self, db_path):
        with pytest.raises(InvalidArgument):
            ProjectMemoryStore(db_path).store(user_record("misplaced"))

    def test_duplicate_id_is_store_unavailable(self, db_path):
        store = UserMemoryStore(db_path)
        store.store(user_record("once"))
        with pytest.raises(StoreUnavailable):
            store.store(user_record("once"))

    def test_connection_failure_degrades(self, db_path):
        store = UserMemoryStore(db_path)
        with patch("layered_memory.core.dao.get_db", side_effect=sqlite3.OperationalError("unreachable")):
            assert store.query("u1") == []
            assert store.get("anything") is None
            with pytest.raises(StoreUnavailable):
                store.store(user_record("lost"))

    def test_delete(self, db_path):
        store = UserMemoryStore(db_path)
        record = store.store(user_record("gone soon"))

        assert store.delete(record.id) is True
        assert store.delete(record.id) is False
        assert store.query("u1") == []

    def test_metadata_round_trip(self, db_path):
        store = UserMemoryStore(db_path)
        store.store(user_record("rich", metadata={"columns": 3, "tags": ["dark", "minimal"]}))

        assert store.query("u1")[0].metadata == {"columns": 3, "tags": ["dark", "minimal"]}


class TestGlobalTier:

    def test_ordering_by_relevance_then_frequency(self, db_path):
        store = GlobalMemoryStore(db_path)
        store.store(global_record("low", 0.6, frequency=9))
        store.store(global_record("high", 0.9, frequency=1))
        store.store(global_record("mid-rare", 0.7, frequency=1))
        store.store(global_record("mid-common", 0.7, frequency=5))

        results = store.query()

        assert [r.content for r in results] == ["high", "mid-common", "mid-rare", "low"]

    def test_default_threshold_excludes_low_relevance(self, db_path):
        store = GlobalMemoryStore(db_path)
        store.store(global_record("kept", 0.5))
        store.store(global_record("dropped", 0.45))

        assert [r.content for r in store.query()] == ["kept"]
        assert len(store.query(None, {"relevance_threshold": 0.2})) == 2

    def test_threshold_above_every_record_is_empty_not_error(self, db_path):
        store = GlobalMemoryStore(db_path)
        store.store(global_record("a", 0.85))
        store.store(global_record("b", 0.6))

        assert store.query(None, {"relevance_threshold": 0.9}) == []

    def test_threshold_out_of_range(self, db_path):
        with pytest.raises(InvalidArgument):
            GlobalMemoryStore(db_path).query(None, {"relevance_threshold": 1.5})

    def test_top_for_category_ignores_threshold(self, db_path):
        store = GlobalMemoryStore(db_path)
        store.store(global_record("weak", 0.1))
        store.store(global_record("other", 0.9, category=MemoryCategory.CLIENT_FEEDBACK))

        results = store.top_for_category(MemoryCategory.SUCCESSFUL_OUTPUT, 10)

        assert [r.content for r in results] == ["weak"]

    def test_apply_feedback_persists(self, db_path):
        feed = MagicMock()
        store = GlobalMemoryStore(db_path, change_feed=feed)
        store.store(global_record("useful", 0.5))

        updated = store.apply_feedback("global-useful", True)

        assert updated.relevance_score == 0.6
        assert updated.frequency == 2
        stored = store.get("global-useful")
        assert stored.relevance_score == 0.6
        assert stored.frequency == 2
        events = [c.args[1] for c in feed.publish.call_args_list]
        assert events == ["insert", "update"]

    def test_apply_feedback_on_missing_record(self, db_path):
        assert GlobalMemoryStore(db_path).apply_feedback("missing", True) is None

    def test_concurrent_feedback_is_not_lost(self, db_path):
        store = GlobalMemoryStore(db_path)
        store.store(global_record("contested", 0.2))

        threads = [threading.Thread(target=store.apply_feedback, args=("global-contested", True))
                   for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stored = store.get("global-contested")
        assert stored.frequency == 7
        assert stored.relevance_score == pytest.approx(0.8)

    def test_global_store_has_no_delete(self, db_path):
        assert not hasattr(GlobalMemoryStore(db_path), "delete")


class TestEmbeddingStore:

    def _vector_record(self, memory_id, scope=MemoryScope.USER, days_ago=0, metadata=None):
        return VectorRecord(
            memory_id=memory_id,
            memory_scope=scope,
            vector=np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32),
            source_text=f"text for {memory_id}",
            metadata=metadata or {"category": "DesignPreference"},
            created_at=BASE_TIME - timedelta(days=days_ago),
        )

    def test_insert_and_list(self, db_path):
        store = EmbeddingStore(db_path)
        store.insert(self._vector_record("m1"))

        records = store.list_embeddings()

        assert len(records) == 1
        assert records[0].memory_id == "m1"
        assert records[0].memory_scope == MemoryScope.USER
        np.testing.assert_allclose(records[0].vector, [1.0, 0.0, 0.0, 0.0])
        assert records[0].metadata == {"category": "DesignPreference"}

    def test_list_time_window(self, db_path):
        store = EmbeddingStore(db_path)
        store.insert(self._vector_record("old", days_ago=40))
        store.insert(self._vector_record("new", days_ago=1))

        records = store.list_embeddings(time_from=BASE_TIME - timedelta(days=30), time_to=BASE_TIME)

        assert [r.memory_id for r in records] == ["new"]

    def test_delete_for_memory_is_scope_aware(self, db_path):
        store = EmbeddingStore(db_path)
        user = self._vector_record("same-id", MemoryScope.USER)
        project = self._vector_record("same-id", MemoryScope.PROJECT)
        store.insert(user)
        store.insert(project)

        removed = store.delete_for_memory(MemoryScope.USER, "same-id")

        assert removed == [user.id]
        assert [r.memory_scope for r in store.list_embeddings()] == [MemoryScope.PROJECT]
        assert store.count() == 1


def test_metadata_snapshot_adds_owner_and_category():
    record = MemoryRecord.create(MemoryScope.PROJECT, "x", MemoryCategory.PROJECT_CONTEXT,
                                 owner_id="p9", metadata={"page": "home"})

    snapshot = metadata_snapshot(record)

    assert snapshot == {"page": "home", "category": "ProjectContext", "project_id": "p9"}
