"""
Tier stores over the persistent record store.
User and Project tiers are owner-scoped and ordered by recency; the Global tier
is anonymized, ranked by relevance then frequency, and only mutated through
feedback. Read failures degrade to an empty result, write failures raise
StoreUnavailable.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import numpy as np

from util.logging import logger as structured_logger, preview
from .anonymizer import apply_feedback
from .config import GLOBAL_DIRECT_THRESHOLD
from .db import get_db
from .errors import InvalidArgument, StoreUnavailable
from .schema import MemoryCategory, MemoryRecord, MemoryScope, validate_record
from ..api.schemas import MemoryQueryOptions, parse_options

logger = logging.getLogger(__name__)


def format_ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so text ordering matches time ordering."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class TierTable:
    scope: MemoryScope
    table: str
    owner_column: Optional[str]
    order_by: str


USER_TIER = TierTable(MemoryScope.USER, "user_memories", "user_id", "timestamp DESC, id DESC")
PROJECT_TIER = TierTable(MemoryScope.PROJECT, "project_memories", "project_id", "timestamp DESC, id DESC")
GLOBAL_TIER = TierTable(MemoryScope.GLOBAL, "global_memories", None,
                       "relevance_score DESC, frequency DESC, timestamp DESC")


class _TierStore:
    """Shared insert/query implementation for one tier table."""

    tier: TierTable = None

    def __init__(self, db_path: str = None, change_feed=None):
        self.db_path = db_path
        self.change_feed = change_feed

    @property
    def scope(self) -> MemoryScope:
        return self.tier.scope

    def _columns(self) -> List[str]:
        columns = ["id"]
        if self.tier.owner_column:
            columns.append(self.tier.owner_column)
        columns += ["content", "category", "metadata", "timestamp"]
        if self.tier.scope == MemoryScope.GLOBAL:
            columns += ["relevance_score", "frequency"]
        return columns

    def _row_to_record(self, row) -> MemoryRecord:
        values = dict(zip(self._columns(), row))
        return MemoryRecord(
            id=values["id"],
            scope=self.tier.scope,
            content=values["content"],
            category=MemoryCategory(values["category"]),
            metadata=json.loads(values["metadata"] or "{}"),
            timestamp=parse_ts(values["timestamp"]),
            owner_id=values.get(self.tier.owner_column) if self.tier.owner_column else None,
            relevance_score=values.get("relevance_score"),
            frequency=values.get("frequency"),
        )

    def _record_to_values(self, record: MemoryRecord) -> List[Any]:
        values = [record.id]
        if self.tier.owner_column:
            values.append(record.owner_id)
        values += [record.content, record.category.value,
                   json.dumps(record.metadata, sort_keys=True, default=str),
                   format_ts(record.timestamp)]
        if self.tier.scope == MemoryScope.GLOBAL:
            values += [record.relevance_score, record.frequency]
        return values

    def store(self, record: MemoryRecord) -> MemoryRecord:
        """Insert a new record into this tier."""
        if record.scope != self.tier.scope:
            raise InvalidArgument(f"{record.scope.value} record cannot be stored in the "
                                  f"{self.tier.scope.value} tier", {"memory_id": record.id})
        validate_record(record)

        columns = self._columns()
        placeholders = ", ".join("?" for _ in columns)
        try:
            with get_db(self.db_path) as conn:
                conn.execute(
                    f"INSERT INTO {self.tier.table} ({', '.join(columns)}) VALUES ({placeholders})",
                    self._record_to_values(record)
                )
                conn.commit()
        except sqlite3.Error as e:
            structured_logger.log_tier_write(self.tier.scope.value, record.id, record.category.value,
                                             status="failed", details={"error": str(e)})
            raise StoreUnavailable(f"Failed to store {self.tier.scope.value} memory",
                                   {"memory_id": record.id, "table": self.tier.table}) from e

        structured_logger.log_tier_write(self.tier.scope.value, record.id, record.category.value,
                                         details={"content": preview(record.content)})
        self._publish("insert", record)
        return record

    def query(self, scope_key: Optional[str] = None, options=None) -> List[MemoryRecord]:
        """Filtered, ordered read. Any store failure yields an empty list."""
        options = parse_options(MemoryQueryOptions, options)

        clauses = []
        params: List[Any] = []

        if self.tier.owner_column:
            if not scope_key or not str(scope_key).strip():
                return []
            clauses.append(f"{self.tier.owner_column} = ?")
            params.append(str(scope_key).strip())

        if options.categories:
            categories = sorted(c.value for c in options.categories)
            clauses.append(f"category IN ({', '.join('?' for _ in categories)})")
            params.extend(categories)

        if options.time_range:
            if options.time_range.from_:
                clauses.append("timestamp >= ?")
                params.append(format_ts(options.time_range.from_))
            if options.time_range.to:
                clauses.append("timestamp <= ?")
                params.append(format_ts(options.time_range.to))

        for key, value in sorted(options.metadata_filters.items()):
            clauses.append("CAST(json_extract(metadata, ?) AS TEXT) = ?")
            params.append(f'$."{key}"')
            params.append(str(value))

        clauses.extend(self._extra_clauses(options, params))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = (f"SELECT {', '.join(self._columns())} FROM {self.tier.table} {where} "
               f"ORDER BY {self.tier.order_by} LIMIT ? OFFSET ?")
        params.extend([options.limit, options.offset])

        try:
            with get_db(self.db_path) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to query {self.tier.table} for '{scope_key}': {e}")
            return []

        return [self._row_to_record(row) for row in rows]

    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        """Fetch one record by id; None when missing or the store is unreachable."""
        try:
            with get_db(self.db_path) as conn:
                row = conn.execute(
                    f"SELECT {', '.join(self._columns())} FROM {self.tier.table} WHERE id = ?",
                    (memory_id,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to get {self.tier.table} record '{memory_id}': {e}")
            return None
        return self._row_to_record(row) if row else None

    def count(self) -> int:
        try:
            with get_db(self.db_path) as conn:
                return conn.execute(f"SELECT COUNT(*) FROM {self.tier.table}").fetchone()[0]
        except sqlite3.Error as e:
            logger.error(f"Failed to count {self.tier.table}: {e}")
            return 0

    def _extra_clauses(self, options: MemoryQueryOptions, params: List[Any]) -> List[str]:
        return []

    def _publish(self, event: str, record: MemoryRecord):
        if self.change_feed is not None:
            self.change_feed.publish(self.tier.table, event, record.to_dict())

    def _delete_row(self, memory_id: str) -> bool:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.execute(f"DELETE FROM {self.tier.table} WHERE id = ?", (memory_id,))
                conn.commit()
                deleted = cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to delete {self.tier.table} record '{memory_id}': {e}")
            return False

        if deleted:
            structured_logger.log_operation(f"tier.{self.tier.scope.value.lower()}.delete", "success",
                                            {"memory_id": memory_id})
        return deleted


class UserMemoryStore(_TierStore):
    """Per-user observations."""

    tier = USER_TIER

    def delete(self, memory_id: str) -> bool:
        return self._delete_row(memory_id)


class ProjectMemoryStore(_TierStore):
    """Per-project observations."""

    tier = PROJECT_TIER

    def delete(self, memory_id: str) -> bool:
        return self._delete_row(memory_id)


class GlobalMemoryStore(_TierStore):
    """Anonymized, platform-wide observations ranked by relevance."""

    tier = GLOBAL_TIER

    def _extra_clauses(self, options: MemoryQueryOptions, params: List[Any]) -> List[str]:
        threshold = options.relevance_threshold
        if threshold is None:
            threshold = GLOBAL_DIRECT_THRESHOLD
        params.append(threshold)
        return ["relevance_score >= ?"]

    def top_for_category(self, category: MemoryCategory, limit: int) -> List[MemoryRecord]:
        """Most relevant records of one category regardless of threshold."""
        return self.query(None, {"categories": {MemoryCategory(category)},
                                 "limit": limit, "relevance_threshold": 0.0})

    def apply_feedback(self, memory_id: str, is_helpful: bool) -> Optional[MemoryRecord]:
        """Adjust relevance and frequency atomically; None when the record does not exist."""
        try:
            with get_db(self.db_path) as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    f"SELECT {', '.join(self._columns())} FROM {self.tier.table} WHERE id = ?",
                    (memory_id,)
                ).fetchone()
                if row is None:
                    conn.rollback()
                    return None

                updated = apply_feedback(self._row_to_record(row), is_helpful)
                conn.execute(
                    f"UPDATE {self.tier.table} SET relevance_score = ?, frequency = ? WHERE id = ?",
                    (updated.relevance_score, updated.frequency, memory_id)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StoreUnavailable("Failed to apply feedback", {"memory_id": memory_id}) from e

        structured_logger.log_feedback(memory_id, is_helpful, updated.relevance_score, updated.frequency)
        self._publish("update", updated)
        return updated


class EmbeddingStore:
    """DAO for the memory_embeddings table."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def insert(self, record) -> None:
        """Persist a VectorRecord; raises StoreUnavailable on failure."""
        vector = np.asarray(record.vector, dtype=np.float32)
        try:
            with get_db(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO memory_embeddings (id, memory_id, memory_type, content, embedding, "
                    "dimension, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (record.id, record.memory_id, record.memory_scope.value, record.source_text,
                     vector.tobytes(), int(vector.shape[0]),
                     json.dumps(record.metadata, sort_keys=True, default=str),
                     format_ts(record.created_at))
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StoreUnavailable("Failed to store embedding",
                                   {"memory_id": record.memory_id}) from e

    def list_embeddings(self, time_from: datetime = None, time_to: datetime = None,
                        limit: int = None) -> List[Any]:
        """Load stored embeddings as VectorRecords, oldest first."""
        from ..vector.types import VectorRecord

        clauses, params = [], []
        if time_from:
            clauses.append("created_at >= ?")
            params.append(format_ts(time_from))
        if time_to:
            clauses.append("created_at <= ?")
            params.append(format_ts(time_to))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = ("SELECT id, memory_id, memory_type, content, embedding, metadata, created_at "
               f"FROM memory_embeddings {where} ORDER BY created_at ASC")
        if limit:
            sql += " LIMIT ?"
            params.append(limit)

        try:
            with get_db(self.db_path) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to list embeddings: {e}")
            return []

        return [
            VectorRecord(
                id=row[0],
                memory_id=row[1],
                memory_scope=MemoryScope(row[2]),
                source_text=row[3],
                vector=np.frombuffer(row[4], dtype=np.float32).copy(),
                metadata=json.loads(row[5] or "{}"),
                created_at=parse_ts(row[6]),
            )
            for row in rows
        ]

    def delete_for_memory(self, scope: MemoryScope, memory_id: str) -> List[str]:
        """Remove embeddings of one record and return their ids."""
        try:
            with get_db(self.db_path) as conn:
                ids = [row[0] for row in conn.execute(
                    "SELECT id FROM memory_embeddings WHERE memory_type = ? AND memory_id = ?",
                    (MemoryScope(scope).value, memory_id)
                ).fetchall()]
                conn.execute("DELETE FROM memory_embeddings WHERE memory_type = ? AND memory_id = ?",
                             (MemoryScope(scope).value, memory_id))
                conn.commit()
                return ids
        except sqlite3.Error as e:
            logger.error(f"Failed to delete embeddings for '{memory_id}': {e}")
            return []

    def count(self) -> int:
        try:
            with get_db(self.db_path) as conn:
                return conn.execute("SELECT COUNT(*) FROM memory_embeddings").fetchone()[0]
        except sqlite3.Error as e:
            logger.error(f"Failed to count embeddings: {e}")
            return 0


def metadata_snapshot(record: MemoryRecord, extra: Dict[str, Any] = None) -> Dict[str, Any]:
    """Denormalized metadata stored alongside an embedding."""
    snapshot = dict(record.metadata)
    snapshot["category"] = record.category.value
    if record.scope == MemoryScope.USER:
        snapshot["user_id"] = record.owner_id
    elif record.scope == MemoryScope.PROJECT:
        snapshot["project_id"] = record.owner_id
    if extra:
        snapshot.update(extra)
    return snapshot
