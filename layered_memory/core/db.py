"""
SQLite persistence for the memory tiers and the embeddings table.
One connection per operation; WAL journal so readers never block the writer.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from . import config as config_module
from .config import ensure_db_directory

BUSY_TIMEOUT_SEC = 30.0

REQUIRED_TABLES = ['user_memories', 'project_memories', 'global_memories', 'memory_embeddings']


def resolve_db_path(db_path: str = None) -> str:
    return db_path or config_module.DB_PATH


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(resolve_db_path(db_path), timeout=BUSY_TIMEOUT_SEC)
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    db_path = resolve_db_path(db_path)
    ensure_db_directory(db_path)

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute('PRAGMA journal_mode=WAL')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS user_memories (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                timestamp TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS project_memories (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                timestamp TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS global_memories (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                timestamp TEXT NOT NULL,
                relevance_score REAL NOT NULL DEFAULT 0.5
                    CHECK (relevance_score >= 0 AND relevance_score <= 1),
                frequency INTEGER NOT NULL DEFAULT 1 CHECK (frequency >= 1)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS memory_embeddings (
                id TEXT PRIMARY KEY,
                memory_id TEXT NOT NULL,
                memory_type TEXT NOT NULL,  -- owning tier: User, Project or Global
                content TEXT NOT NULL,
                embedding BLOB NOT NULL,    -- float32 vector
                dimension INTEGER NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_user_memories_user_ts ON user_memories(user_id, timestamp DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_project_memories_project_ts ON project_memories(project_id, timestamp DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_global_memories_rank ON global_memories(category, relevance_score DESC, frequency DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_memory_embeddings_memory ON memory_embeddings(memory_type, memory_id)')

        conn.commit()


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [table[0] for table in cursor.fetchall()]

            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
