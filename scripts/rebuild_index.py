#!/usr/bin/env python3
"""
Index Rebuild Utility
Rebuilds the similarity index from the memory_embeddings table and runs a
self-similarity check against the rebuilt index.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from layered_memory.core.db import health_check, init_db
from layered_memory.core.errors import LayeredMemoryError
from layered_memory.vector.adapter import VectorIndexAdapter


def main(argv=None):
    """Rebuild the vector index for one database."""
    parser = argparse.ArgumentParser(description="Rebuild the layered memory similarity index")
    parser.add_argument("--db-path", default=None, help="SQLite database path (defaults to DB_PATH)")
    args = parser.parse_args(argv)

    init_db(args.db_path)
    if not health_check(args.db_path):
        print("ERROR: Database is missing required tables")
        return 1

    print("Starting vector index rebuild...")
    adapter = VectorIndexAdapter(db_path=args.db_path)

    try:
        indexed = adapter.rebuild_index()
        print(f"✓ Successfully rebuilt index with {indexed} vectors")

        if not indexed:
            print("✓ No entries to verify (empty index)")
            return 0

        # Quick smoke test - the most recent stored text must find itself
        sample = adapter.embedding_store.list_embeddings()[-1]
        results = adapter.search(sample.source_text, {"threshold": 0.0, "limit": 3})
        found = any(r.id == sample.id for r in results)
        print(f"✓ Verification search returned {len(results)} results (self match: {found})")
    except LayeredMemoryError as e:
        print(f"ERROR: Index rebuild failed: {e}")
        return 1
    finally:
        adapter.shutdown()

    print("Index rebuild complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
