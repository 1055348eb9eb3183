#!/usr/bin/env python3
"""Report knowledge items whose chunk embeddings are missing or unusable.

Read-only: nothing is re-embedded or deleted. Items listed here need the
upload pipeline to re-run their embedding job.

Usage:
    python scripts/audit_embeddings.py [--dimension 768] [--all]

Environment variables:
    DATABASE_URL: Async database URL of the knowledge tables
    EMBEDDING_DIMENSION: Expected vector length (default 768)
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from dotenv import load_dotenv

env_path = backend_dir / ".env"
if env_path.exists():
    load_dotenv(env_path)
    print(f"Loaded environment from: {env_path}")


async def main(dimension: int | None, show_all: bool) -> int:
    """Print the audit and return the number of unhealthy items."""
    from coach_rag.core.config import get_settings
    from coach_rag.core.database import get_engine, get_session_factory
    from coach_rag.knowledge.store import SqlChunkStore

    settings = get_settings()
    expected = dimension or settings.embedding_dimension
    store = SqlChunkStore(get_session_factory())

    try:
        entries = await store.audit_embeddings(expected)
    finally:
        await get_engine().dispose()

    unhealthy = [entry for entry in entries if not entry.healthy]
    total_chunks = sum(entry.total_chunks for entry in entries)

    print(f"\nEmbedding audit ({expected}-dim expected)")
    print("=" * 60)
    print(f"Items: {len(entries)}  Chunks: {total_chunks}  Unhealthy items: {len(unhealthy)}")
    print(f"Missing:   {sum(e.missing for e in entries)}")
    print(f"Malformed: {sum(e.malformed for e in entries)}")
    print(f"Wrong dim: {sum(e.wrong_dimension for e in entries)}")
    print()

    for entry in entries if show_all else unhealthy:
        flag = "OK  " if entry.healthy else "FAIL"
        print(
            f"[{flag}] {entry.title[:50]:<50} status={entry.status:<10} "
            f"chunks={entry.total_chunks} missing={entry.missing} "
            f"malformed={entry.malformed} wrong_dim={entry.wrong_dimension} "
            f"dims={entry.dimensions}"
        )

    return len(unhealthy)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Audit stored chunk embeddings")
    parser.add_argument("--dimension", type=int, default=None, help="Expected vector length")
    parser.add_argument("--all", action="store_true", help="List healthy items too")
    args = parser.parse_args()

    failures = asyncio.run(main(args.dimension, args.all))
    sys.exit(1 if failures else 0)
