#!/usr/bin/env python3
"""Run one retrieval against the configured knowledge base and print diagnostics.

Usage:
    python scripts/inspect_retrieval.py "create a 4 day upper lower program" [--tenant USER_ID | --all-tenants]
    python scripts/inspect_retrieval.py "best chest exercises" --single --show-context

Environment variables:
    DATABASE_URL: Async database URL of the knowledge tables
    GOOGLE_AI_API_KEY: Required for Google embeddings (default)
    OPENAI_API_KEY: Required if using OpenAI embeddings
    EMBEDDING_PROVIDER: "google" (default) or "openai"
"""

import argparse
import asyncio
import json
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


async def main(args: argparse.Namespace) -> None:
    """Run one retrieval and print what it found."""
    from coach_rag.core.database import get_engine
    from coach_rag.knowledge.pipeline import initialize_retrieval_pipeline
    from coach_rag.observability import configure_logging

    configure_logging(level="DEBUG" if args.verbose else "INFO")
    pipeline = initialize_retrieval_pipeline()

    multi_query = None
    if args.single:
        multi_query = False
    elif args.multi:
        multi_query = True

    try:
        context = await pipeline.retrieve_context(
            args.query,
            args.tenant,
            multi_query=multi_query,
            all_tenants=args.all_tenants,
        )
    finally:
        await get_engine().dispose()

    print(f"\nQuery: {args.query}")
    if context.intent is not None:
        kinds = sorted(kind.value for kind in context.intent.kinds)
        print(f"Intent: {kinds}  categories={list(context.intent.categories)}")
    print(f"Grounded: {context.grounded}")
    print(f"Diagnostics: {json.dumps(context.diagnostics.model_dump(), indent=2)}")

    print(f"\nTop {len(context.candidates)} chunks:")
    for i, candidate in enumerate(context.candidates, 1):
        flags = []
        if candidate.high_relevance:
            flags.append("high")
        if candidate.low_confidence:
            flags.append("low-confidence")
        if candidate.keyword_match:
            flags.append("keyword")
        if candidate.relevance_boost:
            flags.append(f"boost=+{candidate.relevance_boost:.2f}")
        print(
            f"  {i}. {candidate.similarity:.3f} [KB:{candidate.parent_item_id}#{candidate.chunk_index}] "
            f"{candidate.title[:60]} {' '.join(flags)}"
        )

    if args.show_context:
        print("\n" + context.context_block)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect knowledge base retrieval")
    parser.add_argument("query", help="User query to retrieve for")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--tenant", default=None, help="Owner id for private items")
    scope.add_argument(
        "--all-tenants", action="store_true", help="Search every owner's private items too"
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--single", action="store_true", help="Force single-query mode")
    mode.add_argument("--multi", action="store_true", help="Force multi-query mode")
    parser.add_argument("--show-context", action="store_true", help="Print the context block")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    asyncio.run(main(parser.parse_args()))
