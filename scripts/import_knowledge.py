#!/usr/bin/env python3
"""Import knowledge units from a CSV file and embed them.

This script reads a CSV (question/answer or content rows), stores the rows as
knowledge units and generates their embeddings.

Usage:
    python scripts/import_knowledge.py path/to/knowledge.csv [--no-embed]

Environment variables:
    DATABASE_URL: Target database (defaults to local Postgres)
    OPENAI_API_KEY: Required for OpenAI embeddings (default)
    GOOGLE_AI_API_KEY: Required if EMBEDDING_PROVIDER=google
    EMBEDDING_PROVIDER: "openai" (default) or "google"
"""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add project root to path for imports
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

env_path = project_dir / ".env"
if env_path.exists():
    load_dotenv(env_path)
    print(f"Loaded environment from: {env_path}")


async def main(csv_path: Path, embed: bool) -> int:
    """Import the CSV and embed the new units."""
    from heartbridge.core.config import get_settings
    from heartbridge.core.database import create_tables, dispose_engine, get_session_factory
    from heartbridge.knowledge.embeddings import EmbeddingClient
    from heartbridge.knowledge.loader import load_knowledge_csv
    from heartbridge.knowledge.service import KnowledgeService
    from heartbridge.observability import configure_logging

    settings = get_settings()
    configure_logging(settings.log_level)

    print(f"Loading knowledge items from: {csv_path}")
    try:
        items = load_knowledge_csv(csv_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1

    if not items:
        print("No rows found. Expected columns:")
        print("  question, answer, content, category, importance, keywords, labels, source_name")
        return 1

    categories: dict[str, int] = {}
    for item in items:
        categories[item.category] = categories.get(item.category, 0) + 1

    print(f"\nLoaded {len(items)} items")
    for category, count in sorted(categories.items()):
        print(f"  {category}: {count}")

    try:
        await create_tables()
        service = KnowledgeService(get_session_factory(), EmbeddingClient.from_settings(settings))

        summary = await service.create_units(items)
        print(f"\nCreated {summary.success_count}/{summary.total} units")
        for error in summary.errors:
            print(f"  - {error}")

        if embed and summary.unit_ids:
            print(f"\nGenerating embeddings with {settings.embedding_provider}...")
            result = await service.embed_units(summary.unit_ids)
            print(f"Embedded {result.success_count}/{result.total} units")
            for error in result.errors:
                print(f"  - {error}")
            if result.error_count:
                print("Run POST /api/v1/knowledge/embeddings/pending to retry failed units.")
    finally:
        await dispose_engine()

    print("\nImport finished.")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Import knowledge units from CSV")
    parser.add_argument("csv_path", type=Path, help="CSV file to import")
    parser.add_argument("--no-embed", action="store_true", help="Skip embedding generation")
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args.csv_path, embed=not args.no_embed)))
