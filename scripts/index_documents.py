#!/usr/bin/env python3
"""
Document Indexing Script

Embeds a tenant's JSON documents ({relation, content}) and stores the ones
not indexed yet as general knowledge.

Usage:
    python scripts/index_documents.py TENANT [TENANT ...] [--dry-run] [--reset] [--documents-dir DIR]
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


async def _run(args) -> int:
    from enspira.common.config import load_config
    from enspira.common.schemas.records import KnowledgeKind
    from enspira.ingest.document_indexer import DocumentIndexer
    from enspira.retriever.orchestrator import RetrievalOrchestrator

    config = load_config()
    documents_dir = args.documents_dir or config.ingest.documents_dir

    orchestrator = RetrievalOrchestrator.from_config(config)
    indexer = DocumentIndexer(
        orchestrator.embedding,
        orchestrator.gateway,
        documents_dir=documents_dir,
        batch_size=args.batch_size,
    )

    exit_code = 0
    try:
        if not args.dry_run and not await orchestrator.gateway.health():
            print(f"[Index] ERROR: Could not reach Milvus at {config.milvus.uri}")
            return 1

        for tenant in args.tenants:
            if args.dry_run:
                try:
                    documents, invalid = indexer.read_documents(tenant)
                except Exception as e:
                    print(f"[Index] ERROR: {tenant}: {e}")
                    exit_code = 1
                    continue
                print(f"[Index] DRY RUN - {tenant}: {len(documents)} documents, {len(invalid)} invalid files")
                continue

            if args.reset:
                print(f"[Index] Resetting knowledge collection for {tenant}...")
                await orchestrator.gateway.reset(tenant, KnowledgeKind.KNOWLEDGE)

            try:
                report = await indexer.index_tenant(tenant)
            except Exception as e:
                print(f"[Index] ERROR: {tenant}: {e}")
                exit_code = 1
                continue
            print(
                f"[Index] {tenant}: {report.inserted} inserted, {report.skipped} already present, "
                f"{len(report.invalid_files)} invalid files"
            )
    finally:
        await orchestrator.aclose()

    return exit_code


def main():
    parser = argparse.ArgumentParser(description="Index tenant documents as general knowledge")
    parser.add_argument("tenants", nargs="+", help="Tenant ids to index")
    parser.add_argument("--dry-run", action="store_true", help="Only read and validate the document files")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate the collection first")
    parser.add_argument("--documents-dir", type=str, default=None, help="Override ingest.documents_dir")
    parser.add_argument("--batch-size", type=int, default=32, help="Documents embedded per request")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
