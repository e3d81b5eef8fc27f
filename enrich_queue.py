"""
Drain the enrichment queue.

Each PENDING entry is searched on the official portals through Firecrawl,
verified by several models and, when the vote passes, ingested into the
corpus. In continuous mode the worker sleeps until an enqueue notification
arrives or the poll interval elapses.

Usage:
    python enrich_queue.py --once               # One batch, then exit
    python enrich_queue.py --limit 10           # Continuous, 10 entries per batch
    python enrich_queue.py --once --dry-run     # Search and verify without writing the corpus
    python enrich_queue.py --once --force       # Re-ingest even when the text hash exists
"""

import sys
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    arg_parser = argparse.ArgumentParser(description="Process the enrichment queue")
    arg_parser.add_argument("--once", action="store_true", help="Process a single batch and exit")
    arg_parser.add_argument("--limit", type=int, default=5, help="Entries per batch (default: 5, min: 1)")
    arg_parser.add_argument("--dry-run", action="store_true", help="Search and verify, but do not ingest")
    arg_parser.add_argument("--force", action="store_true", help="Ingest even if the content hash exists")
    arg_parser.add_argument(
        "--poll-interval",
        type=float,
        default=2.0,
        help="Seconds between polls in continuous mode (default: 2.0)",
    )
    args = arg_parser.parse_args()

    from execution.rd_legal_rag.corpus_store import CorpusStore
    from execution.rd_legal_rag.embeddings import get_embedding_service
    from execution.rd_legal_rag.enrichment import EnrichmentWorker, FirecrawlClient
    from execution.rd_legal_rag.ingestion import IngestionPipeline
    from execution.rd_legal_rag.verification import MultiModelVerifier

    store = CorpusStore()
    store.connect()
    store.initialize_schema()

    worker = EnrichmentWorker(
        store=store,
        pipeline=IngestionPipeline(store, get_embedding_service()),
        search_client=FirecrawlClient(),
        verifier=MultiModelVerifier(),
        dry_run=args.dry_run,
        force=args.force,
    )

    logger.info(
        f"Enrichment worker starting (once={args.once}, limit={max(1, args.limit)}, "
        f"dry_run={args.dry_run}, force={args.force})"
    )
    try:
        stats = worker.run(once=args.once, limit=args.limit, poll_interval=args.poll_interval)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping worker.")
        return
    finally:
        store.close()

    logger.info(f"Processed {stats.processed} entries: {stats.by_status}")


if __name__ == "__main__":
    main()
