"""
Selective crawl of consultoria.gov.do through Firecrawl.

Starts a Firecrawl v2 crawl at the Consultoría search page, keeps only the
pages whose URL names a law, decree, resolution or the Constitution, and
ingests each one as a VIGENTE version of its instrument. Unchanged pages
are deduplicated by content hash.

Usage:
    python crawl_consultoria.py
    python crawl_consultoria.py --limit 50
"""

import re
import sys
import time
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

CONSULTORIA_START = "https://www.consultoria.gov.do/consulta/"
CRAWL_LIMIT = 20
URL_KEYWORDS = re.compile(r"ley|decreto|resolucion|constitucion", re.IGNORECASE)
MIN_PAGE_CHARS = 200


def select_pages(pages: list) -> list:
    """Pages whose URL names an instrument and whose markdown is long enough."""
    selected = []
    for page in pages:
        if not URL_KEYWORDS.search(page.url.lower()):
            continue
        if len(page.markdown.strip()) < MIN_PAGE_CHARS:
            logger.info(f"  Skipping {page.url}: too short ({len(page.markdown.strip())} chars)")
            continue
        selected.append(page)
    return selected


def main():
    arg_parser = argparse.ArgumentParser(description="Crawl consultoria.gov.do and ingest instruments")
    arg_parser.add_argument("--url", type=str, default=CONSULTORIA_START, help="Crawl start URL")
    arg_parser.add_argument("--limit", type=int, default=CRAWL_LIMIT, help=f"Max pages (default: {CRAWL_LIMIT})")
    args = arg_parser.parse_args()

    from execution.rd_legal_rag.corpus_store import CorpusStore
    from execution.rd_legal_rag.embeddings import get_embedding_service
    from execution.rd_legal_rag.enrichment import FirecrawlClient, SearchProviderError
    from execution.rd_legal_rag.ingestion import SOURCE_CONSULTORIA, IngestionError, IngestionPipeline

    logger.info(f"1) Starting crawl at {args.url} (limit {args.limit})")
    try:
        pages = FirecrawlClient().crawl(args.url, limit=args.limit)
    except SearchProviderError as e:
        logger.error(f"Crawl failed: {e}")
        sys.exit(1)

    selected = select_pages(pages)
    logger.info(f"2) {len(selected)} of {len(pages)} pages match ley/decreto/resolucion/constitucion")

    store = CorpusStore()
    store.connect()
    store.initialize_schema()
    pipeline = IngestionPipeline(store, get_embedding_service())

    start_time = time.time()
    created = 0
    deduped = 0
    failed = 0
    try:
        for i, page in enumerate(selected):
            logger.info(f"[{i+1}/{len(selected)}] {page.title[:80]}")
            try:
                document = pipeline.prepare(
                    page.markdown, page.title, page.url, description=page.description,
                )
                result = pipeline.ingest(document, source=SOURCE_CONSULTORIA)
            except IngestionError as e:
                failed += 1
                logger.error(f"  FAILED: {e}")
                continue
            if result.created:
                created += 1
            else:
                deduped += 1
            logger.info(f"  -> {result.canonical_key}: {result.outcome} ({result.chunks_count} chunks)")
    finally:
        store.close()

    logger.info(
        f"Done in {time.time() - start_time:.1f}s: {created} new versions, "
        f"{deduped} unchanged, {failed} failed"
    )


if __name__ == "__main__":
    main()
