"""
Check that VIGENTE similarity search works end to end.

Takes the embedding of a real VIGENTE chunk and searches with it through
match_vigente_chunks. A zero vector would return nothing even on a healthy
corpus, so a stored embedding is used instead. Exits 1 unless at least one
row comes back.

Usage:
    python verify_rag.py
"""

import sys
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


def fail(message: str) -> None:
    logger.error(f"[verify_rag] {message}")
    sys.exit(1)


def main():
    from execution.rd_legal_rag.corpus_store import CorpusStore, CorpusStoreError

    store = CorpusStore()
    try:
        store.connect()
    except Exception as e:
        fail(f"Could not connect to the database: {e}")

    try:
        embedding = store.sample_vigente_embedding()
        if not embedding:
            fail("No VIGENTE chunks with embeddings. Run ingest_manual.py or crawl_consultoria.py first.")

        try:
            rows = store.search_vigente(embedding, top_k=5)
        except CorpusStoreError as e:
            fail(f"match_vigente_chunks is missing or failed: {e}")

        if not rows:
            fail("match_vigente_chunks returned no rows; check VIGENTE status and chunk embeddings.")

        logger.info(f"[verify_rag] OK: match_vigente_chunks returned {len(rows)} row(s).")
        for chunk in rows:
            logger.info(
                f"  {chunk.citation.canonical_key} #{chunk.chunk_index} "
                f"(similarity {chunk.similarity:.3f})"
            )
    except CorpusStoreError as e:
        fail(str(e))
    finally:
        store.close()


if __name__ == "__main__":
    main()
