"""
Manually ingest Dominican legal instruments from local files.

Single-file mode takes the identity and dates from the flags; batch mode
(--dir) loads every .txt/.md/.pdf in a directory and derives title and
canonical key per file. Everything goes through the shared ingestion
pipeline under the ManualUpload source.

Usage:
    python ingest_manual.py --file documents/constitucion.txt --type constitucion \\
        --canonical CONSTITUCION-RD --title "Constitución de la República Dominicana" \\
        --published 2010-01-26 --effective 2024-10-27 --preset constitucion
    python ingest_manual.py --file ley_41_08.txt --title "Ley No. 41-08 de Función Pública"
    python ingest_manual.py --dir documents/leyes/
"""

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

SUPPORTED_SUFFIXES = (".txt", ".md", ".pdf")


def read_document(filepath: Path) -> str:
    """Return the text of a .txt/.md file, or the extracted text of a PDF."""
    if filepath.suffix.lower() == ".pdf":
        import fitz  # PyMuPDF
        with fitz.open(str(filepath)) as doc:
            return "\n".join(page.get_text() for page in doc)
    return filepath.read_text(encoding="utf-8")


def title_from_text(filepath: Path, text: str) -> str:
    """First substantial line of the document, falling back to the file name."""
    for line in text.split("\n"):
        line = line.strip().lstrip("#").strip()
        if len(line) > 10:
            return line[:200]
    return filepath.stem.replace("_", " ")


def ingest_file(pipeline, filepath: Path, args, title=None, canonical=None):
    """Prepare and ingest one file. Returns the IngestResult."""
    from execution.rd_legal_rag.ingestion import SOURCE_MANUAL

    text = read_document(filepath)
    document = pipeline.prepare(
        text,
        title=title or title_from_text(filepath, text),
        source_url=args.source_url,
        published_date=args.published,
        effective_date=args.effective,
        status=args.status,
        gazette_ref=args.gazette_ref,
        canonical=canonical,
    )
    return pipeline.ingest(document, source=SOURCE_MANUAL, dedup_scope="global")


def main():
    from execution.rd_legal_rag.corpus_store import INSTRUMENT_TYPES, VERSION_STATUSES
    from execution.rd_legal_rag.chunker import CHUNK_PRESETS

    arg_parser = argparse.ArgumentParser(description="Ingest Dominican legal instruments from local files")
    source = arg_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", type=str, help="Text, markdown or PDF file to ingest")
    source.add_argument("--dir", type=str, help="Directory of .txt/.md/.pdf files (batch mode)")
    arg_parser.add_argument("--type", choices=INSTRUMENT_TYPES, help="Instrument type (with --canonical)")
    arg_parser.add_argument("--canonical", type=str, help="Explicit canonical key, e.g. CONSTITUCION-RD")
    arg_parser.add_argument("--title", type=str, help="Instrument title (single-file mode)")
    arg_parser.add_argument("--number", type=str, help="Instrument number, e.g. 41-08")
    arg_parser.add_argument("--published", type=str, help="Promulgation date (YYYY-MM-DD)")
    arg_parser.add_argument("--effective", type=str, help="Effective date of this text (YYYY-MM-DD)")
    arg_parser.add_argument("--status", choices=VERSION_STATUSES, default="VIGENTE")
    arg_parser.add_argument("--source-url", type=str, default="manual://", help="Origin URL of the text")
    arg_parser.add_argument("--gazette-ref", type=str, help="Gaceta Oficial reference")
    arg_parser.add_argument(
        "--preset",
        choices=sorted(CHUNK_PRESETS),
        default="default",
        help="Chunk window preset (constitucion uses wider windows)",
    )
    args = arg_parser.parse_args()

    from execution.rd_legal_rag.canonical import CanonicalInfo
    from execution.rd_legal_rag.chunker import ChunkConfig
    from execution.rd_legal_rag.corpus_store import CorpusStore
    from execution.rd_legal_rag.embeddings import get_embedding_service
    from execution.rd_legal_rag.ingestion import IngestionError, IngestionPipeline

    if args.file:
        files = [Path(args.file)]
        if not files[0].exists():
            logger.error(f"File not found: {files[0]}")
            sys.exit(1)
    else:
        input_dir = Path(args.dir)
        if not input_dir.is_dir():
            logger.error(f"Directory not found: {input_dir}")
            sys.exit(1)
        files = sorted(p for p in input_dir.iterdir() if p.suffix.lower() in SUPPORTED_SUFFIXES)
        if not files:
            logger.error(f"No .txt/.md/.pdf files found in {input_dir}")
            sys.exit(1)
        if args.title or args.canonical:
            logger.warning("--title and --canonical are ignored in --dir mode")

    canonical = None
    if args.file and args.canonical:
        canonical = CanonicalInfo(
            canonical_key=args.canonical.strip().upper(),
            type=args.type or "ley",
            number=args.number,
        )

    store = CorpusStore()
    store.connect()
    store.initialize_schema()
    pipeline = IngestionPipeline(store, get_embedding_service(), ChunkConfig.for_preset(args.preset))

    logger.info(f"Ingesting {len(files)} file(s) with preset '{args.preset}'")
    start_time = time.time()
    success_count = 0
    fail_count = 0

    try:
        for i, filepath in enumerate(files):
            logger.info(f"[{i+1}/{len(files)}] Processing: {filepath.name}")
            try:
                result = ingest_file(
                    pipeline,
                    filepath,
                    args,
                    title=args.title if args.file else None,
                    canonical=canonical,
                )
                success_count += 1
                logger.info(
                    f"  -> {result.canonical_key}: {result.outcome} "
                    f"(version {result.version_id}, {result.chunks_count} chunks)"
                )
            except IngestionError as e:
                fail_count += 1
                logger.error(f"  FAILED: {e}")
            except (OSError, UnicodeDecodeError, RuntimeError) as e:
                fail_count += 1
                logger.error(f"  FAILED reading {filepath.name}: {e}")
    finally:
        store.close()

    elapsed = time.time() - start_time
    logger.info(f"Done in {elapsed:.1f}s: {success_count} ingested, {fail_count} failed")
    if fail_count:
        sys.exit(1)


if __name__ == "__main__":
    main()
