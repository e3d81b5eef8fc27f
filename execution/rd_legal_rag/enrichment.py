"""
Corpus enrichment: official-source search, verification and queue worker.

When retrieval cannot back an answer, the user query is written to the
``corpus_enrichment_queue`` table. The worker drains that queue:

    PENDING -> FETCHING -> FAILED
                        -> FETCHED_REVIEW          (no usable candidate)
                        -> INGESTING -> INGESTED   (or FAILED)

Candidates come from Firecrawl search restricted to official Dominican
government hosts (.gob.do / .gov.do) and must pass multi-model
verification before they reach the Ingestion Pipeline.

Every terminal transition records one typed diagnostic note in the row's
``meta`` column (see ``QueueNote``).
"""

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Union
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .chunker import content_hash, normalize_text
from .corpus_store import CorpusStoreError
from .canonical import derive_canonical
from .ingestion import IngestionError, SOURCE_CONSULTORIA
from .metrics import get_metrics_collector

logger = logging.getLogger(__name__)

FIRECRAWL_SEARCH_URL = "https://api.firecrawl.dev/v1/search"
FIRECRAWL_CRAWL_URL = "https://api.firecrawl.dev/v2/crawl"
DEFAULT_TITLE = "Sin título"


class QueueStatus:
    """Queue entry states."""
    PENDING = "PENDING"
    FETCHING = "FETCHING"
    FETCHED_REVIEW = "FETCHED_REVIEW"
    INGESTING = "INGESTING"
    INGESTED = "INGESTED"
    FAILED = "FAILED"


class SearchProviderError(Exception):
    """The search/crawl provider failed or is not configured."""


@dataclass
class EnrichmentConfig:
    """Configuration for candidate search and selection."""
    allowed_host_suffixes: tuple[str, ...] = (".gob.do", ".gov.do")
    search_sites: tuple[str, ...] = ("consultoria.gov.do", "gacetaoficial.gob.do")
    min_content_length: int = 200
    search_limit: int = 5
    max_query_chars: int = 200


# =============================================================================
# Diagnostic notes (stored in queue.meta)
# =============================================================================

@dataclass
class DedupNote:
    """Terminal INGESTED without a new version: the content hash already existed."""
    reason: str = "dedup-by-hash"
    version_id: Optional[int] = None
    kind: str = field(default="dedup", init=False)

    def to_meta(self) -> dict:
        meta = {"kind": self.kind, "note": self.reason}
        if self.version_id is not None:
            meta["versionId"] = self.version_id
        return meta


@dataclass
class DryRunNote:
    """Terminal INGESTED in dry-run mode: nothing was written to the corpus."""
    chars: int = 0
    kind: str = field(default="dry_run", init=False)

    def to_meta(self) -> dict:
        return {"kind": self.kind, "note": "dry-run", "chars": self.chars}


@dataclass
class IngestedNote:
    """Terminal INGESTED with a new (or repaired) version."""
    version_id: int
    chunks_count: int
    kind: str = field(default="ingested", init=False)

    def to_meta(self) -> dict:
        return {"kind": self.kind, "versionId": self.version_id, "chunksCount": self.chunks_count}


@dataclass
class NoCandidateNote:
    """Terminal FETCHED_REVIEW: search returned nothing usable."""
    candidates: list[dict] = field(default_factory=list)
    kind: str = field(default="no_candidate", init=False)

    def to_meta(self) -> dict:
        return {"kind": self.kind, "candidates": self.candidates}


@dataclass
class VerificationFailureNote:
    """Terminal FAILED after the verification vote did not pass."""
    votes: int
    total: int
    details: list[str] = field(default_factory=list)
    kind: str = field(default="verification_failure", init=False)

    def to_meta(self) -> dict:
        return {"kind": self.kind, "votes": self.votes, "total": self.total, "details": self.details}


QueueNote = Union[DedupNote, DryRunNote, IngestedNote, NoCandidateNote, VerificationFailureNote]

_NOTE_STATUS = {
    DedupNote: QueueStatus.INGESTED,
    DryRunNote: QueueStatus.INGESTED,
    IngestedNote: QueueStatus.INGESTED,
    NoCandidateNote: QueueStatus.FETCHED_REVIEW,
    VerificationFailureNote: QueueStatus.FAILED,
}


def status_for_note(note: QueueNote) -> str:
    """Terminal queue status implied by a diagnostic note."""
    try:
        return _NOTE_STATUS[type(note)]
    except KeyError:
        raise TypeError(f"Unknown queue note type: {type(note).__name__}")


# =============================================================================
# Firecrawl
# =============================================================================

@dataclass
class SearchCandidate:
    """A document returned by search or crawl."""
    url: str
    title: str
    markdown: str
    description: str = ""

    @property
    def hostname(self) -> str:
        return (urlparse(self.url).hostname or "").lower()


def _make_session() -> requests.Session:
    """Create a session with retry backoff."""
    s = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=2,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
    )
    s.mount("https://", HTTPAdapter(max_retries=retries))
    return s


def _candidate_from_item(item: dict) -> SearchCandidate:
    metadata = item.get("metadata") or {}
    url = (item.get("url") or metadata.get("sourceURL") or metadata.get("url") or "").strip()
    title = (item.get("title") or metadata.get("title") or DEFAULT_TITLE).strip() or DEFAULT_TITLE
    return SearchCandidate(
        url=url,
        title=title,
        markdown=(item.get("markdown") or "").strip(),
        description=metadata.get("description") or item.get("description") or "",
    )


class FirecrawlClient:
    """Minimal Firecrawl client: v1 search and v2 crawl."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
    ):
        self._api_key = api_key if api_key is not None else os.getenv("FIRECRAWL_API_KEY")
        self._session = session or _make_session()
        self._timeout = timeout

    def _headers(self) -> dict:
        if not self._api_key:
            raise SearchProviderError("Falta FIRECRAWL_API_KEY")
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def search(self, query: str, limit: int = 5) -> list[SearchCandidate]:
        """
        Search the web (with site: operators in the query) and scrape results to markdown.

        Returns:
            Candidates in relevance order

        Raises:
            SearchProviderError: on HTTP or transport failure
        """
        payload = {
            "query": query,
            "limit": limit,
            "scrapeOptions": {"formats": ["markdown"]},
        }
        try:
            resp = self._session.post(
                FIRECRAWL_SEARCH_URL, headers=self._headers(), json=payload, timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise SearchProviderError(f"Firecrawl search failed: {type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            raise SearchProviderError(f"Firecrawl search failed: {resp.status_code} {resp.text[:300]}")

        data = resp.json()
        if not data.get("success") or not isinstance(data.get("data"), list):
            logger.warning(f"Firecrawl search returned no data: {data.get('error')}")
            return []
        return [_candidate_from_item(item) for item in data["data"] if isinstance(item, dict)]

    def start_crawl(self, url: str, limit: int = 20) -> str:
        """Start a crawl job and return its id."""
        payload = {"url": url, "limit": limit, "scrapeOptions": {"formats": ["markdown"]}}
        try:
            resp = self._session.post(
                FIRECRAWL_CRAWL_URL, headers=self._headers(), json=payload, timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise SearchProviderError(f"Firecrawl crawl start failed: {e}") from e
        if resp.status_code != 200:
            raise SearchProviderError(f"Firecrawl crawl start failed: {resp.status_code} {resp.text[:300]}")
        job_id = resp.json().get("id")
        if not job_id:
            raise SearchProviderError("Firecrawl did not return a crawl id")
        return job_id

    def crawl_status(self, job_id: str) -> tuple[str, list[dict]]:
        """Return (status, pages) for a crawl job."""
        try:
            resp = self._session.get(
                f"{FIRECRAWL_CRAWL_URL}/{job_id}", headers=self._headers(), timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise SearchProviderError(f"Firecrawl crawl status failed: {e}") from e
        if resp.status_code != 200:
            raise SearchProviderError(f"Firecrawl crawl status failed: {resp.status_code}")
        data = resp.json()
        return data.get("status", ""), data.get("data") or []

    def crawl(
        self,
        url: str,
        limit: int = 20,
        poll_interval: float = 8.0,
        max_wait: float = 300.0,
    ) -> list[SearchCandidate]:
        """Start a crawl and poll until it completes, fails or times out."""
        job_id = self.start_crawl(url, limit)
        logger.info(f"Crawl job {job_id} started for {url} (limit={limit})")

        start = time.time()
        while time.time() - start < max_wait:
            status, pages = self.crawl_status(job_id)
            if status == "completed" and pages:
                return [_candidate_from_item(p) for p in pages if isinstance(p, dict)]
            if status == "failed":
                raise SearchProviderError(f"Crawl job {job_id} failed")
            logger.info(f"Crawl status: {status} ({len(pages)} pages)")
            time.sleep(poll_interval)

        raise SearchProviderError(f"Crawl job {job_id} timed out after {max_wait:.0f}s")


def build_search_query(query: str, config: Optional[EnrichmentConfig] = None) -> str:
    """Prefix the user query with site: operators for the official portals."""
    config = config or EnrichmentConfig()
    sites = " OR ".join(f"site:{s}" for s in config.search_sites)
    return f"{sites} {query.strip()}"[: config.max_query_chars]


def is_allowed_host(url: str, config: Optional[EnrichmentConfig] = None) -> bool:
    """True when the URL's hostname ends with an allowed official suffix."""
    config = config or EnrichmentConfig()
    host = (urlparse(url or "").hostname or "").lower()
    return bool(host) and host.endswith(config.allowed_host_suffixes)


def pick_candidate(
    candidates: list[SearchCandidate],
    config: Optional[EnrichmentConfig] = None,
) -> Optional[SearchCandidate]:
    """First candidate, in relevance order, on an official host with enough content."""
    config = config or EnrichmentConfig()
    for c in candidates:
        if not is_allowed_host(c.url, config):
            logger.debug(f"Rejected candidate (host not allowed): {c.url}")
            continue
        if len(c.markdown.strip()) < config.min_content_length:
            logger.debug(f"Rejected candidate (content too short: {len(c.markdown)}): {c.url}")
            continue
        return c
    return None


# =============================================================================
# Enqueue + wake-up
# =============================================================================

def auto_run_enabled() -> bool:
    """The wake-up notify is on unless AUTO_RUN_ENRICH_QUEUE is "false" or "0"."""
    return os.getenv("AUTO_RUN_ENRICH_QUEUE", "true").strip().lower() not in ("false", "0")


def enqueue_for_enrichment(store, query: str, mode: str = "normal") -> Optional[int]:
    """
    Queue a query for enrichment without ever failing the caller.

    The durable row is the delivery guarantee; the NOTIFY that wakes a
    listening worker is a best-effort nudge.

    Returns:
        The queue entry id, or None if the query was blank or the insert failed
    """
    query = (query or "").strip()
    if not query:
        return None
    try:
        entry_id = store.enqueue(query, mode, notify=auto_run_enabled())
        get_metrics_collector().record_enqueue()
        logger.info(f"Queued for enrichment ({mode}): {query[:80]}{'…' if len(query) > 80 else ''}")
        return entry_id
    except Exception as e:
        logger.warning(f"Enrichment enqueue failed (answer not blocked): {type(e).__name__}: {e}")
        return None


# =============================================================================
# Worker
# =============================================================================

@dataclass
class WorkerRunStats:
    """Counts of terminal statuses reached during a worker run."""
    processed: int = 0
    batches: int = 0
    by_status: dict = field(default_factory=dict)

    def record(self, status: str) -> None:
        self.processed += 1
        self.by_status[status] = self.by_status.get(status, 0) + 1


class EnrichmentWorker:
    """
    Drains the enrichment queue.

    Collaborators are injected: a corpus store, an ingestion pipeline, a
    search client and a verifier, so the worker runs against in-memory
    fakes in tests.
    """

    def __init__(
        self,
        store,
        pipeline,
        search_client,
        verifier,
        config: Optional[EnrichmentConfig] = None,
        dry_run: bool = False,
        force: bool = False,
    ):
        self.store = store
        self.pipeline = pipeline
        self.search_client = search_client
        self.verifier = verifier
        self.config = config or EnrichmentConfig()
        self.dry_run = dry_run
        self.force = force

    def _finish(self, entry, note: QueueNote, **fields) -> str:
        status = status_for_note(note)
        if status == QueueStatus.FAILED and "error" not in fields:
            fields["error"] = f"{note.kind}"
        self.store.update_queue_entry(entry.id, status, meta=note.to_meta(), **fields)
        logger.info(f"Entry {entry.id} -> {status} ({note.kind})")
        return status

    def _fail(self, entry, error: str) -> str:
        self.store.update_queue_entry(entry.id, QueueStatus.FAILED, error=error[:2000])
        logger.warning(f"Entry {entry.id} -> FAILED: {error[:200]}")
        return QueueStatus.FAILED

    def process_entry(self, entry) -> str:
        """
        Run one queue entry through search, verification and ingestion.

        Returns:
            The terminal status written for the entry
        """
        try:
            self.store.update_queue_entry(entry.id, QueueStatus.FETCHING)
            status = self._process(entry)
        except Exception as e:
            logger.error(f"Entry {entry.id} unhandled error: {type(e).__name__}: {e}")
            status = self._fail(entry, f"{type(e).__name__}: {e}")
        get_metrics_collector().record_enrichment(status)
        return status

    def _process(self, entry) -> str:
        try:
            candidates = self.search_client.search(
                build_search_query(entry.query, self.config), limit=self.config.search_limit,
            )
        except SearchProviderError as e:
            return self._fail(entry, str(e))

        best = pick_candidate(candidates, self.config)
        if best is None:
            return self._finish(entry, NoCandidateNote(
                candidates=[{"url": c.url, "title": c.title} for c in candidates],
            ))

        text = normalize_text(best.markdown)
        digest = content_hash(text)
        canonical = derive_canonical(best.title, best.url)
        candidate_fields = {
            "source_url": best.url,
            "title": best.title,
            "canonical_key": canonical.canonical_key,
            "content_hash": digest,
        }

        verification = self.verifier.verify(text, best.title, entry.query)
        if not verification.verified:
            return self._finish(
                entry,
                VerificationFailureNote(verification.votes, verification.total, verification.details),
                error=f"Verificación multi-IA no superada: {verification.summary()}",
                **candidate_fields,
            )

        if self.dry_run:
            logger.info(f"[dry-run] would ingest {canonical.canonical_key} from {best.url} ({len(text)} chars)")
            return self._finish(entry, DryRunNote(chars=len(text)), **candidate_fields)

        existing = self.store.find_version_by_hash(digest)
        if existing is not None and not self.force:
            return self._finish(entry, DedupNote(version_id=existing), **candidate_fields)

        self.store.update_queue_entry(entry.id, QueueStatus.INGESTING, **candidate_fields)

        document = self.pipeline.prepare(
            best.markdown,
            best.title,
            best.url,
            description=best.description,
            canonical=canonical,
        )
        try:
            result = self.pipeline.ingest(
                document,
                source=SOURCE_CONSULTORIA,
                dedup_scope="global",
                rechunk_on_dedup=self.force,
            )
        except IngestionError as e:
            return self._fail(entry, str(e))

        if result.created or result.rechunked:
            return self._finish(entry, IngestedNote(result.version_id, result.chunks_count))
        return self._finish(entry, DedupNote(version_id=result.version_id))

    def run_batch(self, limit: int = 5) -> list[str]:
        """Process up to ``limit`` PENDING entries, oldest first."""
        entries = self.store.fetch_pending(limit)
        if not entries:
            logger.info("No PENDING entries.")
        statuses = []
        for entry in entries:
            logger.info(f"Processing entry {entry.id}: {entry.query[:50]}...")
            statuses.append(self.process_entry(entry))
        return statuses

    def _wait(self, timeout: float) -> None:
        wait = getattr(self.store, "wait_for_enqueue", None)
        if wait is None:
            time.sleep(timeout)
            return
        try:
            if wait(timeout):
                logger.info("Woken by enqueue notification")
        except Exception as e:
            logger.warning(f"Queue listen failed, falling back to polling: {e}")
            time.sleep(timeout)

    def run(
        self,
        once: bool = False,
        limit: int = 5,
        poll_interval: float = 2.0,
        max_batches: Optional[int] = None,
    ) -> WorkerRunStats:
        """
        Drain the queue.

        In continuous mode a store error ends only the current batch; the
        worker logs it, waits and polls again.

        Args:
            once: Process a single batch and return
            limit: Batch size
            poll_interval: Seconds to wait between polls in continuous mode
            max_batches: Stop after this many batches (continuous mode)

        Returns:
            WorkerRunStats
        """
        limit = max(1, limit)
        stats = WorkerRunStats()
        if self.dry_run:
            logger.info("Dry-run mode: no corpus writes.")

        while True:
            try:
                for status in self.run_batch(limit):
                    stats.record(status)
            except CorpusStoreError as e:
                if once:
                    raise
                logger.error(f"Queue batch failed, retrying after {poll_interval}s: {e}")
            stats.batches += 1

            if once or (max_batches is not None and stats.batches >= max_batches):
                break
            self._wait(poll_interval)

        logger.info(f"Worker run finished: {stats.processed} entries, {stats.by_status}")
        return stats
