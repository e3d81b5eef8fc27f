"""
Tests for execution/rd_legal_rag/enrichment.py

Covers: diagnostic notes, candidate selection and the host allow-list,
        query building, Firecrawl client parsing, enqueue behaviour, and the
        worker's state transitions for every branch.

The search provider and verifiers are faked; no network access.
"""

from unittest.mock import MagicMock

import pytest
import requests

from conftest import SAMPLE_CODIGO_TRABAJO, SAMPLE_LEY_41_08

OFFICIAL_URL = "https://www.consultoria.gov.do/consulta/ley-41-08"


def _candidate(url=OFFICIAL_URL, title="Ley No. 41-08 de Función Pública", markdown=SAMPLE_LEY_41_08):
    from execution.rd_legal_rag.enrichment import SearchCandidate
    return SearchCandidate(url=url, title=title, markdown=markdown)


class FakeSearch:
    def __init__(self, candidates=None, error=None):
        self.candidates = candidates or []
        self.error = error
        self.queries = []

    def search(self, query, limit=5):
        self.queries.append((query, limit))
        if self.error:
            raise self.error
        return self.candidates


class FakeVerifier:
    def __init__(self, verified=True):
        self.verified = verified
        self.calls = []

    def verify(self, text, title, query):
        from execution.rd_legal_rag.verification import VerificationResult
        self.calls.append((title, query))
        if self.verified:
            return VerificationResult(True, 3, 3, ["Claude: yes", "Groq: yes", "OpenAI: yes"])
        return VerificationResult(False, 1, 3, ["Claude: yes", "Groq: no", "OpenAI: no"])


@pytest.fixture
def pipeline(mock_corpus_store, mock_embedding_service):
    from execution.rd_legal_rag.ingestion import IngestionPipeline
    return IngestionPipeline(mock_corpus_store, mock_embedding_service)


def _worker(store, pipeline, search, verifier=None, **kwargs):
    from execution.rd_legal_rag.enrichment import EnrichmentWorker
    return EnrichmentWorker(store, pipeline, search, verifier or FakeVerifier(), **kwargs)


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------

class TestQueueNotes:

    def test_note_statuses(self):
        from execution.rd_legal_rag.enrichment import (
            DedupNote, DryRunNote, IngestedNote, NoCandidateNote,
            VerificationFailureNote, status_for_note,
        )
        assert status_for_note(DedupNote()) == "INGESTED"
        assert status_for_note(DryRunNote(chars=10)) == "INGESTED"
        assert status_for_note(IngestedNote(1, 4)) == "INGESTED"
        assert status_for_note(NoCandidateNote()) == "FETCHED_REVIEW"
        assert status_for_note(VerificationFailureNote(1, 3)) == "FAILED"

    def test_unknown_note_rejected(self):
        from execution.rd_legal_rag.enrichment import status_for_note
        with pytest.raises(TypeError):
            status_for_note({"kind": "dedup"})

    def test_meta_shapes(self):
        from execution.rd_legal_rag.enrichment import DedupNote, IngestedNote, VerificationFailureNote
        assert DedupNote(version_id=4).to_meta() == {"kind": "dedup", "note": "dedup-by-hash", "versionId": 4}
        assert IngestedNote(7, 12).to_meta() == {"kind": "ingested", "versionId": 7, "chunksCount": 12}
        meta = VerificationFailureNote(1, 3, ["Groq: no"]).to_meta()
        assert meta["kind"] == "verification_failure"
        assert meta["votes"] == 1 and meta["total"] == 3


# ---------------------------------------------------------------------------
# Candidate selection
# ---------------------------------------------------------------------------

class TestHostAllowList:

    @pytest.mark.parametrize("url, allowed", [
        ("https://www.consultoria.gov.do/consulta/x", True),
        ("https://gacetaoficial.gob.do/ley", True),
        ("https://mt.gob.do/normativa", True),
        ("https://example.com/gob.do", False),
        ("https://gob.do.example.com/", False),
        ("https://notgob.do/", False),
        ("", False),
        ("not a url", False),
    ])
    def test_is_allowed_host(self, url, allowed):
        from execution.rd_legal_rag.enrichment import is_allowed_host
        assert is_allowed_host(url) is allowed


class TestPickCandidate:

    def test_first_official_with_enough_content(self):
        from execution.rd_legal_rag.enrichment import pick_candidate
        candidates = [
            _candidate(url="https://blog.example.com/ley-41-08"),
            _candidate(url="https://www.consultoria.gov.do/short", markdown="Muy corto"),
            _candidate(url="https://www.consultoria.gov.do/full"),
            _candidate(url="https://gacetaoficial.gob.do/other"),
        ]
        assert pick_candidate(candidates).url == "https://www.consultoria.gov.do/full"

    def test_none_when_nothing_usable(self):
        from execution.rd_legal_rag.enrichment import pick_candidate
        assert pick_candidate([_candidate(url="https://example.com/x")]) is None
        assert pick_candidate([]) is None


class TestBuildSearchQuery:

    def test_site_operators_and_cap(self):
        from execution.rd_legal_rag.enrichment import build_search_query
        q = build_search_query("  vacaciones ley 41-08  ")
        assert q == "site:consultoria.gov.do OR site:gacetaoficial.gob.do vacaciones ley 41-08"

    def test_capped_length(self):
        from execution.rd_legal_rag.enrichment import build_search_query
        assert len(build_search_query("x" * 500)) == 200


# ---------------------------------------------------------------------------
# Firecrawl client
# ---------------------------------------------------------------------------

def _http_response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload or {}
    resp.text = text
    return resp


class TestFirecrawlClient:

    def test_missing_key(self):
        from execution.rd_legal_rag.enrichment import FirecrawlClient, SearchProviderError
        client = FirecrawlClient(api_key="", session=MagicMock())
        with pytest.raises(SearchProviderError, match="FIRECRAWL_API_KEY"):
            client.search("ley 41-08")

    def test_search_parses_candidates(self):
        from execution.rd_legal_rag.enrichment import FirecrawlClient
        session = MagicMock()
        session.post.return_value = _http_response(payload={
            "success": True,
            "data": [
                {"url": OFFICIAL_URL, "title": "Ley 41-08", "markdown": "# Ley\n\nArtículo 1."},
                {"metadata": {"sourceURL": "https://mt.gob.do/x", "description": "desc"}, "markdown": "m"},
                "ignored",
            ],
        })
        client = FirecrawlClient(api_key="fc-test", session=session)
        candidates = client.search("ley 41-08", limit=3)

        assert [c.url for c in candidates] == [OFFICIAL_URL, "https://mt.gob.do/x"]
        assert candidates[1].title == "Sin título"
        assert candidates[1].description == "desc"
        kwargs = session.post.call_args.kwargs
        assert kwargs["json"]["limit"] == 3
        assert kwargs["json"]["scrapeOptions"] == {"formats": ["markdown"]}
        assert kwargs["headers"]["Authorization"] == "Bearer fc-test"

    def test_search_unsuccessful_returns_empty(self):
        from execution.rd_legal_rag.enrichment import FirecrawlClient
        session = MagicMock()
        session.post.return_value = _http_response(payload={"success": False, "error": "quota"})
        assert FirecrawlClient(api_key="k", session=session).search("q") == []

    def test_search_http_error(self):
        from execution.rd_legal_rag.enrichment import FirecrawlClient, SearchProviderError
        session = MagicMock()
        session.post.return_value = _http_response(status=402, text="Payment required")
        with pytest.raises(SearchProviderError, match="402"):
            FirecrawlClient(api_key="k", session=session).search("q")

    def test_search_transport_error(self):
        from execution.rd_legal_rag.enrichment import FirecrawlClient, SearchProviderError
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("dns")
        with pytest.raises(SearchProviderError):
            FirecrawlClient(api_key="k", session=session).search("q")

    def test_crawl_polls_until_completed(self, monkeypatch):
        from execution.rd_legal_rag import enrichment
        monkeypatch.setattr(enrichment.time, "sleep", lambda s: None)
        session = MagicMock()
        session.post.return_value = _http_response(payload={"id": "job-1"})
        session.get.side_effect = [
            _http_response(payload={"status": "scraping", "data": []}),
            _http_response(payload={"status": "completed", "data": [{"url": OFFICIAL_URL, "markdown": "x"}]}),
        ]
        client = enrichment.FirecrawlClient(api_key="k", session=session)
        pages = client.crawl("https://www.consultoria.gov.do/consulta/", limit=20)
        assert [p.url for p in pages] == [OFFICIAL_URL]
        assert session.get.call_args.args[0].endswith("/job-1")

    def test_crawl_failed_job(self, monkeypatch):
        from execution.rd_legal_rag import enrichment
        session = MagicMock()
        session.post.return_value = _http_response(payload={"id": "job-2"})
        session.get.return_value = _http_response(payload={"status": "failed"})
        client = enrichment.FirecrawlClient(api_key="k", session=session)
        with pytest.raises(enrichment.SearchProviderError, match="failed"):
            client.crawl("https://www.consultoria.gov.do/consulta/")


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------

class TestEnqueue:

    def test_enqueue_inserts_and_notifies(self, mock_corpus_store):
        from execution.rd_legal_rag.enrichment import enqueue_for_enrichment
        entry_id = enqueue_for_enrichment(mock_corpus_store, "  vacaciones ley 41-08 ", "max-reliability")
        entry = mock_corpus_store.queue[entry_id]
        assert entry.query == "vacaciones ley 41-08"
        assert entry.mode == "max-reliability"
        assert entry.status == "PENDING"
        assert mock_corpus_store.notifications == [entry_id]

    def test_auto_run_disabled_skips_notify(self, mock_corpus_store, monkeypatch):
        from execution.rd_legal_rag.enrichment import enqueue_for_enrichment
        monkeypatch.setenv("AUTO_RUN_ENRICH_QUEUE", "false")
        enqueue_for_enrichment(mock_corpus_store, "vacaciones")
        assert mock_corpus_store.notifications == []
        assert len(mock_corpus_store.queue) == 1

    def test_blank_query_skipped(self, mock_corpus_store):
        from execution.rd_legal_rag.enrichment import enqueue_for_enrichment
        assert enqueue_for_enrichment(mock_corpus_store, "   ") is None
        assert mock_corpus_store.queue == {}

    def test_store_failure_never_raises(self):
        from execution.rd_legal_rag.corpus_store import CorpusStoreError
        from execution.rd_legal_rag.enrichment import enqueue_for_enrichment
        store = MagicMock()
        store.enqueue.side_effect = CorpusStoreError("enqueue failed: connection refused")
        assert enqueue_for_enrichment(store, "vacaciones") is None

    def test_metrics_counted(self, mock_corpus_store):
        from execution.rd_legal_rag.enrichment import enqueue_for_enrichment
        from execution.rd_legal_rag.metrics import get_metrics_collector
        enqueue_for_enrichment(mock_corpus_store, "vacaciones")
        assert get_metrics_collector().get_metrics().enrichment_enqueued == 1


# ---------------------------------------------------------------------------
# Worker transitions
# ---------------------------------------------------------------------------

class TestEnrichmentWorker:

    def _entry(self, store, query="vacaciones ley 41-08"):
        entry_id = store.enqueue(query, "max-reliability")
        return store.queue[entry_id]

    def test_success_ingests(self, mock_corpus_store, pipeline):
        entry = self._entry(mock_corpus_store)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch([_candidate()]))
        assert worker.process_entry(entry) == "INGESTED"

        assert entry.status == "INGESTED"
        assert entry.meta["kind"] == "ingested"
        assert entry.canonical_key == "LEY-41-08"
        assert entry.source_url == OFFICIAL_URL
        assert entry.content_hash
        assert len(mock_corpus_store.versions) == 1
        assert mock_corpus_store.count_chunks(entry.meta["versionId"]) == entry.meta["chunksCount"]

    def test_search_query_has_site_operators(self, mock_corpus_store, pipeline):
        entry = self._entry(mock_corpus_store)
        search = FakeSearch([_candidate()])
        _worker(mock_corpus_store, pipeline, search).process_entry(entry)
        query, limit = search.queries[0]
        assert query.startswith("site:consultoria.gov.do")
        assert limit == 5

    def test_search_error_fails(self, mock_corpus_store, pipeline):
        from execution.rd_legal_rag.enrichment import SearchProviderError
        entry = self._entry(mock_corpus_store)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch(error=SearchProviderError("Falta FIRECRAWL_API_KEY")))
        assert worker.process_entry(entry) == "FAILED"
        assert entry.error == "Falta FIRECRAWL_API_KEY"

    def test_no_candidate_goes_to_review(self, mock_corpus_store, pipeline):
        entry = self._entry(mock_corpus_store)
        search = FakeSearch([_candidate(url="https://example.com/ley-41-08")])
        assert _worker(mock_corpus_store, pipeline, search).process_entry(entry) == "FETCHED_REVIEW"
        assert entry.meta == {
            "kind": "no_candidate",
            "candidates": [{"url": "https://example.com/ley-41-08", "title": "Ley No. 41-08 de Función Pública"}],
        }
        assert mock_corpus_store.versions == {}

    def test_verification_failure(self, mock_corpus_store, pipeline):
        entry = self._entry(mock_corpus_store)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch([_candidate()]), FakeVerifier(verified=False))
        assert worker.process_entry(entry) == "FAILED"
        assert entry.meta["kind"] == "verification_failure"
        assert entry.error.startswith("Verificación multi-IA no superada")
        assert entry.canonical_key == "LEY-41-08"
        assert mock_corpus_store.versions == {}

    def test_dry_run_writes_nothing(self, mock_corpus_store, pipeline):
        entry = self._entry(mock_corpus_store)
        verifier = FakeVerifier()
        worker = _worker(mock_corpus_store, pipeline, FakeSearch([_candidate()]), verifier, dry_run=True)
        assert worker.process_entry(entry) == "INGESTED"
        assert entry.meta["kind"] == "dry_run"
        assert entry.meta["chars"] > 0
        assert verifier.calls
        assert mock_corpus_store.versions == {}

    def test_dedup_by_hash(self, mock_corpus_store, pipeline):
        pipeline.ingest_text(SAMPLE_LEY_41_08, "Ley No. 41-08", OFFICIAL_URL)
        entry = self._entry(mock_corpus_store)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch([_candidate()]))
        assert worker.process_entry(entry) == "INGESTED"
        assert entry.meta["kind"] == "dedup"
        assert entry.meta["note"] == "dedup-by-hash"
        assert len(mock_corpus_store.versions) == 1

    def test_force_rechunks_existing(self, mock_corpus_store, pipeline):
        first = pipeline.ingest_text(SAMPLE_LEY_41_08, "Ley No. 41-08", OFFICIAL_URL)
        entry = self._entry(mock_corpus_store)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch([_candidate()]), force=True)
        assert worker.process_entry(entry) == "INGESTED"
        assert entry.meta["kind"] == "ingested"
        assert entry.meta["versionId"] == first.version_id

    def test_ingestion_error_fails(self, mock_corpus_store, pipeline, monkeypatch):
        from execution.rd_legal_rag.ingestion import IngestionError

        def boom(*args, **kwargs):
            raise IngestionError("LEY-41-08", "embedding provider unavailable")

        monkeypatch.setattr(pipeline, "ingest", boom)
        entry = self._entry(mock_corpus_store)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch([_candidate()]))
        assert worker.process_entry(entry) == "FAILED"
        assert "LEY-41-08" in entry.error

    def test_unexpected_error_fails_entry(self, mock_corpus_store, pipeline):
        entry = self._entry(mock_corpus_store)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch(error=RuntimeError("boom")))
        assert worker.process_entry(entry) == "FAILED"
        assert entry.error == "RuntimeError: boom"

    def test_run_once_processes_oldest_first(self, mock_corpus_store, pipeline):
        from execution.rd_legal_rag.enrichment import SearchCandidate
        first = self._entry(mock_corpus_store, "ley 41-08")
        second = self._entry(mock_corpus_store, "ley 16-92")

        class ByQuery(FakeSearch):
            def search(self, query, limit=5):
                self.queries.append((query, limit))
                if "41-08" in query:
                    return [_candidate()]
                return [SearchCandidate(
                    url="https://www.consultoria.gov.do/consulta/ley-16-92",
                    title="Ley No. 16-92 Código de Trabajo",
                    markdown=SAMPLE_CODIGO_TRABAJO,
                )]

        search = ByQuery()
        stats = _worker(mock_corpus_store, pipeline, search).run(once=True, limit=5)
        assert stats.processed == 2
        assert stats.batches == 1
        assert stats.by_status == {"INGESTED": 2}
        assert "41-08" in search.queries[0][0]
        assert first.status == second.status == "INGESTED"

    def test_run_respects_max_batches(self, mock_corpus_store, pipeline):
        worker = _worker(mock_corpus_store, pipeline, FakeSearch())
        stats = worker.run(max_batches=2, poll_interval=0)
        assert stats.batches == 2
        assert stats.processed == 0

    def test_run_survives_store_error(self, mock_corpus_store, pipeline, monkeypatch):
        from execution.rd_legal_rag.corpus_store import CorpusStoreError
        self._entry(mock_corpus_store)
        real_fetch = mock_corpus_store.fetch_pending
        calls = []

        def flaky_fetch(limit=5):
            calls.append(limit)
            if len(calls) == 1:
                raise CorpusStoreError("conn reset")
            return real_fetch(limit)

        monkeypatch.setattr(mock_corpus_store, "fetch_pending", flaky_fetch)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch([_candidate()]))
        stats = worker.run(max_batches=2, poll_interval=0)
        assert len(calls) == 2
        assert stats.batches == 2
        assert stats.by_status == {"INGESTED": 1}

    def test_run_once_raises_store_error(self, mock_corpus_store, pipeline, monkeypatch):
        from execution.rd_legal_rag.corpus_store import CorpusStoreError
        monkeypatch.setattr(
            mock_corpus_store, "fetch_pending", MagicMock(side_effect=CorpusStoreError("conn reset")),
        )
        with pytest.raises(CorpusStoreError):
            _worker(mock_corpus_store, pipeline, FakeSearch()).run(once=True)

    def test_fetching_update_error_fails_entry(self, mock_corpus_store, pipeline, monkeypatch):
        from execution.rd_legal_rag.corpus_store import CorpusStoreError
        entry = self._entry(mock_corpus_store)
        real_update = mock_corpus_store.update_queue_entry

        def update(entry_id, status, **fields):
            if status == "FETCHING":
                raise CorpusStoreError("conn reset")
            return real_update(entry_id, status, **fields)

        monkeypatch.setattr(mock_corpus_store, "update_queue_entry", update)
        worker = _worker(mock_corpus_store, pipeline, FakeSearch([_candidate()]))
        assert worker.process_entry(entry) == "FAILED"
        assert "conn reset" in entry.error

    def test_metrics_by_status(self, mock_corpus_store, pipeline):
        from execution.rd_legal_rag.metrics import get_metrics_collector
        entry = self._entry(mock_corpus_store)
        _worker(mock_corpus_store, pipeline, FakeSearch()).process_entry(entry)
        assert get_metrics_collector().get_metrics().enrichment_by_status == {"FETCHED_REVIEW": 1}
