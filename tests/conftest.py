"""
Shared fixtures and test utilities for RD Legal RAG tests.

Provides mock services, an in-memory corpus store, fake chat providers and
sample Dominican legal text so that all tests can run without API keys,
databases, or external network access.
"""

import sys
import math
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

from execution.rd_legal_rag.corpus_store import (  # noqa: E402
    DEDUP_SCOPES,
    INSTRUMENT_TYPES,
    STATUS_DEROGADA,
    STATUS_VIGENTE,
    ChunkCitation,
    QueueEntry,
    VersionInsertResult,
    VigenteChunk,
)
from execution.rd_legal_rag.llm_providers import PROVIDER_SPECS, ChatProvider, ProviderError  # noqa: E402

# ---------------------------------------------------------------------------
# Sample legal text
# ---------------------------------------------------------------------------
LEY_41_08_URL = "https://www.consultoria.gov.do/consulta/ley-41-08"
CODIGO_TRABAJO_URL = "https://www.consultoria.gov.do/consulta/ley-16-92"

SAMPLE_LEY_41_08 = """
LEY No. 41-08 DE FUNCIÓN PÚBLICA

Promulgada el 16 de enero de 2008.

Artículo 1. La presente ley tiene por objeto regular las relaciones de trabajo de las personas
designadas por autoridad competente para desempeñar los cargos presupuestados para la
realización de funciones públicas en el Estado.

Artículo 2. El ámbito de aplicación de la presente ley comprende a los servidores públicos
de los órganos y entidades de la administración pública central y descentralizada.

Artículo 57. Los servidores públicos tienen derecho a disfrutar cada año de vacaciones
remuneradas, de conformidad con la escala establecida en el reglamento de aplicación.

Artículo 58. Las vacaciones no podrán ser compensadas en dinero salvo en los casos de
desvinculación del servidor público antes de haberlas disfrutado.
""".strip()

SAMPLE_CODIGO_TRABAJO = """
LEY No. 16-92 CÓDIGO DE TRABAJO

Artículo 1. El contrato de trabajo es aquel por el cual una persona se obliga, mediante una
retribución, a prestar un servicio personal a otra, bajo la dependencia y dirección inmediata
o delegada de ésta.

Artículo 177. Los empleadores están obligados a conceder a todo trabajador un período de
vacaciones de catorce días laborables, con disfrute de salario.
""".strip()


def make_chunk(
    text: str,
    chunk_index: int = 0,
    title: str = "Ley No. 41-08 de Función Pública",
    source_url: str = LEY_41_08_URL,
    canonical_key: str = "LEY-41-08",
    published_date: str = "2008-01-16",
    similarity: float = 0.82,
    status: str = STATUS_VIGENTE,
) -> VigenteChunk:
    """Build a VigenteChunk with a realistic citation."""
    number = canonical_key.split("-", 1)[1] if "-" in canonical_key else None
    return VigenteChunk(
        chunk_index=chunk_index,
        chunk_text=text,
        similarity=similarity,
        instrument_version_id=1,
        citation=ChunkCitation(
            title=title,
            source_url=source_url,
            published_date=published_date,
            status=status,
            type="ley",
            number=number,
            canonical_key=canonical_key,
        ),
    )


@pytest.fixture
def sample_ley_text():
    return SAMPLE_LEY_41_08


@pytest.fixture
def sample_chunks():
    """Four Ley 41-08 chunks, enough to pass the sufficiency gate."""
    paragraphs = [p for p in SAMPLE_LEY_41_08.split("\n\n") if p.startswith("Artículo")]
    return [
        make_chunk(p, chunk_index=i, similarity=round(0.9 - i * 0.05, 2))
        for i, p in enumerate(paragraphs)
    ]


@pytest.fixture
def codigo_trabajo_chunks():
    paragraphs = [p for p in SAMPLE_CODIGO_TRABAJO.split("\n\n") if p.startswith("Artículo")]
    return [
        make_chunk(
            p,
            chunk_index=i,
            title="Ley No. 16-92 Código de Trabajo",
            source_url=CODIGO_TRABAJO_URL,
            canonical_key="LEY-16-92",
            published_date="1992-05-29",
        )
        for i, p in enumerate(paragraphs)
    ]


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=16):
        self._dimensions = dimensions
        self._call_count = 0

    def embed_documents(self, texts):
        return [self._deterministic_embedding(t) for t in texts]

    def embed_query(self, query):
        self._call_count += 1
        return self._deterministic_embedding(query)

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i * 37) % 1000) / 1000.0 + 0.001 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


class FailingEmbeddingService(MockEmbeddingService):
    """Embedding service whose provider is down."""

    def embed_documents(self, texts):
        raise RuntimeError("embedding provider unavailable")

    def embed_query(self, query):
        raise RuntimeError("embedding provider unavailable")


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# In-memory corpus store (no database needed)
# ---------------------------------------------------------------------------

def _cosine(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


class MockCorpusStore:
    """In-memory implementation of the CorpusStore contract."""

    def __init__(self):
        self.sources = {}        # (name, base_url) -> id
        self.instruments = {}    # id -> dict
        self.versions = {}       # id -> dict
        self.chunks = {}         # version_id -> [(index, text, embedding)]
        self.queue = {}          # id -> QueueEntry
        self.notifications = []
        self._next_id = 1

    def _new_id(self):
        value = self._next_id
        self._next_id += 1
        return value

    def connect(self):
        pass

    def initialize_schema(self):
        pass

    def close(self):
        pass

    # --- corpus writes -----------------------------------------------------

    def ensure_source(self, name, base_url):
        key = (name, base_url)
        if key not in self.sources:
            self.sources[key] = self._new_id()
        return self.sources[key]

    def upsert_instrument(self, canonical_key, title, type, number=None):
        if type not in INSTRUMENT_TYPES:
            raise ValueError(f"Unknown instrument type '{type}'")
        for inst_id, inst in self.instruments.items():
            if inst["canonical_key"] == canonical_key:
                inst.update(title=title, type=type, number=number or inst["number"])
                return inst_id
        inst_id = self._new_id()
        self.instruments[inst_id] = {
            "canonical_key": canonical_key, "title": title, "type": type, "number": number,
        }
        return inst_id

    def insert_version_if_new(self, instrument_id, source_id, content_text, content_hash,
                              published_date, source_url, effective_date=None,
                              gazette_ref=None, status=STATUS_VIGENTE, dedup_scope="instrument"):
        if dedup_scope not in DEDUP_SCOPES:
            raise ValueError(f"dedup_scope must be one of {DEDUP_SCOPES}, got '{dedup_scope}'")
        for vid, v in sorted(self.versions.items()):
            same_scope = dedup_scope == "global" or v["instrument_id"] == instrument_id
            if same_scope and v["content_hash"] == content_hash:
                return VersionInsertResult(version_id=vid, created=False, skipped="dedup")

        if status == STATUS_VIGENTE:
            for v in self.versions.values():
                if v["instrument_id"] == instrument_id and v["status"] == STATUS_VIGENTE:
                    v["status"] = STATUS_DEROGADA

        vid = self._new_id()
        self.versions[vid] = {
            "instrument_id": instrument_id,
            "source_id": source_id,
            "content_text": content_text,
            "content_hash": content_hash,
            "published_date": published_date,
            "effective_date": effective_date,
            "gazette_ref": gazette_ref,
            "source_url": source_url,
            "status": status,
        }
        return VersionInsertResult(version_id=vid, created=True)

    def find_version_by_hash(self, content_hash):
        for vid, v in sorted(self.versions.items()):
            if v["content_hash"] == content_hash:
                return vid
        return None

    def count_vigente_versions(self, instrument_id):
        return sum(
            1 for v in self.versions.values()
            if v["instrument_id"] == instrument_id and v["status"] == STATUS_VIGENTE
        )

    def replace_chunks(self, version_id, chunks):
        self.chunks[version_id] = list(chunks)
        return len(chunks)

    def count_chunks(self, version_id):
        return len(self.chunks.get(version_id, []))

    # --- reads -------------------------------------------------------------

    def _vigente_rows(self):
        for vid, v in self.versions.items():
            if v["status"] != STATUS_VIGENTE:
                continue
            inst = self.instruments[v["instrument_id"]]
            for index, text, embedding in self.chunks.get(vid, []):
                yield vid, v, inst, index, text, embedding

    def _to_chunk(self, vid, v, inst, index, text, similarity):
        return VigenteChunk(
            chunk_index=index,
            chunk_text=text,
            similarity=similarity,
            instrument_version_id=vid,
            citation=ChunkCitation(
                title=inst["title"],
                source_url=v["source_url"],
                published_date=v["published_date"],
                effective_date=v["effective_date"],
                status=v["status"],
                type=inst["type"],
                number=inst["number"],
                gazette_ref=v["gazette_ref"],
                canonical_key=inst["canonical_key"],
            ),
        )

    def search_vigente(self, query_embedding, top_k=8):
        scored = [
            (_cosine(query_embedding, emb), vid, v, inst, index, text)
            for vid, v, inst, index, text, emb in self._vigente_rows()
        ]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            self._to_chunk(vid, v, inst, index, text, sim)
            for sim, vid, v, inst, index, text in scored[:top_k]
        ]

    def search_by_canonical_key(self, canonical_key, top_k=8, query_embedding=None):
        rows = [r for r in self._vigente_rows() if r[2]["canonical_key"] == canonical_key]
        if query_embedding is not None:
            rows.sort(key=lambda r: _cosine(query_embedding, r[5]), reverse=True)
            return [
                self._to_chunk(vid, v, inst, index, text, _cosine(query_embedding, emb))
                for vid, v, inst, index, text, emb in rows[:top_k]
            ]
        rows.sort(key=lambda r: r[3])
        return [
            self._to_chunk(vid, v, inst, index, text, None)
            for vid, v, inst, index, text, _ in rows[:top_k]
        ]

    def sample_vigente_embedding(self):
        for row in self._vigente_rows():
            return row[5]
        return None

    # --- queue -------------------------------------------------------------

    def enqueue(self, query, mode="normal", notify=True):
        entry_id = self._new_id()
        self.queue[entry_id] = QueueEntry(id=entry_id, query=query, mode=mode, status="PENDING")
        if notify:
            self.notifications.append(entry_id)
        return entry_id

    def fetch_pending(self, limit=5):
        pending = [e for _, e in sorted(self.queue.items()) if e.status == "PENDING"]
        return pending[:limit]

    def update_queue_entry(self, entry_id, status, source_url=None, title=None,
                           canonical_key=None, content_hash=None, meta=None, error=None):
        entry = self.queue[entry_id]
        entry.status = status
        for name, value in (
            ("source_url", source_url),
            ("title", title),
            ("canonical_key", canonical_key),
            ("content_hash", content_hash),
            ("error", error),
        ):
            if value is not None:
                setattr(entry, name, value)
        if meta is not None:
            entry.meta = {**entry.meta, **meta}

    def wait_for_enqueue(self, timeout):
        woke = bool(self.notifications)
        self.notifications.clear()
        return woke


@pytest.fixture
def mock_corpus_store():
    return MockCorpusStore()


@pytest.fixture
def seeded_store(mock_corpus_store, mock_embedding_service, sample_chunks):
    """Store holding one VIGENTE Ley 41-08 version with four chunks."""
    store = mock_corpus_store
    source_id = store.ensure_source("ConsultoriaGovDo", "https://www.consultoria.gov.do/")
    inst_id = store.upsert_instrument("LEY-41-08", "Ley No. 41-08 de Función Pública", "ley", "41-08")
    version = store.insert_version_if_new(
        instrument_id=inst_id,
        source_id=source_id,
        content_text=SAMPLE_LEY_41_08,
        content_hash="seeded-hash",
        published_date="2008-01-16",
        source_url=LEY_41_08_URL,
    )
    texts = [c.chunk_text for c in sample_chunks]
    vectors = mock_embedding_service.embed_documents(texts)
    store.replace_chunks(version.version_id, [(i, t, v) for i, (t, v) in enumerate(zip(texts, vectors))])
    return store


# ---------------------------------------------------------------------------
# Fake chat providers
# ---------------------------------------------------------------------------

class FakeProvider(ChatProvider):
    """
    ChatProvider that answers from a script instead of the network.

    ``responses`` is a string (always returned), an exception (always
    raised), or a callable ``(model, system, user) -> str``.
    """

    def __init__(self, name, responses="respuesta de prueba", available=True):
        super().__init__(PROVIDER_SPECS[name], api_key="test-key" if available else "")
        self.responses = responses
        self.calls = []

    def _complete(self, model, system, user, max_tokens, temperature, timeout):
        self.calls.append({"model": model, "system": system, "user": user, "timeout": timeout})
        if isinstance(self.responses, Exception):
            raise self.responses
        if callable(self.responses):
            return self.responses(model, system, user)
        return self.responses


def fake_providers(**overrides):
    """All five providers answering successfully unless overridden."""
    providers = {name: FakeProvider(name, f"Respuesta de {name}") for name in PROVIDER_SPECS}
    providers.update(overrides)
    return providers


def failing(name):
    return FakeProvider(name, ProviderError(PROVIDER_SPECS[name].label, "HTTP 500: upstream error"))


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.rd_legal_rag.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None


@pytest.fixture(autouse=True)
def clear_provider_env(monkeypatch):
    """Keep real API keys from leaking into tests."""
    for spec in PROVIDER_SPECS.values():
        monkeypatch.delenv(spec.env_var, raising=False)
    monkeypatch.delenv("FIRECRAWL_API_KEY", raising=False)
    monkeypatch.delenv("AUTO_RUN_ENRICH_QUEUE", raising=False)
