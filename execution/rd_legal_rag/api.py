"""
FastAPI Backend for the Dominican Legal RAG Assistant

Endpoints: chat (normal and max-reliability modes), retrieval probe,
provider env check, in-process metrics and health.

Run with: uvicorn execution.rd_legal_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import logging
from collections import defaultdict, deque

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .api_models import (
    ChatRequest,
    EnvCheckResponse,
    HealthResponse,
    MetricsResponse,
    RecentChat,
    ProbeChunk,
    RagProbeRequest,
    RagProbeResponse,
)
from .citation import probe_entry
from .language_patterns import MESSAGES
from .llm_providers import configured_providers
from .metrics import get_metrics_collector

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"

app = FastAPI(
    title="RD Legal RAG API",
    description="Asistente informativo sobre derecho dominicano con fuentes vigentes verificadas",
    version=API_VERSION,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Per-client request cap over a sliding window, kept in process memory."""

    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, deque] = defaultdict(deque)

    def is_allowed(self, key: str) -> bool:
        now = time.time()
        stamps = self._requests[key]
        while stamps and stamps[0] <= now - self._window:
            stamps.popleft()
        if len(stamps) < self._max_requests:
            stamps.append(now)
            return True
        return False


_rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_RPM", "30")),
    window_seconds=60,
)


async def check_rate_limit(request: Request):
    """FastAPI dependency that enforces rate limiting per client address."""
    key = request.client.host if request.client else "anonymous"
    if not _rate_limiter.is_allowed(key):
        raise HTTPException(status_code=429, detail=MESSAGES["rate_limited"])


# =============================================================================
# Service Container - caches store, embeddings, retriever and orchestrator
# =============================================================================

class ServiceContainer:
    """Lazily builds and caches the long-lived services."""

    def __init__(self):
        self._store = None
        self._embeddings = None
        self._retriever = None
        self._orchestrator = None

    def get_store(self):
        if self._store is None:
            from .corpus_store import CorpusStore
            store = CorpusStore()
            store.connect()
            store.initialize_schema()
            self._store = store
        return self._store

    def get_embeddings(self):
        if self._embeddings is None:
            from .embeddings import get_embedding_service
            self._embeddings = get_embedding_service()
        return self._embeddings

    def get_retriever(self):
        if self._retriever is None:
            from .retriever import VigenteRetriever
            self._retriever = VigenteRetriever(self.get_store(), self.get_embeddings())
        return self._retriever

    def get_orchestrator(self):
        if self._orchestrator is None:
            from .chat import ChatOrchestrator
            self._orchestrator = ChatOrchestrator(self.get_retriever(), self.get_store())
        return self._orchestrator


_container = ServiceContainer()


def _reject(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"type": "reject", "message": message})


def _internal_error() -> JSONResponse:
    return _reject(500, MESSAGES["internal_error"])


@app.exception_handler(StarletteHTTPException)
async def reject_rate_limited(request: Request, exc: StarletteHTTPException):
    """Refused requests answer in the chat reject shape; other HTTP errors keep FastAPI's."""
    if exc.status_code == 429:
        logger.info(f"Rate limited {request.url.path}")
        return _reject(429, MESSAGES["rate_limited"])
    return await http_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def reject_invalid_request(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    logger.info(f"Invalid request body for {request.url.path}: {fields}")
    return _reject(422, MESSAGES["invalid_request"])


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    try:
        _container.get_store()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=API_VERSION, database=db_status)


@app.get("/api/v1/env-check", response_model=EnvCheckResponse)
def env_check():
    """Report which provider keys are configured, without exposing them."""
    return EnvCheckResponse(ok=True, env=configured_providers())


@app.get("/api/v1/metrics")
def metrics(limit: int = 10):
    """Counters for chats, agents, enrichment and ingestion, plus the latest chat turns."""
    collector = get_metrics_collector()
    recent = [
        RecentChat(
            request_id=c.request_id,
            mode=c.mode,
            outcome=c.outcome,
            latency_ms=round(c.latency_ms, 2),
            chunks_count=c.chunks_count,
            failed=c.error is not None,
        )
        for c in collector.get_recent_chats(max(1, min(limit, 100)))
    ]
    response = MetricsResponse(
        uptime_seconds=round(collector.get_uptime().total_seconds(), 1),
        metrics=collector.get_metrics_dict(),
        recent_chats=recent,
    )
    return response.model_dump(by_alias=True)


@app.post("/api/v1/chat", dependencies=[Depends(check_rate_limit)])
def chat(request: ChatRequest):
    """Answer a chat message in normal or max-reliability mode."""
    start_time = time.time()
    try:
        orchestrator = _container.get_orchestrator()
        response = orchestrator.handle(
            message=request.message,
            history=[m.model_dump() for m in request.history],
            user_id=request.user_id,
            mode=request.mode,
        )
    except Exception as e:
        logger.error(f"Chat request failed: {type(e).__name__}: {e}", exc_info=True)
        return _internal_error()

    logger.info(f"Chat {response.type} in {(time.time() - start_time) * 1000:.0f}ms")
    return JSONResponse(status_code=response.status_code, content=response.to_dict())


@app.post("/api/v1/rag-probe", dependencies=[Depends(check_rate_limit)])
def rag_probe(request: RagProbeRequest):
    """Run retrieval only and show what the assistant would cite."""
    message = (request.message or "").strip()
    if not message:
        return JSONResponse(status_code=400, content={"ok": False, "error": "message required"})

    try:
        retriever = _container.get_retriever()
        result = retriever.retrieve(message)
    except Exception as e:
        logger.error(f"RAG probe failed: {type(e).__name__}: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"ok": False, "error": MESSAGES["internal_error"]})

    preview_len = retriever.config.preview_len
    response = RagProbeResponse(
        ok=True,
        total=result.total,
        chunks=[ProbeChunk(**probe_entry(c, preview_len)) for c in result.chunks],
        byCanonicalUsed=result.by_canonical_used if result.asked_canonical else None,
        askedCanonical=result.asked_canonical,
    )
    return response.model_dump(by_alias=True, exclude_none=True)
