"""
In-process metrics for the Dominican Legal RAG Assistant.

One collector per process counts chat outcomes per mode, the answer of each
model in the multi-agent fan-out, queries deferred to enrichment, the
terminal status of each queue entry and documents ingested. Nothing is
persisted; a restart starts from zero.
"""

import time
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

logger = logging.getLogger(__name__)

LATENCY_WINDOW = 1000
RECENT_CHATS = 1000
QUERY_PREVIEW_CHARS = 200


@dataclass
class ChatMetrics:
    """One handled chat turn."""
    request_id: str
    mode: str
    query_text: str
    start_time: float
    latency_ms: float = 0
    outcome: str = "unknown"  # answer | clarify | reject | deferred | degraded
    chunks_count: int = 0
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    total_chats: int = 0
    successful_chats: int = 0
    failed_chats: int = 0
    total_latency_ms: float = 0
    latencies: list = field(default_factory=list)  # last LATENCY_WINDOW chats
    outcomes: Counter = field(default_factory=Counter)
    chats_by_mode: Counter = field(default_factory=Counter)

    agent_successes: Counter = field(default_factory=Counter)
    agent_failures: Counter = field(default_factory=Counter)

    enrichment_enqueued: int = 0
    enrichment_by_status: Counter = field(default_factory=Counter)

    documents_ingested: int = 0
    documents_deduplicated: int = 0
    chunks_created: int = 0
    total_ingestion_time_ms: float = 0

    errors_by_type: Counter = field(default_factory=Counter)

    def _per_chat(self, value: float) -> float:
        return value / self.total_chats if self.total_chats else 0

    @property
    def avg_latency_ms(self) -> float:
        return self._per_chat(self.total_latency_ms)

    @property
    def p95_latency_ms(self) -> float:
        """Nearest-rank 95th percentile over the latency window."""
        if not self.latencies:
            return 0
        ranked = sorted(self.latencies)
        return ranked[min(int(len(ranked) * 0.95), len(ranked) - 1)]

    @property
    def deferral_rate(self) -> float:
        """Share of chats that ended in the enrichment deferral."""
        return self._per_chat(self.outcomes.get("deferred", 0))

    @property
    def error_rate(self) -> float:
        return self._per_chat(self.failed_chats)

    def to_dict(self) -> dict:
        window = self.latencies or [0]
        avg_ingest = self.total_ingestion_time_ms / max(self.documents_ingested, 1)
        return {
            "chats": {
                "total": self.total_chats,
                "successful": self.successful_chats,
                "failed": self.failed_chats,
                "error_rate": f"{self.error_rate:.2%}",
                "by_mode": dict(self.chats_by_mode),
                "outcomes": dict(self.outcomes),
                "deferral_rate": f"{self.deferral_rate:.2%}",
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(min(window), 2),
                "max": round(max(window), 2),
                "p95": round(self.p95_latency_ms, 2),
            },
            "agents": {
                "successes": dict(self.agent_successes),
                "failures": dict(self.agent_failures),
            },
            "enrichment": {
                "enqueued": self.enrichment_enqueued,
                "by_status": dict(self.enrichment_by_status),
            },
            "ingestion": {
                "documents": self.documents_ingested,
                "deduplicated": self.documents_deduplicated,
                "chunks": self.chunks_created,
                "avg_time_ms": round(avg_ingest, 2),
            },
            "errors": dict(self.errors_by_type),
        }


class ChatTracker:
    """
    Times one chat turn and hands it to the collector on exit.

    An exception raised inside the block is counted by type and re-raised.
    """

    def __init__(self, collector: "MetricsCollector", mode: str, query_text: str):
        self.collector = collector
        started = time.time()
        self.chat = ChatMetrics(
            request_id=f"c_{int(started * 1000)}",
            mode=mode,
            query_text=query_text[:QUERY_PREVIEW_CHARS],
            start_time=started,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.chat.latency_ms = (time.time() - self.chat.start_time) * 1000
        if exc_type is not None:
            self.chat.error = str(exc_val)
            self.collector._record_error(exc_type.__name__)
        self.collector._record_chat(self.chat)
        return False

    def set_outcome(self, outcome: str, chunks_count: int = 0):
        self.chat.outcome = outcome
        self.chat.chunks_count = chunks_count


class MetricsCollector:
    """
    Process-wide metrics sink. Every ``MetricsCollector()`` call returns the
    same object.

        with get_metrics_collector().track_chat("normal", message) as tracker:
            ...
            tracker.set_outcome("answer", chunks_count=len(chunks))
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            instance = super().__new__(cls)
            instance.reset()
            cls._instance = instance
        return cls._instance

    def reset(self):
        """Drop every counter and restart the uptime clock."""
        self.metrics = SystemMetrics()
        self._recent: deque[ChatMetrics] = deque(maxlen=RECENT_CHATS)
        self._started_at = datetime.now()

    # -- chat turns --

    def track_chat(self, mode: str, query_text: str) -> ChatTracker:
        return ChatTracker(self, mode, query_text)

    def _record_chat(self, chat: ChatMetrics):
        m = self.metrics
        m.total_chats += 1
        if chat.error:
            m.failed_chats += 1
        else:
            m.successful_chats += 1

        m.total_latency_ms += chat.latency_ms
        m.latencies.append(chat.latency_ms)
        del m.latencies[:-LATENCY_WINDOW]

        m.outcomes[chat.outcome] += 1
        m.chats_by_mode[chat.mode] += 1
        self._recent.append(chat)
        logger.debug(
            f"Chat {chat.request_id} mode={chat.mode} outcome={chat.outcome} "
            f"latency={chat.latency_ms:.0f}ms"
        )

    def _record_error(self, error_type: str):
        self.metrics.errors_by_type[error_type] += 1

    def record_agent_results(self, results) -> None:
        """Count each fan-out answer (objects with ``agent`` and ``ok``) per model."""
        for r in results:
            bucket = self.metrics.agent_successes if r.ok else self.metrics.agent_failures
            bucket[r.agent] += 1

    # -- enrichment and ingestion --

    def record_enqueue(self):
        self.metrics.enrichment_enqueued += 1

    def record_enrichment(self, status: str):
        """Count a queue entry that reached ``status``."""
        self.metrics.enrichment_by_status[status] += 1

    def record_ingestion(self, created: bool, chunks_count: int, duration_ms: float):
        """A new version adds its chunks and timing; a dedup hit only counts itself."""
        if not created:
            self.metrics.documents_deduplicated += 1
            return
        self.metrics.documents_ingested += 1
        self.metrics.chunks_created += chunks_count
        self.metrics.total_ingestion_time_ms += duration_ms

    # -- reads --

    def get_metrics(self) -> SystemMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        return self.metrics.to_dict()

    def get_recent_chats(self, limit: int = 10) -> list[ChatMetrics]:
        return list(self._recent)[-limit:]

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._started_at


_collector = None


def get_metrics_collector() -> MetricsCollector:
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
