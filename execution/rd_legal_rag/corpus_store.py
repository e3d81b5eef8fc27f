"""
Corpus Store with PostgreSQL + pgvector

Persists Dominican legal instruments, their versions and embedded chunks,
plus the enrichment queue. Enforces the two corpus invariants at the
database level:

- at most one VIGENTE version per instrument (partial unique index, and
  demotion of the previous VIGENTE version in the same transaction as the
  insert of a new one);
- content-hash deduplication of versions, scoped to the instrument or
  global.

Similarity search over VIGENTE chunks goes through the
``match_vigente_chunks`` SQL function created by ``initialize_schema``.
"""

import os
import json
import select
import logging
from datetime import date, datetime
from typing import Optional
from dataclasses import dataclass, field

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)

INSTRUMENT_TYPES = ("ley", "decreto", "resolucion", "constitucion")
STATUS_VIGENTE = "VIGENTE"
STATUS_DEROGADA = "DEROGADA"
VERSION_STATUSES = (STATUS_VIGENTE, STATUS_DEROGADA)

DEDUP_SCOPES = ("instrument", "global")


class CorpusStoreError(Exception):
    """Raised when a corpus write or read fails at the persistence layer."""


@dataclass
class CorpusStoreConfig:
    """Configuration for the corpus store."""
    connection_string: Optional[str] = None
    embedding_dimensions: int = 1536
    notify_channel: str = "enrichment_queue"
    # Connection pooling settings
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True  # Set to False for simple single-connection mode


@dataclass
class ChunkCitation:
    """Provenance of a retrieved chunk, as shown to the user."""
    title: str
    source_url: str
    published_date: str
    status: str = STATUS_VIGENTE
    effective_date: Optional[str] = None
    type: Optional[str] = None
    number: Optional[str] = None
    gazette_ref: Optional[str] = None
    canonical_key: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "source_url": self.source_url,
            "published_date": self.published_date,
            "effective_date": self.effective_date,
            "status": self.status,
            "type": self.type,
            "number": self.number,
            "gazette_ref": self.gazette_ref,
            "canonical_key": self.canonical_key,
        }


@dataclass
class VigenteChunk:
    """A chunk of a VIGENTE instrument version with its citation."""
    chunk_index: int
    chunk_text: str
    citation: ChunkCitation
    similarity: Optional[float] = None
    instrument_version_id: Optional[int] = None

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.citation.source_url, self.chunk_index)

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.chunk_index,
            "chunk_text": self.chunk_text,
            "similarity": self.similarity,
            "instrument_version_id": self.instrument_version_id,
            "citation": self.citation.to_dict(),
        }


@dataclass
class VersionInsertResult:
    """Outcome of ``insert_version_if_new``."""
    version_id: int
    created: bool
    skipped: Optional[str] = None  # "dedup" when an identical version exists


@dataclass
class QueueEntry:
    """A row of the corpus enrichment queue."""
    id: int
    query: str
    mode: str
    status: str
    source_url: Optional[str] = None
    title: Optional[str] = None
    canonical_key: Optional[str] = None
    content_hash: Optional[str] = None
    meta: dict = field(default_factory=dict)
    error: Optional[str] = None
    created_at: Optional[str] = None


def _date_str(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _row_dict(row, columns: list[str]) -> dict:
    # Handle both RealDictRow and tuple
    if hasattr(row, "keys"):
        return dict(row)
    return dict(zip(columns, row))


_CHUNK_COLUMNS = [
    "id", "instrument_version_id", "chunk_index", "chunk_text",
    "instrument_title", "instrument_type", "instrument_number",
    "published_date", "effective_date", "status", "source_url",
    "gazette_ref", "canonical_key", "similarity",
]

_QUEUE_COLUMNS = [
    "id", "query", "mode", "status", "source_url", "title",
    "canonical_key", "content_hash", "meta", "error", "created_at",
]


def chunk_from_row(row_dict: dict) -> VigenteChunk:
    """Build a VigenteChunk from a ``match_vigente_chunks``-shaped row."""
    similarity = row_dict.get("similarity")
    return VigenteChunk(
        chunk_index=int(row_dict["chunk_index"]),
        chunk_text=row_dict["chunk_text"],
        similarity=float(similarity) if similarity is not None else None,
        instrument_version_id=row_dict.get("instrument_version_id"),
        citation=ChunkCitation(
            title=row_dict.get("instrument_title") or "",
            source_url=row_dict.get("source_url") or "",
            published_date=_date_str(row_dict.get("published_date")) or "",
            effective_date=_date_str(row_dict.get("effective_date")),
            status=row_dict.get("status") or STATUS_VIGENTE,
            type=row_dict.get("instrument_type"),
            number=row_dict.get("instrument_number"),
            gazette_ref=row_dict.get("gazette_ref"),
            canonical_key=row_dict.get("canonical_key"),
        ),
    )


def _queue_entry_from_row(row_dict: dict) -> QueueEntry:
    meta = row_dict.get("meta") or {}
    if isinstance(meta, str):
        meta = json.loads(meta)
    return QueueEntry(
        id=row_dict["id"],
        query=row_dict["query"],
        mode=row_dict.get("mode") or "normal",
        status=row_dict["status"],
        source_url=row_dict.get("source_url"),
        title=row_dict.get("title"),
        canonical_key=row_dict.get("canonical_key"),
        content_hash=row_dict.get("content_hash"),
        meta=meta,
        error=row_dict.get("error"),
        created_at=_date_str(row_dict.get("created_at")),
    )


class CorpusStore:
    """
    PostgreSQL corpus store with pgvector.

    Features:
    - Get-or-create sources, upsert instruments
    - Versioned instrument text with hash dedup and VIGENTE supersession
    - All-or-nothing chunk replacement per version
    - Cosine similarity search restricted to VIGENTE versions
    - Enrichment queue with LISTEN/NOTIFY wake-up
    """

    def __init__(self, config: Optional[CorpusStoreConfig] = None):
        """
        Initialize corpus store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or CorpusStoreConfig()
        self._conn = None
        self._pool = None
        self._listen_conn = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/rd_legal_rag"
        )

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 not installed. Run: pip install psycopg2-binary"
            )
        from psycopg2.extras import RealDictCursor

        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                conn = self._pool.getconn()
                try:
                    with conn.cursor() as cur:
                        cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    conn.commit()
                finally:
                    self._pool.putconn(conn)
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                self._conn.autocommit = False
                with self._conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                self._conn.commit()
                logger.info("Connected to PostgreSQL with pgvector (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if self._pool:
            return self._pool.getconn()

        if self._conn and self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()

        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        """Ensure we have a connection (pool or single) and return it."""
        if not self._conn and not self._pool:
            self.connect()
        return self._get_connection()

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError) as e:
            logger.debug(f"Rollback on dead connection skipped: {e}")

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.close()
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def _run(self, operation, label: str):
        """Run ``operation`` with retry and surface failures as CorpusStoreError."""
        try:
            return self._execute_with_retry(operation, label)
        except CorpusStoreError:
            raise
        except Exception as e:
            logger.error(f"{label} failed: {e}")
            raise CorpusStoreError(f"{label} failed: {e}") from e

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None
        if self._listen_conn:
            self._listen_conn.close()
            self._listen_conn = None

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables, indexes and the match function if they don't exist."""
        dims = self.config.embedding_dimensions
        schema_sql = f"""
        CREATE TABLE IF NOT EXISTS sources (
            id BIGSERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            base_url TEXT NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (name, base_url)
        );

        CREATE TABLE IF NOT EXISTS instruments (
            id BIGSERIAL PRIMARY KEY,
            canonical_key TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            type TEXT NOT NULL CHECK (type IN ('ley', 'decreto', 'resolucion', 'constitucion')),
            number TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS instrument_versions (
            id BIGSERIAL PRIMARY KEY,
            instrument_id BIGINT NOT NULL REFERENCES instruments(id) ON DELETE CASCADE,
            source_id BIGINT REFERENCES sources(id),
            published_date DATE NOT NULL,
            effective_date DATE,
            status TEXT NOT NULL DEFAULT 'VIGENTE' CHECK (status IN ('VIGENTE', 'DEROGADA')),
            source_url TEXT NOT NULL,
            gazette_ref TEXT,
            content_text TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        -- At most one VIGENTE version per instrument
        CREATE UNIQUE INDEX IF NOT EXISTS uq_versions_one_vigente
            ON instrument_versions(instrument_id) WHERE status = 'VIGENTE';
        CREATE INDEX IF NOT EXISTS idx_versions_hash
            ON instrument_versions(content_hash);
        CREATE INDEX IF NOT EXISTS idx_versions_instrument_hash
            ON instrument_versions(instrument_id, content_hash);

        CREATE TABLE IF NOT EXISTS instrument_chunks (
            id BIGSERIAL PRIMARY KEY,
            instrument_version_id BIGINT NOT NULL
                REFERENCES instrument_versions(id) ON DELETE CASCADE,
            chunk_index INT NOT NULL,
            chunk_text TEXT NOT NULL,
            embedding VECTOR({dims}),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (instrument_version_id, chunk_index)
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_embedding
            ON instrument_chunks
            USING hnsw (embedding vector_cosine_ops);

        CREATE TABLE IF NOT EXISTS corpus_enrichment_queue (
            id BIGSERIAL PRIMARY KEY,
            query TEXT NOT NULL,
            mode TEXT NOT NULL DEFAULT 'normal',
            status TEXT NOT NULL DEFAULT 'PENDING',
            source_url TEXT,
            title TEXT,
            canonical_key TEXT,
            content_hash TEXT,
            meta JSONB DEFAULT '{{}}',
            error TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_queue_status_created
            ON corpus_enrichment_queue(status, created_at);

        CREATE OR REPLACE FUNCTION match_vigente_chunks(
            query_embedding VECTOR({dims}),
            match_count INT
        )
        RETURNS TABLE (
            id BIGINT,
            instrument_version_id BIGINT,
            chunk_index INT,
            chunk_text TEXT,
            instrument_title TEXT,
            instrument_type TEXT,
            instrument_number TEXT,
            published_date DATE,
            effective_date DATE,
            status TEXT,
            source_url TEXT,
            gazette_ref TEXT,
            canonical_key TEXT,
            similarity FLOAT
        )
        LANGUAGE sql STABLE
        AS $$
            SELECT
                c.id,
                c.instrument_version_id,
                c.chunk_index,
                c.chunk_text,
                i.title,
                i.type,
                i.number,
                v.published_date,
                v.effective_date,
                v.status,
                v.source_url,
                v.gazette_ref,
                i.canonical_key,
                1 - (c.embedding <=> query_embedding) AS similarity
            FROM instrument_chunks c
            JOIN instrument_versions v ON v.id = c.instrument_version_id
            JOIN instruments i ON i.id = v.instrument_id
            WHERE v.status = 'VIGENTE'
              AND c.embedding IS NOT NULL
            ORDER BY c.embedding <=> query_embedding
            LIMIT match_count;
        $$;
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()
            logger.info("Corpus schema initialized successfully")

        self._run(_op, "initialize_schema")

    # =========================================================================
    # Sources and instruments
    # =========================================================================

    def ensure_source(self, name: str, base_url: str) -> int:
        """Get-or-create a source by (name, base_url) and return its id."""
        sql = """
        INSERT INTO sources (name, base_url)
        VALUES (%s, %s)
        ON CONFLICT (name, base_url) DO UPDATE SET name = EXCLUDED.name
        RETURNING id
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (name, base_url))
                row = cur.fetchone()
            conn.commit()
            return _row_dict(row, ["id"])["id"]

        return self._run(_op, "ensure_source")

    def upsert_instrument(
        self,
        canonical_key: str,
        title: str,
        type: str,
        number: Optional[str] = None,
    ) -> int:
        """
        Insert an instrument or update the mutable fields of an existing one.

        Args:
            canonical_key: Stable identity (e.g. "LEY-41-08")
            title: Human title
            type: One of ley, decreto, resolucion, constitucion
            number: Instrument number, if any

        Returns:
            Instrument id
        """
        if type not in INSTRUMENT_TYPES:
            raise ValueError(f"Unknown instrument type '{type}'")

        sql = """
        INSERT INTO instruments (canonical_key, title, type, number)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (canonical_key) DO UPDATE SET
            title = EXCLUDED.title,
            type = EXCLUDED.type,
            number = COALESCE(EXCLUDED.number, instruments.number),
            updated_at = NOW()
        RETURNING id
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (canonical_key, title, type, number))
                row = cur.fetchone()
            conn.commit()
            return _row_dict(row, ["id"])["id"]

        return self._run(_op, "upsert_instrument")

    # =========================================================================
    # Versions
    # =========================================================================

    def insert_version_if_new(
        self,
        instrument_id: int,
        source_id: int,
        content_text: str,
        content_hash: str,
        published_date: str,
        source_url: str,
        effective_date: Optional[str] = None,
        gazette_ref: Optional[str] = None,
        status: str = STATUS_VIGENTE,
        dedup_scope: str = "instrument",
    ) -> VersionInsertResult:
        """
        Insert a new version unless an identical one already exists.

        The dedup lookup, the demotion of the previous VIGENTE version and
        the insert run in one transaction, with the instrument row locked,
        so concurrent writers cannot leave two VIGENTE versions behind.

        Args:
            instrument_id: Owning instrument
            source_id: Source the text came from
            content_text: Normalized text
            content_hash: SHA-256 of the normalized text
            published_date: ISO date
            source_url: Where the text was obtained
            effective_date: Optional ISO date
            gazette_ref: Optional Gaceta Oficial reference
            status: VIGENTE or DEROGADA
            dedup_scope: "instrument" or "global"

        Returns:
            VersionInsertResult (created, or skipped="dedup" with the existing id)
        """
        if status not in VERSION_STATUSES:
            raise ValueError(f"Unknown version status '{status}'")
        if dedup_scope not in DEDUP_SCOPES:
            raise ValueError(f"dedup_scope must be one of {DEDUP_SCOPES}, got '{dedup_scope}'")

        if dedup_scope == "global":
            dedup_sql = "SELECT id FROM instrument_versions WHERE content_hash = %s ORDER BY id LIMIT 1"
            dedup_params = (content_hash,)
        else:
            dedup_sql = (
                "SELECT id FROM instrument_versions "
                "WHERE instrument_id = %s AND content_hash = %s ORDER BY id LIMIT 1"
            )
            dedup_params = (instrument_id, content_hash)

        insert_sql = """
        INSERT INTO instrument_versions
            (instrument_id, source_id, published_date, effective_date, status,
             source_url, gazette_ref, content_text, content_hash)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM instruments WHERE id = %s FOR UPDATE", (instrument_id,))
                cur.execute(dedup_sql, dedup_params)
                existing = cur.fetchone()
                if existing:
                    conn.commit()
                    version_id = _row_dict(existing, ["id"])["id"]
                    logger.info(f"Version dedup for instrument {instrument_id}: existing version {version_id}")
                    return VersionInsertResult(version_id=version_id, created=False, skipped="dedup")

                if status == STATUS_VIGENTE:
                    cur.execute(
                        "UPDATE instrument_versions SET status = %s "
                        "WHERE instrument_id = %s AND status = %s",
                        (STATUS_DEROGADA, instrument_id, STATUS_VIGENTE),
                    )
                    if cur.rowcount:
                        logger.info(f"Demoted {cur.rowcount} VIGENTE version(s) of instrument {instrument_id}")

                cur.execute(insert_sql, (
                    instrument_id, source_id, published_date, effective_date, status,
                    source_url, gazette_ref, content_text, content_hash,
                ))
                row = cur.fetchone()
            conn.commit()
            version_id = _row_dict(row, ["id"])["id"]
            logger.info(f"Inserted version {version_id} ({status}) for instrument {instrument_id}")
            return VersionInsertResult(version_id=version_id, created=True)

        return self._run(_op, "insert_version_if_new")

    def find_version_by_hash(self, content_hash: str) -> Optional[int]:
        """Return the id of any version with this content hash (global scope)."""

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id FROM instrument_versions WHERE content_hash = %s ORDER BY id LIMIT 1",
                    (content_hash,),
                )
                row = cur.fetchone()
            return _row_dict(row, ["id"])["id"] if row else None

        return self._run(_op, "find_version_by_hash")

    def count_vigente_versions(self, instrument_id: int) -> int:
        """Count VIGENTE versions of an instrument (0 or 1 when the invariant holds)."""

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS count FROM instrument_versions "
                    "WHERE instrument_id = %s AND status = %s",
                    (instrument_id, STATUS_VIGENTE),
                )
                row = cur.fetchone()
            return int(_row_dict(row, ["count"])["count"])

        return self._run(_op, "count_vigente_versions")

    # =========================================================================
    # Chunks
    # =========================================================================

    def replace_chunks(
        self,
        version_id: int,
        chunks: list[tuple[int, str, list[float]]],
    ) -> int:
        """
        Replace every chunk of a version with a new ordered set.

        Delete and bulk insert share one transaction: if the insert fails,
        the previous chunk set is left untouched.

        Args:
            version_id: Instrument version id
            chunks: (chunk_index, chunk_text, embedding) triples

        Returns:
            Number of chunks inserted
        """
        from psycopg2.extras import execute_values

        sql = """
        INSERT INTO instrument_chunks (instrument_version_id, chunk_index, chunk_text, embedding)
        VALUES %s
        """
        values = [
            (version_id, index, text, embedding)
            for index, text, embedding in chunks
        ]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM instrument_chunks WHERE instrument_version_id = %s",
                    (version_id,),
                )
                if values:
                    execute_values(
                        cur,
                        sql,
                        values,
                        template="(%s, %s, %s, %s::vector)",
                        page_size=500,
                    )
            conn.commit()
            logger.info(f"Replaced chunks of version {version_id}: {len(values)} inserted")
            return len(values)

        return self._run(_op, "replace_chunks")

    def count_chunks(self, version_id: int) -> int:
        """Count chunks stored for a version."""

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS count FROM instrument_chunks WHERE instrument_version_id = %s",
                    (version_id,),
                )
                row = cur.fetchone()
            return int(_row_dict(row, ["count"])["count"])

        return self._run(_op, "count_chunks")

    # =========================================================================
    # Search
    # =========================================================================

    def search_vigente(self, query_embedding: list[float], top_k: int = 8) -> list[VigenteChunk]:
        """
        Semantic search restricted to VIGENTE versions.

        Args:
            query_embedding: Query embedding vector
            top_k: Number of results to return

        Returns:
            Chunks ordered by descending cosine similarity
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM match_vigente_chunks(%s::vector, %s)",
                    (query_embedding, top_k),
                )
                rows = cur.fetchall()
            return [chunk_from_row(_row_dict(row, _CHUNK_COLUMNS)) for row in rows]

        return self._run(_op, "search_vigente")

    def search_by_canonical_key(
        self,
        canonical_key: str,
        top_k: int = 8,
        query_embedding: Optional[list[float]] = None,
    ) -> list[VigenteChunk]:
        """
        Fetch chunks of the VIGENTE version of one instrument.

        Ranked by similarity to ``query_embedding`` when given, otherwise in
        document order.
        """
        if query_embedding is not None:
            similarity_sql = "1 - (c.embedding <=> %s::vector)"
            order_sql = "c.embedding <=> %s::vector"
            params = [query_embedding, canonical_key, STATUS_VIGENTE, query_embedding, top_k]
        else:
            similarity_sql = "NULL::float"
            order_sql = "c.chunk_index"
            params = [canonical_key, STATUS_VIGENTE, top_k]

        sql = f"""
        SELECT
            c.id,
            c.instrument_version_id,
            c.chunk_index,
            c.chunk_text,
            i.title AS instrument_title,
            i.type AS instrument_type,
            i.number AS instrument_number,
            v.published_date,
            v.effective_date,
            v.status,
            v.source_url,
            v.gazette_ref,
            i.canonical_key,
            {similarity_sql} AS similarity
        FROM instrument_chunks c
        JOIN instrument_versions v ON v.id = c.instrument_version_id
        JOIN instruments i ON i.id = v.instrument_id
        WHERE i.canonical_key = %s AND v.status = %s
        ORDER BY {order_sql}
        LIMIT %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [chunk_from_row(_row_dict(row, _CHUNK_COLUMNS)) for row in rows]

        return self._run(_op, "search_by_canonical_key")

    def sample_vigente_embedding(self) -> Optional[list[float]]:
        """Return the embedding of any VIGENTE chunk, or None if the corpus is empty."""

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT c.embedding::text AS embedding
                    FROM instrument_chunks c
                    JOIN instrument_versions v ON v.id = c.instrument_version_id
                    WHERE v.status = %s AND c.embedding IS NOT NULL
                    LIMIT 1
                    """,
                    (STATUS_VIGENTE,),
                )
                row = cur.fetchone()
            if not row:
                return None
            # pgvector renders vectors as "[0.1,0.2,...]"
            return json.loads(_row_dict(row, ["embedding"])["embedding"])

        return self._run(_op, "sample_vigente_embedding")

    # =========================================================================
    # Enrichment queue
    # =========================================================================

    def enqueue(self, query: str, mode: str = "normal", notify: bool = True) -> int:
        """
        Insert a PENDING queue entry.

        When ``notify`` is set, a NOTIFY on the queue channel is issued in
        the same transaction, so listeners only wake once the row is visible.
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO corpus_enrichment_queue (query, mode, status) "
                    "VALUES (%s, %s, 'PENDING') RETURNING id",
                    (query, mode),
                )
                entry_id = _row_dict(cur.fetchone(), ["id"])["id"]
                if notify:
                    cur.execute(
                        "SELECT pg_notify(%s, %s)",
                        (self.config.notify_channel, str(entry_id)),
                    )
            conn.commit()
            logger.info(f"Enqueued enrichment entry {entry_id} (mode={mode})")
            return entry_id

        return self._run(_op, "enqueue")

    def fetch_pending(self, limit: int = 5) -> list[QueueEntry]:
        """Return up to ``limit`` PENDING entries, oldest first."""
        sql = f"""
        SELECT {', '.join(_QUEUE_COLUMNS)}
        FROM corpus_enrichment_queue
        WHERE status = 'PENDING'
        ORDER BY created_at ASC, id ASC
        LIMIT %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (limit,))
                rows = cur.fetchall()
            return [_queue_entry_from_row(_row_dict(row, _QUEUE_COLUMNS)) for row in rows]

        return self._run(_op, "fetch_pending")

    def update_queue_entry(
        self,
        entry_id: int,
        status: str,
        source_url: Optional[str] = None,
        title: Optional[str] = None,
        canonical_key: Optional[str] = None,
        content_hash: Optional[str] = None,
        meta: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Move a queue entry to ``status`` and record any provided fields.

        ``meta`` is merged into the stored JSON object; other fields are only
        written when not None.
        """
        assignments = ["status = %s", "updated_at = NOW()"]
        params: list = [status]
        for column, value in (
            ("source_url", source_url),
            ("title", title),
            ("canonical_key", canonical_key),
            ("content_hash", content_hash),
            ("error", error),
        ):
            if value is not None:
                assignments.append(f"{column} = %s")
                params.append(value)
        if meta is not None:
            assignments.append("meta = COALESCE(meta, '{}'::jsonb) || %s::jsonb")
            params.append(json.dumps(meta, ensure_ascii=False))
        params.append(entry_id)

        sql = f"UPDATE corpus_enrichment_queue SET {', '.join(assignments)} WHERE id = %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()
            logger.debug(f"Queue entry {entry_id} -> {status}")

        self._run(_op, "update_queue_entry")

    def wait_for_enqueue(self, timeout: float) -> bool:
        """
        Block until an enqueue notification arrives or ``timeout`` elapses.

        Uses a dedicated autocommit connection that LISTENs on the queue
        channel.

        Returns:
            True if at least one notification was received
        """
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 not installed. Run: pip install psycopg2-binary"
            )
        if self._listen_conn is None or self._listen_conn.closed:
            self._listen_conn = psycopg2.connect(self._connection_string)
            self._listen_conn.autocommit = True
            with self._listen_conn.cursor() as cur:
                cur.execute(f"LISTEN {self.config.notify_channel}")
            logger.info(f"Listening on channel '{self.config.notify_channel}'")

        ready, _, _ = select.select([self._listen_conn], [], [], timeout)
        if not ready:
            return False
        self._listen_conn.poll()
        received = bool(self._listen_conn.notifies)
        self._listen_conn.notifies.clear()
        return received
