"""
PostgreSQL + pgvector implementation of MemoryStore.

Schema:
  - sessions / turns / memories hold the conversation and extracted facts
  - turn_embeddings / memory_embeddings hold one vector per owner row and
    are removed with it (ON DELETE CASCADE)

Similarity uses pgvector's cosine distance operator (`<=>`), so the score
returned is `1 - distance`, i.e. plain cosine similarity. Keyword ranking
uses PostgreSQL full-text search (`ts_rank` over an OR-joined tsquery).

Each thread gets its own connection: retrieval fans out two searches in
parallel and a background reflection may be writing at the same time, and
a psycopg connection can only carry one transaction at a time.
"""

import logging
import re
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .store import (
    Memory,
    MemoryStore,
    Role,
    ScoredRow,
    SearchTable,
    Session,
    Turn,
    check_confidence,
    check_memory_content,
)
from .vector_utils import to_pgvector_literal

logger = logging.getLogger(__name__)

_TSQUERY_TERM_RE = re.compile(r"[^\w]+", re.UNICODE)

# Fixed SQL fragments per searchable table (never built from input)
_VECTOR_SOURCES = {
    SearchTable.TURNS: (
        "turn_embeddings e JOIN turns o ON o.id = e.turn_id",
        "o.role",
    ),
    SearchTable.MEMORIES: (
        "memory_embeddings e JOIN memories o ON o.id = e.memory_id",
        "NULL",
    ),
}
_KEYWORD_SOURCES = {
    SearchTable.TURNS: ("turns o", "o.role"),
    SearchTable.MEMORIES: ("memories o", "NULL"),
}
_EMBEDDING_INSERTS = {
    SearchTable.TURNS: (
        "INSERT INTO turn_embeddings (turn_id, session_id, vector) "
        "VALUES (%s, %s, %s::vector)"
    ),
    SearchTable.MEMORIES: (
        "INSERT INTO memory_embeddings (memory_id, session_id, vector) "
        "VALUES (%s, %s, %s::vector)"
    ),
}


def _default_connect(conninfo: str):
    from psycopg import Connection
    from psycopg.rows import dict_row

    return Connection.connect(
        conninfo,
        autocommit=True,
        prepare_threshold=0,
        row_factory=dict_row,
    )


def build_tsquery(terms: list[str]) -> str:
    """OR-join terms into a to_tsquery expression, dropping tsquery operators."""
    cleaned = []
    for term in terms:
        for part in _TSQUERY_TERM_RE.split(term.lower()):
            if part and part not in cleaned:
                cleaned.append(part)
    return " | ".join(cleaned)


def _role(value) -> Optional[Role]:
    return Role(value) if value else None


class PostgresMemoryStore(MemoryStore):
    """MemoryStore backed by PostgreSQL with the pgvector extension."""

    def __init__(
        self,
        conninfo: str,
        dimensions: int = 0,
        connect: Optional[Callable[[str], object]] = None,
    ):
        self._conninfo = conninfo
        self.dimensions = dimensions
        self._connect = connect or _default_connect
        self._local = threading.local()
        self._connections: list = []
        self._connections_lock = threading.Lock()
        self._setup_schema()

    # ── Connections ──

    def _conn(self):
        conn = getattr(self._local, "conn", None)
        if conn is None or getattr(conn, "closed", False):
            conn = self._connect(self._conninfo)
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def close(self):
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except Exception as e:
                    logger.warning("Failed to close connection: %s", e)
            self._connections.clear()

    @contextmanager
    def transaction(self) -> Iterator["PostgresMemoryStore"]:
        with self._conn().transaction():
            yield self

    def _execute(self, sql: str, params=None):
        cur = self._conn().cursor()
        cur.execute(sql, params)
        return cur

    def _setup_schema(self):
        """Create tables and indexes if they do not exist yet."""
        vector_type = f"vector({int(self.dimensions)})" if self.dimensions else "vector"
        with self._conn().cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
            cur.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS turns (
                    id BIGSERIAL PRIMARY KEY,
                    session_id TEXT NOT NULL REFERENCES sessions (id) ON DELETE CASCADE,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                    content TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_turns_session_created
                ON turns (session_id, created_at)
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_turns_content_fts
                ON turns USING GIN (to_tsvector('english', content))
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id BIGSERIAL PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    content TEXT NOT NULL CHECK (btrim(content) <> ''),
                    category TEXT,
                    confidence REAL NOT NULL DEFAULT 1.0
                        CHECK (confidence >= 0 AND confidence <= 1),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CHECK (updated_at >= created_at)
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_session_created
                ON memories (session_id, created_at)
            """)
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS turn_embeddings (
                    turn_id BIGINT PRIMARY KEY REFERENCES turns (id) ON DELETE CASCADE,
                    session_id TEXT NOT NULL,
                    vector {vector_type} NOT NULL
                )
            """)
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS memory_embeddings (
                    memory_id BIGINT PRIMARY KEY REFERENCES memories (id) ON DELETE CASCADE,
                    session_id TEXT NOT NULL,
                    vector {vector_type} NOT NULL
                )
            """)

    # ── Search ──

    def search_by_vector(
        self,
        table: SearchTable,
        vector: list[float],
        *,
        session_id: Optional[str] = None,
        exclude_session_id: Optional[str] = None,
        threshold: float = 0.0,
        limit: int = 10,
    ) -> list[ScoredRow]:
        literal = to_pgvector_literal(vector, self.dimensions)
        if limit <= 0:
            return []
        source, role_column = _VECTOR_SOURCES[SearchTable(table)]
        conditions = ["1 - (e.vector <=> %(vector)s::vector) >= %(threshold)s"]
        params = {"vector": literal, "threshold": threshold, "limit": limit}
        if session_id is not None:
            conditions.append("e.session_id = %(session_id)s")
            params["session_id"] = session_id
        if exclude_session_id is not None:
            conditions.append("e.session_id <> %(exclude_session_id)s")
            params["exclude_session_id"] = exclude_session_id

        sql = f"""
            SELECT o.id, o.session_id, o.content, {role_column} AS role,
                   1 - (e.vector <=> %(vector)s::vector) AS score
            FROM {source}
            WHERE {" AND ".join(conditions)}
            ORDER BY e.vector <=> %(vector)s::vector
            LIMIT %(limit)s
        """
        with self._execute(sql, params) as cur:
            return self._rows_to_results(cur.fetchall())

    def search_by_keywords(
        self,
        table: SearchTable,
        terms: list[str],
        *,
        exclude_session_id: Optional[str] = None,
        threshold: float = 0.0,
        limit: int = 10,
    ) -> list[ScoredRow]:
        tsquery = build_tsquery(terms)
        if not tsquery or limit <= 0:
            return []
        source, role_column = _KEYWORD_SOURCES[SearchTable(table)]
        conditions = [
            "to_tsvector('english', o.content) @@ q.query",
            "ts_rank(to_tsvector('english', o.content), q.query) >= %(threshold)s",
        ]
        params = {"tsquery": tsquery, "threshold": threshold, "limit": limit}
        if exclude_session_id is not None:
            conditions.append("o.session_id <> %(exclude_session_id)s")
            params["exclude_session_id"] = exclude_session_id

        sql = f"""
            WITH q AS (SELECT to_tsquery('english', %(tsquery)s) AS query)
            SELECT o.id, o.session_id, o.content, {role_column} AS role,
                   ts_rank(to_tsvector('english', o.content), q.query) AS score
            FROM {source}, q
            WHERE {" AND ".join(conditions)}
            ORDER BY score DESC
            LIMIT %(limit)s
        """
        with self._execute(sql, params) as cur:
            return self._rows_to_results(cur.fetchall())

    @staticmethod
    def _rows_to_results(rows) -> list[ScoredRow]:
        return [
            ScoredRow(
                id=row["id"],
                session_id=row["session_id"],
                content=row["content"],
                score=float(row["score"]),
                role=_role(row.get("role")),
            )
            for row in rows
        ]

    # ── Sessions & turns ──

    def upsert_session(self, session_id: str, title: str = "") -> Session:
        with self._execute(
            """
            INSERT INTO sessions (id, title) VALUES (%s, %s)
            ON CONFLICT (id) DO UPDATE SET id = EXCLUDED.id
            RETURNING id, title, created_at, updated_at
            """,
            (session_id, title[:100]),
        ) as cur:
            row = cur.fetchone()
        return Session(
            id=row["id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def add_turn(self, session_id: str, role: Role, content: str) -> Turn:
        role = Role(role)
        with self._execute(
            """
            INSERT INTO turns (session_id, role, content) VALUES (%s, %s, %s)
            RETURNING id, session_id, role, content, created_at
            """,
            (session_id, role.value, content),
        ) as cur:
            row = cur.fetchone()
        self._execute(
            "UPDATE sessions SET updated_at = %s WHERE id = %s",
            (row["created_at"], session_id),
        ).close()
        return Turn(
            id=row["id"],
            session_id=row["session_id"],
            role=Role(row["role"]),
            content=row["content"],
            created_at=row["created_at"],
        )

    def add_embedding(
        self,
        table: SearchTable,
        owner_id: int,
        session_id: str,
        vector: list[float],
    ) -> None:
        literal = to_pgvector_literal(vector, self.dimensions)
        self._execute(
            _EMBEDDING_INSERTS[SearchTable(table)],
            (owner_id, session_id, literal),
        ).close()

    def list_turns(self, session_id: str) -> list[Turn]:
        with self._execute(
            """
            SELECT id, session_id, role, content, created_at FROM turns
            WHERE session_id = %s
            ORDER BY created_at ASC, id ASC
            """,
            (session_id,),
        ) as cur:
            return [self._row_to_turn(r) for r in cur.fetchall()]

    def recent_turns(self, session_id: str, limit: int) -> list[Turn]:
        if limit <= 0:
            return []
        with self._execute(
            """
            SELECT id, session_id, role, content, created_at FROM turns
            WHERE session_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (session_id, limit),
        ) as cur:
            rows = cur.fetchall()
        return [self._row_to_turn(r) for r in reversed(rows)]

    @staticmethod
    def _row_to_turn(row) -> Turn:
        return Turn(
            id=row["id"],
            session_id=row["session_id"],
            role=Role(row["role"]),
            content=row["content"],
            created_at=row["created_at"],
        )

    def recent_sessions(self, limit: int = 50) -> list[Session]:
        with self._execute(
            """
            SELECT s.id, s.title, s.created_at, s.updated_at,
                   (SELECT count(*) FROM turns t WHERE t.session_id = s.id) AS message_count
            FROM sessions s
            ORDER BY s.updated_at DESC
            LIMIT %s
            """,
            (limit,),
        ) as cur:
            rows = cur.fetchall()
        return [
            Session(
                id=r["id"],
                title=r["title"] or "Untitled Session",
                created_at=r["created_at"],
                updated_at=r["updated_at"],
                message_count=int(r["message_count"]),
            )
            for r in rows
        ]

    def delete_session(self, session_id: str) -> None:
        with self.transaction():
            self._execute("DELETE FROM memories WHERE session_id = %s", (session_id,)).close()
            self._execute("DELETE FROM sessions WHERE id = %s", (session_id,)).close()
        logger.info("Deleted session %s", session_id)

    # ── Memories ──

    def create_memory(
        self,
        session_id: str,
        content: str,
        category: Optional[str] = None,
        confidence: float = 1.0,
    ) -> Memory:
        content = check_memory_content(content)
        check_confidence(confidence)
        with self._execute(
            """
            INSERT INTO memories (session_id, content, category, confidence)
            VALUES (%s, %s, %s, %s)
            RETURNING id, session_id, content, category, confidence, created_at, updated_at
            """,
            (session_id, content, category, confidence),
        ) as cur:
            return self._row_to_memory(cur.fetchone())

    def update_memory(self, memory_id: int, content: str) -> bool:
        content = check_memory_content(content)
        with self._execute(
            """
            UPDATE memories
            SET content = %s, updated_at = GREATEST(now(), created_at)
            WHERE id = %s
            """,
            (content, memory_id),
        ) as cur:
            return cur.rowcount > 0

    def get_memory(self, memory_id: int) -> Optional[Memory]:
        with self._execute(
            """
            SELECT id, session_id, content, category, confidence, created_at, updated_at
            FROM memories WHERE id = %s
            """,
            (memory_id,),
        ) as cur:
            row = cur.fetchone()
        return self._row_to_memory(row) if row else None

    def recent_memories(
        self,
        session_id: Optional[str] = None,
        limit: int = 20,
        order_by: str = "created_at",
    ) -> list[Memory]:
        if order_by not in ("created_at", "updated_at"):
            raise ValueError(f"Unsupported order_by: {order_by}")
        if limit <= 0:
            return []
        where = "WHERE session_id = %(session_id)s" if session_id is not None else ""
        with self._execute(
            f"""
            SELECT id, session_id, content, category, confidence, created_at, updated_at
            FROM memories
            {where}
            ORDER BY {order_by} DESC, id DESC
            LIMIT %(limit)s
            """,
            {"session_id": session_id, "limit": limit},
        ) as cur:
            return [self._row_to_memory(r) for r in cur.fetchall()]

    @staticmethod
    def _row_to_memory(row) -> Memory:
        return Memory(
            id=row["id"],
            session_id=row["session_id"],
            content=row["content"],
            category=row["category"],
            confidence=float(row["confidence"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
