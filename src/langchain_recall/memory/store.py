"""
Persistence model for sessions, turns, long-term memories and their embeddings.

`MemoryStore` is the contract the retriever, pipeline and orchestrator
depend on. `InMemoryStore` implements it in-process (used when no
PostgreSQL is configured, and in tests); `PostgresMemoryStore` in
`pg_store.py` implements it on pgvector.
"""

import copy
import logging
import re
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from .vector_utils import cosine_similarity, validate_vector

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SearchTable(str, Enum):
    TURNS = "turns"
    MEMORIES = "memories"


@dataclass
class Session:
    id: str
    title: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    message_count: int = 0


@dataclass(frozen=True)
class Turn:
    id: int
    session_id: str
    role: Role
    content: str
    created_at: datetime

    def to_message(self) -> BaseMessage:
        if self.role == Role.USER:
            return HumanMessage(content=self.content)
        return AIMessage(content=self.content)


@dataclass
class Memory:
    id: int
    session_id: str
    content: str
    category: Optional[str] = None
    confidence: float = 1.0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        check_memory_content(self.content)
        check_confidence(self.confidence)
        if self.updated_at < self.created_at:
            raise ValueError("Memory updated_at must not precede created_at")


@dataclass(frozen=True)
class ScoredRow:
    """One search hit. `role` is set for turns only."""

    id: int
    session_id: str
    content: str
    score: float
    role: Optional[Role] = None


def check_memory_content(content: str) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValueError("Memory content must be a non-empty string")
    return content.strip()


def check_confidence(confidence: float) -> float:
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"Memory confidence must be in [0, 1], got {confidence}")
    return confidence


def tokenize(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


class MemoryStore(ABC):
    """Relational store with vector and full-text search."""

    @abstractmethod
    def transaction(self):
        """Context manager; everything inside commits or rolls back together."""

    # ── Search ──

    @abstractmethod
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
        """Rows whose cosine similarity to `vector` is >= threshold, best first."""

    @abstractmethod
    def search_by_keywords(
        self,
        table: SearchTable,
        terms: list[str],
        *,
        exclude_session_id: Optional[str] = None,
        threshold: float = 0.0,
        limit: int = 10,
    ) -> list[ScoredRow]:
        """Rows matching any of `terms`, ranked by full-text relevance."""

    # ── Sessions & turns ──

    @abstractmethod
    def upsert_session(self, session_id: str, title: str = "") -> Session: ...

    @abstractmethod
    def add_turn(self, session_id: str, role: Role, content: str) -> Turn: ...

    @abstractmethod
    def add_embedding(
        self,
        table: SearchTable,
        owner_id: int,
        session_id: str,
        vector: list[float],
    ) -> None: ...

    @abstractmethod
    def list_turns(self, session_id: str) -> list[Turn]:
        """All turns of a session, oldest first."""

    @abstractmethod
    def recent_turns(self, session_id: str, limit: int) -> list[Turn]:
        """The `limit` newest turns of a session, returned oldest first."""

    @abstractmethod
    def recent_sessions(self, limit: int = 50) -> list[Session]: ...

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        """Delete a session with its turns, memories and embeddings."""

    def close(self) -> None:
        """Release connections. Nothing to release by default."""

    # ── Memories ──

    @abstractmethod
    def create_memory(
        self,
        session_id: str,
        content: str,
        category: Optional[str] = None,
        confidence: float = 1.0,
    ) -> Memory: ...

    @abstractmethod
    def update_memory(self, memory_id: int, content: str) -> bool:
        """Rewrite a memory's content and bump updated_at. False if it does not exist."""

    @abstractmethod
    def get_memory(self, memory_id: int) -> Optional[Memory]: ...

    @abstractmethod
    def recent_memories(
        self,
        session_id: Optional[str] = None,
        limit: int = 20,
        order_by: str = "created_at",
    ) -> list[Memory]:
        """Newest memories first; `session_id=None` means all sessions."""


class InMemoryStore(MemoryStore):
    """
    Thread-safe in-process store.

    Keyword rank is the fraction of query terms found in the content, which
    keeps the same "higher is better, 0 means no match" shape as ts_rank.
    """

    def __init__(self, dimensions: int = 0):
        self.dimensions = dimensions
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._turns: dict[int, Turn] = {}
        self._memories: dict[int, Memory] = {}
        # table -> owner_id -> (session_id, vector)
        self._embeddings: dict[SearchTable, dict[int, tuple[str, list[float]]]] = {
            SearchTable.TURNS: {},
            SearchTable.MEMORIES: {},
        }
        self._next_turn_id = 1
        self._next_memory_id = 1

    def _snapshot(self):
        return copy.deepcopy((
            self._sessions, self._turns, self._memories, self._embeddings,
            self._next_turn_id, self._next_memory_id,
        ))

    def _restore(self, snapshot):
        (
            self._sessions, self._turns, self._memories, self._embeddings,
            self._next_turn_id, self._next_memory_id,
        ) = snapshot

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise

    def _content_for(self, table: SearchTable, owner_id: int):
        if table == SearchTable.TURNS:
            turn = self._turns.get(owner_id)
            return (turn.content, turn.role) if turn else None
        memory = self._memories.get(owner_id)
        return (memory.content, None) if memory else None

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
        vector = validate_vector(vector, self.dimensions)
        if limit <= 0:
            return []
        with self._lock:
            rows = []
            for owner_id, (owner_session, stored) in self._embeddings[table].items():
                if session_id is not None and owner_session != session_id:
                    continue
                if exclude_session_id is not None and owner_session == exclude_session_id:
                    continue
                found = self._content_for(table, owner_id)
                if found is None:
                    continue
                score = cosine_similarity(vector, stored)
                if score < threshold:
                    continue
                content, role = found
                rows.append(ScoredRow(owner_id, owner_session, content, score, role))
        rows.sort(key=lambda r: r.score, reverse=True)
        return rows[:limit]

    def search_by_keywords(
        self,
        table: SearchTable,
        terms: list[str],
        *,
        exclude_session_id: Optional[str] = None,
        threshold: float = 0.0,
        limit: int = 10,
    ) -> list[ScoredRow]:
        wanted = {t.lower() for t in terms if t.strip()}
        if not wanted or limit <= 0:
            return []
        with self._lock:
            if table == SearchTable.TURNS:
                candidates = [
                    (t.id, t.session_id, t.content, t.role) for t in self._turns.values()
                ]
            else:
                candidates = [
                    (m.id, m.session_id, m.content, None) for m in self._memories.values()
                ]
        rows = []
        for owner_id, owner_session, content, role in candidates:
            if exclude_session_id is not None and owner_session == exclude_session_id:
                continue
            matched = wanted & set(tokenize(content))
            if not matched:
                continue
            rank = len(matched) / len(wanted)
            if rank < threshold:
                continue
            rows.append(ScoredRow(owner_id, owner_session, content, rank, role))
        rows.sort(key=lambda r: r.score, reverse=True)
        return rows[:limit]

    def upsert_session(self, session_id: str, title: str = "") -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(id=session_id, title=title)
                self._sessions[session_id] = session
            return copy.copy(session)

    def add_turn(self, session_id: str, role: Role, content: str) -> Turn:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(f"Unknown session: {session_id}")
            turn = Turn(
                id=self._next_turn_id,
                session_id=session_id,
                role=Role(role),
                content=content,
                created_at=utcnow(),
            )
            self._next_turn_id += 1
            self._turns[turn.id] = turn
            session.updated_at = turn.created_at
            session.message_count += 1
            return turn

    def add_embedding(
        self,
        table: SearchTable,
        owner_id: int,
        session_id: str,
        vector: list[float],
    ) -> None:
        vector = validate_vector(vector, self.dimensions)
        with self._lock:
            if self._content_for(table, owner_id) is None:
                raise KeyError(f"Unknown {table.value} row: {owner_id}")
            if owner_id in self._embeddings[table]:
                raise ValueError(f"Embedding already exists for {table.value} row {owner_id}")
            self._embeddings[table][owner_id] = (session_id, vector)

    def list_turns(self, session_id: str) -> list[Turn]:
        with self._lock:
            turns = [t for t in self._turns.values() if t.session_id == session_id]
        return sorted(turns, key=lambda t: (t.created_at, t.id))

    def recent_turns(self, session_id: str, limit: int) -> list[Turn]:
        if limit <= 0:
            return []
        return self.list_turns(session_id)[-limit:]

    def recent_sessions(self, limit: int = 50) -> list[Session]:
        with self._lock:
            sessions = [copy.copy(s) for s in self._sessions.values()]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions[:limit]

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            for turn_id in [t.id for t in self._turns.values() if t.session_id == session_id]:
                del self._turns[turn_id]
                self._embeddings[SearchTable.TURNS].pop(turn_id, None)
            for memory_id in [m.id for m in self._memories.values() if m.session_id == session_id]:
                del self._memories[memory_id]
                self._embeddings[SearchTable.MEMORIES].pop(memory_id, None)

    def create_memory(
        self,
        session_id: str,
        content: str,
        category: Optional[str] = None,
        confidence: float = 1.0,
    ) -> Memory:
        content = check_memory_content(content)
        with self._lock:
            now = utcnow()
            memory = Memory(
                id=self._next_memory_id,
                session_id=session_id,
                content=content,
                category=category,
                confidence=check_confidence(confidence),
                created_at=now,
                updated_at=now,
            )
            self._next_memory_id += 1
            self._memories[memory.id] = memory
            return copy.copy(memory)

    def update_memory(self, memory_id: int, content: str) -> bool:
        content = check_memory_content(content)
        with self._lock:
            memory = self._memories.get(memory_id)
            if memory is None:
                return False
            memory.content = content
            memory.updated_at = max(utcnow(), memory.created_at)
            return True

    def get_memory(self, memory_id: int) -> Optional[Memory]:
        with self._lock:
            memory = self._memories.get(memory_id)
            return copy.copy(memory) if memory else None

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
        with self._lock:
            memories = [
                copy.copy(m) for m in self._memories.values()
                if session_id is None or m.session_id == session_id
            ]
        memories.sort(key=lambda m: (getattr(m, order_by), m.id), reverse=True)
        return memories[:limit]
