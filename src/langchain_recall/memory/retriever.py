"""
Hybrid context retriever.

For each incoming message two searches run in parallel:

  - Message search: semantic (pgvector cosine) + keyword (full-text rank)
    over turns from *other* sessions, each side thresholded by the query's
    complexity profile, then fused:  fused = w_sem * semantic + w_kw * keyword
    (a side that did not match contributes 0).
  - Memory search: semantic only, with a stricter fixed threshold, over
    extracted long-term memories.

Degradation, never failure:
  - query cannot be embedded      → the session's own last few turns
  - hybrid (keyword) search fails → semantic-only message search
  - memory search fails           → no memories
"""

import logging
import math
import re
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .config import MemoryConfig
from .embeddings import EmbeddingService
from .query_profile import QueryProfile, classify_query
from .store import MemoryStore, Role, ScoredRow, SearchTable
from .vector_utils import validate_vector

logger = logging.getLogger(__name__)

MEMORY_DIGEST_HEADER = "Recall these facts about the user/project:"
COMPRESSED_HEADER = "Relevant context from earlier conversations:"

_KEYWORD_RE = re.compile(r"\w+", re.UNICODE)


class ResultType(str, Enum):
    MESSAGE = "message"
    MEMORY = "memory"


@dataclass(frozen=True)
class RetrievalResult:
    type: ResultType
    content: str
    score: float
    role: Optional[Role] = None

    def to_message(self) -> BaseMessage:
        if self.role == Role.USER:
            return HumanMessage(content=self.content)
        return AIMessage(content=self.content)


@dataclass
class ContextBlock:
    """Retrieved context, injected before the history and the current turn."""

    memories: list[RetrievalResult] = field(default_factory=list)
    excerpts: list[RetrievalResult] = field(default_factory=list)
    profile: Optional[QueryProfile] = None
    compressed: Optional[str] = None
    degraded: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.memories and not self.excerpts and not self.compressed

    def memory_digest(self) -> str:
        if not self.memories:
            return ""
        lines = "\n".join(f"- {m.content}" for m in self.memories)
        return f"{MEMORY_DIGEST_HEADER}\n{lines}"

    def render_text(self) -> str:
        """Flat text form, used for size checks and compression input."""
        if self.compressed is not None:
            return self.compressed
        parts = []
        digest = self.memory_digest()
        if digest:
            parts.append(digest)
        for excerpt in self.excerpts:
            role = excerpt.role.value if excerpt.role else "message"
            parts.append(f"{role}: {excerpt.content}")
        return "\n\n".join(parts)

    def char_length(self) -> int:
        return len(self.render_text())

    def to_messages(self) -> list[BaseMessage]:
        if self.compressed is not None:
            if not self.compressed.strip():
                return []
            return [SystemMessage(content=f"{COMPRESSED_HEADER}\n{self.compressed}")]
        messages: list[BaseMessage] = []
        digest = self.memory_digest()
        if digest:
            messages.append(SystemMessage(content=digest))
        messages.extend(e.to_message() for e in self.excerpts)
        return messages


def extract_keywords(query: str, max_keywords: int = 5, min_length: int = 3) -> list[str]:
    """Lower-cased distinct words of at least `min_length` chars, first `max_keywords`."""
    keywords = []
    for word in _KEYWORD_RE.findall(query.lower()):
        if len(word) >= min_length and word not in keywords:
            keywords.append(word)
        if len(keywords) >= max_keywords:
            break
    return keywords


def fuse_scores(
    semantic: list[ScoredRow],
    keyword: list[ScoredRow],
    semantic_weight: float = 0.7,
    keyword_weight: float = 0.3,
    limit: Optional[int] = None,
) -> list[RetrievalResult]:
    """Full outer join of both hit lists on row id, ordered by fused score."""
    merged: dict[int, dict] = {}
    for row in semantic:
        merged.setdefault(row.id, {"row": row, "semantic": 0.0, "keyword": 0.0})
        merged[row.id]["semantic"] = row.score
    for row in keyword:
        merged.setdefault(row.id, {"row": row, "semantic": 0.0, "keyword": 0.0})
        merged[row.id]["keyword"] = row.score

    results = [
        RetrievalResult(
            type=ResultType.MESSAGE,
            content=entry["row"].content,
            role=entry["row"].role,
            score=semantic_weight * entry["semantic"] + keyword_weight * entry["keyword"],
        )
        for entry in merged.values()
    ]
    results.sort(key=lambda r: r.score, reverse=True)
    return results[:limit] if limit is not None else results


class HybridRetriever:
    """
    Builds a ContextBlock for a query.

    `retrieve()` never raises; every failure narrows the result instead.
    """

    def __init__(
        self,
        store: MemoryStore,
        embeddings: EmbeddingService,
        config: Optional[MemoryConfig] = None,
        executor: Optional[Executor] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.config = config or MemoryConfig()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="recall-search"
        )

    def retrieve(self, session_id: str, query: str) -> ContextBlock:
        if not query or not query.strip():
            return ContextBlock()

        profile = classify_query(query, self.config.tier_settings)
        logger.info(
            "Query complexity: %s (%d words)", profile.tier.value, profile.word_count
        )

        try:
            vector = self.embeddings.embed(query)
            if not vector:
                logger.warning("Embedding service returned empty vector, skipping retrieval")
                return ContextBlock(profile=profile)
            vector = validate_vector(vector, self.embeddings.dimensions)
        except Exception as e:
            logger.warning("Embedding generation failed, falling back to recent turns: %s", e)
            return self._recent_turns_fallback(session_id, profile)

        message_future = self._executor.submit(
            self._search_messages, session_id, query, vector, profile
        )
        memory_future = self._executor.submit(
            self._search_memories, vector, math.ceil(profile.max_results / 2)
        )
        excerpts = message_future.result()
        memories = memory_future.result()

        logger.info(
            "Retrieved context: %d memories + %d messages (tier: %s, threshold: %.2f)",
            len(memories), len(excerpts), profile.tier.value, profile.semantic_threshold,
        )
        return ContextBlock(memories=memories, excerpts=excerpts, profile=profile)

    def _search_messages(
        self,
        session_id: str,
        query: str,
        vector: list[float],
        profile: QueryProfile,
    ) -> list[RetrievalResult]:
        try:
            return self._hybrid_message_search(session_id, query, vector, profile)
        except Exception as e:
            logger.warning("Hybrid search failed, falling back to semantic only: %s", e)

        try:
            rows = self.store.search_by_vector(
                SearchTable.TURNS,
                vector,
                exclude_session_id=session_id,
                threshold=profile.semantic_threshold,
                limit=profile.max_results,
            )
        except Exception as e:
            logger.warning("Semantic message search failed: %s", e)
            return []
        return [
            RetrievalResult(ResultType.MESSAGE, r.content, r.score, r.role) for r in rows
        ]

    def _hybrid_message_search(
        self,
        session_id: str,
        query: str,
        vector: list[float],
        profile: QueryProfile,
    ) -> list[RetrievalResult]:
        candidate_limit = profile.max_results * 2
        semantic = self.store.search_by_vector(
            SearchTable.TURNS,
            vector,
            exclude_session_id=session_id,
            threshold=profile.semantic_threshold,
            limit=candidate_limit,
        )
        keywords = extract_keywords(
            query, self.config.max_keywords, self.config.min_keyword_length
        )
        keyword = []
        if keywords:
            keyword = self.store.search_by_keywords(
                SearchTable.TURNS,
                keywords,
                exclude_session_id=session_id,
                threshold=profile.keyword_threshold,
                limit=candidate_limit,
            )
        logger.debug(
            "Hybrid candidates: %d semantic, %d keyword (keywords: %s)",
            len(semantic), len(keyword), keywords,
        )
        return fuse_scores(
            semantic,
            keyword,
            self.config.semantic_weight,
            self.config.keyword_weight,
            limit=profile.max_results,
        )

    def _search_memories(self, vector: list[float], limit: int) -> list[RetrievalResult]:
        try:
            rows = self.store.search_by_vector(
                SearchTable.MEMORIES,
                vector,
                threshold=self.config.memory_threshold,
                limit=limit,
            )
        except Exception as e:
            logger.warning("Memory search failed: %s", e)
            return []
        return [RetrievalResult(ResultType.MEMORY, r.content, r.score) for r in rows]

    def _recent_turns_fallback(
        self, session_id: str, profile: Optional[QueryProfile]
    ) -> ContextBlock:
        try:
            turns = self.store.recent_turns(session_id, self.config.fallback_recent_turns)
        except Exception as e:
            logger.warning("Fallback query also failed: %s", e)
            return ContextBlock(profile=profile, degraded=True)
        excerpts = [
            RetrievalResult(ResultType.MESSAGE, t.content, 0.0, t.role) for t in turns
        ]
        return ContextBlock(excerpts=excerpts, profile=profile, degraded=True)

    def shutdown(self, wait: bool = True):
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
