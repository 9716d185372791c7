"""
Long-term conversational memory with hybrid retrieval.

Provides context for each chat turn and learns from it afterwards:

- Retrieval: semantic (pgvector) + keyword (full-text) search over past
  turns from other sessions, fused by weighted score, plus semantic search
  over extracted memories. Thresholds adapt to query complexity.
- Prompt assembly: retrieved context + token-budgeted history + message.
- Reflection: a LangGraph pipeline (extract → validate → consolidate → save)
  that turns recent conversation into deduplicated, conflict-resolved facts.
"""

from .compressor import ContextCompressor
from .config import MemoryConfig
from .embeddings import EmbeddingService
from .orchestrator import MemoryOrchestrator
from .pipeline import MemoryPipeline, UpdateMemory
from .query_profile import QueryProfile, QueryTier, TierSettings, classify_query
from .retriever import ContextBlock, HybridRetriever, RetrievalResult, fuse_scores
from .store import InMemoryStore, Memory, MemoryStore, Role, Session, Turn
from .token_budget import (
    count_message_tokens,
    count_messages_tokens,
    count_tokens,
    max_input_budget,
    smart_truncate,
)
from .vector_utils import InvalidVectorError, cosine_similarity, to_pgvector_literal

__all__ = [
    "ContextBlock",
    "ContextCompressor",
    "EmbeddingService",
    "HybridRetriever",
    "InMemoryStore",
    "InvalidVectorError",
    "Memory",
    "MemoryConfig",
    "MemoryOrchestrator",
    "MemoryPipeline",
    "MemoryStore",
    "QueryProfile",
    "QueryTier",
    "RetrievalResult",
    "Role",
    "Session",
    "TierSettings",
    "Turn",
    "UpdateMemory",
    "classify_query",
    "cosine_similarity",
    "count_message_tokens",
    "count_messages_tokens",
    "count_tokens",
    "fuse_scores",
    "max_input_budget",
    "smart_truncate",
    "to_pgvector_literal",
]
