"""
Memory configuration and model context window mappings.
"""

import os
from dataclasses import dataclass, field

from .query_profile import DEFAULT_TIER_SETTINGS, QueryTier, TierSettings

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-sonnet-4-20250514": 200_000,
    "claude-opus-4-20250514": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
    # MiniMax
    "MiniMax-M2": 200_000,
}

DEFAULT_CONTEXT_WINDOW = 200_000

# Tokens kept free for the model's answer
RESPONSE_BUFFER = 4096


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _tier_settings_from_env() -> dict[QueryTier, TierSettings]:
    settings = dict(DEFAULT_TIER_SETTINGS)
    for tier in QueryTier:
        raw = os.getenv(f"MEMORY_TIER_{tier.name}")
        if raw:
            settings[tier] = TierSettings.parse(raw)
    return settings


@dataclass
class MemoryConfig:
    """Configuration for retrieval, prompt assembly and the memory pipeline."""

    # Context window (0 = auto-detect from model name)
    context_window: int = 0
    response_buffer: int = RESPONSE_BUFFER

    # History messages always kept by smart truncation
    keep_recent_messages: int = 4

    # Embeddings / RAG switches
    enable_embeddings: bool = True
    enable_rag: bool = True
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = ""  # empty = reuse API_BASE_URL
    embedding_api_key: str = ""  # empty = reuse API_KEY
    embedding_dimensions: int = 0  # 0 = detect from the first embedding

    # Per-tier thresholds and result caps
    tier_settings: dict[QueryTier, TierSettings] = field(
        default_factory=lambda: dict(DEFAULT_TIER_SETTINGS)
    )

    # Score fusion weights (semantic, keyword)
    semantic_weight: float = 0.7
    keyword_weight: float = 0.3

    # Memories are asserted facts, so they need a stricter match than messages
    memory_threshold: float = 0.80

    # Keyword search
    max_keywords: int = 5
    min_keyword_length: int = 3

    # Turns returned when the query cannot be embedded
    fallback_recent_turns: int = 3

    # Context compression
    enable_compression: bool = True
    compression_threshold_chars: int = 8000

    # Memory pipeline
    reflection_window: int = 6  # recent messages fed to extraction
    extract_context_memories: int = 15  # existing memories shown as "already known"
    validate_window: int = 20  # memories checked for exact duplicates
    consolidate_threshold: float = 0.75
    consolidate_limit: int = 10
    memory_category: str = "extracted_fact"

    # Background reflection workers
    background_workers: int = 2

    def __post_init__(self):
        if self.semantic_weight < 0 or self.keyword_weight < 0:
            raise ValueError("Fusion weights must be non-negative")
        if not 0 < self.memory_threshold <= 1:
            raise ValueError("memory_threshold must be in (0, 1]")
        if not 0 < self.consolidate_threshold <= 1:
            raise ValueError("consolidate_threshold must be in (0, 1]")

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            context_window=int(os.getenv("MEMORY_CONTEXT_WINDOW", "0")),
            response_buffer=int(os.getenv("MEMORY_RESPONSE_BUFFER", str(RESPONSE_BUFFER))),
            keep_recent_messages=int(os.getenv("MEMORY_KEEP_RECENT", "4")),
            enable_embeddings=_env_bool("EMBEDDING_ENABLED", "true"),
            enable_rag=_env_bool("RAG_ENABLED", "true"),
            embedding_model=os.getenv("MEMORY_EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
            embedding_dimensions=int(os.getenv("MEMORY_EMBEDDING_DIMENSIONS", "0")),
            tier_settings=_tier_settings_from_env(),
            semantic_weight=float(os.getenv("MEMORY_SEMANTIC_WEIGHT", "0.7")),
            keyword_weight=float(os.getenv("MEMORY_KEYWORD_WEIGHT", "0.3")),
            memory_threshold=float(os.getenv("MEMORY_RECALL_THRESHOLD", "0.80")),
            max_keywords=int(os.getenv("MEMORY_MAX_KEYWORDS", "5")),
            fallback_recent_turns=int(os.getenv("MEMORY_FALLBACK_RECENT_TURNS", "3")),
            enable_compression=_env_bool("MEMORY_ENABLE_COMPRESSION", "true"),
            compression_threshold_chars=int(
                os.getenv("MEMORY_COMPRESSION_THRESHOLD", "8000")
            ),
            reflection_window=int(os.getenv("MEMORY_REFLECTION_WINDOW", "6")),
            extract_context_memories=int(os.getenv("MEMORY_EXTRACT_CONTEXT", "15")),
            validate_window=int(os.getenv("MEMORY_VALIDATE_WINDOW", "20")),
            consolidate_threshold=float(
                os.getenv("MEMORY_CONSOLIDATE_THRESHOLD", "0.75")
            ),
            consolidate_limit=int(os.getenv("MEMORY_CONSOLIDATE_LIMIT", "10")),
            background_workers=int(os.getenv("MEMORY_BACKGROUND_WORKERS", "2")),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        if model_name:
            for key, size in MODEL_CONTEXT_WINDOWS.items():
                if model_name.startswith(key) or key.startswith(model_name):
                    return size
        return DEFAULT_CONTEXT_WINDOW
