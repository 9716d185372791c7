"""
Context compressor.

When retrieved context grows past a size cut-over, ask the LLM to keep only
the sentences relevant to the current query. Below the cut-over the extra
LLM round trip costs more latency than it saves, so the block is returned
as-is. Any failure also returns the block unchanged.
"""

import dataclasses
import logging

from langchain_core.messages import HumanMessage, SystemMessage

from .llm import invoke_text
from .retriever import ContextBlock

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_CHARS = 8000

COMPRESS_SYSTEM_PROMPT = """You extract relevant context for a question.
From the context below, keep only the sentences that help answer the question.
Copy them verbatim or near-verbatim. Do not add any knowledge, commentary or headers."""


class ContextCompressor:
    """Shrinks a ContextBlock with a zero-temperature extraction call."""

    def __init__(self, llm=None, threshold_chars: int = DEFAULT_THRESHOLD_CHARS):
        self._llm = llm
        self.threshold_chars = threshold_chars

    def should_compress(self, block: ContextBlock) -> bool:
        return (
            self._llm is not None
            and block.compressed is None
            and block.char_length() > self.threshold_chars
        )

    def compress(self, query: str, block: ContextBlock) -> ContextBlock:
        if not self.should_compress(block):
            return block

        original = block.render_text()
        try:
            compressed = invoke_text(self._llm, [
                SystemMessage(content=COMPRESS_SYSTEM_PROMPT),
                HumanMessage(content=f"Question: {query}\n\nContext:\n{original}"),
            ]).strip()
        except Exception as e:
            logger.warning("Context compression failed, using full context: %s", e)
            return block

        if not compressed:
            logger.warning("Context compression returned nothing, using full context")
            return block

        logger.info(
            "Compressed context from %d to %d chars", len(original), len(compressed)
        )
        return dataclasses.replace(block, compressed=compressed)
