"""
Memory orchestrator.

Ties retrieval, prompt assembly and the reflective pipeline into a chat
request's lifecycle:

- build_context (foreground, before the LLM call):
    classify query → hybrid retrieval → optional compression
    → smart-truncated history → [context..., history..., current message]
- schedule_reflection (after the response has been sent):
    persist the turn pair with embeddings in one transaction, then run
    extract → validate → consolidate → save on a background worker

Neither path raises to the caller: build_context degrades to less context,
background failures are logged.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from langchain_core.messages import BaseMessage, HumanMessage

from .compressor import ContextCompressor
from .config import MemoryConfig
from .embeddings import EmbeddingService
from .pipeline import MemoryPipeline, MemoryState
from .retriever import ContextBlock, HybridRetriever
from .store import MemoryStore, Role, SearchTable, Turn
from .token_budget import (
    count_messages_tokens,
    max_input_budget,
    smart_truncate,
    token_stats,
)
from .vector_utils import validate_vector

logger = logging.getLogger(__name__)

SESSION_TITLE_CHARS = 100


class MemoryOrchestrator:
    """
    Usage:
        orchestrator = MemoryOrchestrator(store, embeddings, retriever, pipeline, config, model_name)
        messages = orchestrator.build_context(session_id, user_message)
        # ... call the LLM with messages, stream the answer ...
        orchestrator.schedule_reflection(session_id, user_message, answer)
    """

    def __init__(
        self,
        store: MemoryStore,
        embeddings: Optional[EmbeddingService],
        retriever: Optional[HybridRetriever],
        pipeline: Optional[MemoryPipeline],
        config: Optional[MemoryConfig] = None,
        model_name: str = "",
        compressor: Optional[ContextCompressor] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.retriever = retriever
        self.pipeline = pipeline
        self.config = config or MemoryConfig()
        self.model_name = model_name
        self.compressor = compressor
        self._background = ThreadPoolExecutor(
            max_workers=max(1, self.config.background_workers),
            thread_name_prefix="recall-reflect",
        )

    # ── Foreground ──

    def build_context(self, session_id: str, message: str) -> list[BaseMessage]:
        """Prompt messages for the current turn: context, truncated history, message."""
        history = self._load_history(session_id)
        context = self.retrieve_context(session_id, message)
        context_messages = context.to_messages()
        current = HumanMessage(content=message)

        available = (
            max_input_budget(self.model_name, self.config)
            - count_messages_tokens(context_messages)
            - count_messages_tokens([current])
        )
        truncated = smart_truncate(history, available, self.config.keep_recent_messages)
        final = [*context_messages, *truncated, current]

        if logger.isEnabledFor(logging.DEBUG):
            stats = token_stats(final, self.model_name, self.config)
            logger.debug(
                "Token stats: total=%d max=%d usage=%.2f%% messages=%d history=%d context=%d",
                stats.total_tokens, stats.max_tokens, stats.usage_percentage,
                stats.message_count, len(truncated), len(context_messages),
            )
        return final

    def retrieve_context(self, session_id: str, message: str) -> ContextBlock:
        if (
            self.retriever is None
            or not self.config.enable_embeddings
            or not self.config.enable_rag
        ):
            return ContextBlock()
        try:
            block = self.retriever.retrieve(session_id, message)
        except Exception as e:
            logger.warning("Context retrieval failed, continuing without context: %s", e)
            return ContextBlock(degraded=True)

        if self.compressor is not None and self.config.enable_compression:
            block = self.compressor.compress(message, block)
        return block

    def _load_history(self, session_id: str) -> list[BaseMessage]:
        try:
            return [t.to_message() for t in self.store.list_turns(session_id)]
        except Exception as e:
            logger.warning("Failed to load history for session %s: %s", session_id, e)
            return []

    # ── Background ──

    def record_turn(
        self, session_id: str, user_message: str, assistant_message: str
    ) -> tuple[Turn, Turn]:
        """
        Persist a user/assistant pair atomically.

        Embeddings are computed first so no transaction is held open during
        model inference. A turn whose embedding fails or is invalid is still
        stored, just without a vector.
        """
        user_vector = self._embed_for_storage(user_message)
        assistant_vector = self._embed_for_storage(assistant_message)

        with self.store.transaction():
            self.store.upsert_session(session_id, title=user_message[:SESSION_TITLE_CHARS])
            user_turn = self.store.add_turn(session_id, Role.USER, user_message)
            assistant_turn = self.store.add_turn(session_id, Role.ASSISTANT, assistant_message)
            if user_vector:
                self.store.add_embedding(SearchTable.TURNS, user_turn.id, session_id, user_vector)
            if assistant_vector:
                self.store.add_embedding(
                    SearchTable.TURNS, assistant_turn.id, session_id, assistant_vector
                )
        return user_turn, assistant_turn

    def _embed_for_storage(self, text: str) -> Optional[list[float]]:
        if self.embeddings is None or not self.config.enable_embeddings:
            return None
        try:
            vector = self.embeddings.embed(text)
            if not vector:
                return None
            return validate_vector(vector, self.embeddings.dimensions)
        except Exception as e:
            logger.warning("Error creating embedding, storing turn without it: %s", e)
            return None

    def record_and_reflect(
        self, session_id: str, user_message: str, assistant_message: str
    ) -> Optional[MemoryState]:
        """Persist the turn, then run the memory pipeline. Logs instead of raising."""
        try:
            self.record_turn(session_id, user_message, assistant_message)
        except Exception as e:
            logger.error("Failed to save turn for session %s: %s", session_id, e)
            return None

        if self.pipeline is None:
            return None
        try:
            recent = self.store.recent_turns(session_id, self.config.reflection_window)
            return self.pipeline.run(session_id, [t.to_message() for t in recent])
        except Exception as e:
            logger.error("Error running memory pipeline for session %s: %s", session_id, e)
            return None

    def schedule_reflection(
        self,
        session_id: str,
        user_message: str,
        assistant_message: str,
        cancelled: Optional[threading.Event] = None,
    ) -> Optional[Future]:
        """
        Run record_and_reflect on a background worker.

        Skipped if `cancelled` is already set (the request was aborted before
        the response completed). Once submitted, the task runs to completion;
        the returned future is for tests and shutdown, not for request handlers.
        """
        if cancelled is not None and cancelled.is_set():
            logger.info("Request for session %s was cancelled, skipping reflection", session_id)
            return None
        future = self._background.submit(
            self.record_and_reflect, session_id, user_message, assistant_message
        )
        future.add_done_callback(_log_background_failure)
        return future

    def close(self, wait: bool = True):
        self._background.shutdown(wait=wait)
        if self.retriever is not None:
            self.retriever.shutdown(wait=wait)
        self.store.close()


def _log_background_failure(future: Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("Background reflection failed: %s", error)
