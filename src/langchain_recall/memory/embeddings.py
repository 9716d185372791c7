"""
Shared embedding handle.

The underlying LangChain embeddings model is built once, on first use, and
then only read. `embed()` may be called from several threads at a time.
"""

import logging
import threading
from typing import Callable, Optional

from langchain_core.embeddings import Embeddings

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Lazily initialized wrapper around a LangChain `Embeddings` model."""

    def __init__(
        self,
        factory: Optional[Callable[[], Embeddings]] = None,
        model: Optional[Embeddings] = None,
        dimensions: int = 0,
    ):
        if factory is None and model is None:
            raise ValueError("EmbeddingService needs a model or a factory")
        self._factory = factory
        self._model = model
        self._dimensions = dimensions
        self._lock = threading.Lock()

    @property
    def model(self) -> Embeddings:
        if self._model is None:
            with self._lock:
                if self._model is None:
                    logger.info("Initializing embedding model")
                    self._model = self._factory()
        return self._model

    @property
    def dimensions(self) -> int:
        """Vector size, 0 until known."""
        return self._dimensions

    def embed(self, text: str) -> list[float]:
        """Embed text. Blank input returns [] without touching the model."""
        if not text or not text.strip():
            return []
        vector = [float(v) for v in self.model.embed_query(text)]
        if vector and not self._dimensions:
            self._dimensions = len(vector)
            logger.info("Detected embedding dimensions: %d", self._dimensions)
        return vector
