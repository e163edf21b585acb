"""
Reranking capability: score ``(query, content)`` pairs for relevance.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from .errors import RerankerError

logger = logging.getLogger(__name__)


class Reranker(ABC):
    """Abstract cross-encoder style reranker."""

    def initialize(self) -> None:
        """Load the model; repeated calls are a no-op."""

    @abstractmethod
    def rerank(self, query: str, contents: list[str]) -> list[float]:
        """Return one relevance score per entry of *contents*, same order."""

    def dispose(self) -> None:
        pass


class CrossEncoderReranker(Reranker):
    """
    Reranker backed by a sentence-transformers ``CrossEncoder``.

    Parameters
    ----------
    model_name:
        Hugging Face model id.
    """

    def __init__(self, model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2",
                 device: Optional[str] = None) -> None:
        self.model_name = model_name
        self._device = device
        self._model = None
        self._lock = threading.Lock()

    def initialize(self) -> None:
        with self._lock:
            if self._model is not None:
                return
            try:
                from sentence_transformers import CrossEncoder  # type: ignore
            except ImportError as exc:
                raise RerankerError(
                    "sentence-transformers is required for reranking. "
                    "Install it with: pip install 'libragen[local]'"
                ) from exc
            self._model = CrossEncoder(self.model_name, device=self._device)
            logger.debug("Loaded reranker %s", self.model_name)

    def rerank(self, query: str, contents: list[str]) -> list[float]:
        if not contents:
            return []
        self.initialize()
        try:
            scores = self._model.predict([(query, c) for c in contents], show_progress_bar=False)
        except Exception as exc:
            raise RerankerError(f"Reranking failed: {exc}") from exc
        return [float(s) for s in scores]

    def dispose(self) -> None:
        with self._lock:
            self._model = None
