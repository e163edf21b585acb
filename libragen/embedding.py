"""
Embedding capability.

:class:`Embedder` is the interface the build pipeline and the searcher
consume; concrete variants are constructed by the caller and injected.

Variants
--------
OllamaEmbedder               HTTP ``/api/embed`` of a local Ollama server (requests)
OpenAIEmbedder               OpenAI Embeddings API (``openai`` extra)
SentenceTransformerEmbedder  Local model via sentence-transformers (``local`` extra)
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import requests

from .config import Config
from .errors import EmbedderError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------

def call_with_timeout(fn: Callable, timeout: Optional[float], *args, **kwargs):
    """
    Call ``fn(*args, **kwargs)`` and give up after *timeout* seconds.

    The call runs on a daemon thread.  After a timeout it keeps running,
    its result is discarded, and it does not hold up interpreter exit.

    Raises
    ------
    concurrent.futures.TimeoutError
        *timeout* elapsed first.
    """
    if timeout is None:
        return fn(*args, **kwargs)
    outcome: queue.Queue = queue.Queue(maxsize=1)

    def run() -> None:
        try:
            outcome.put((True, fn(*args, **kwargs)))
        except BaseException as exc:
            outcome.put((False, exc))

    threading.Thread(target=run, daemon=True, name="libragen-call").start()
    try:
        ok, value = outcome.get(timeout=timeout)
    except queue.Empty:
        raise concurrent.futures.TimeoutError(f"call did not finish within {timeout}s") from None
    if ok:
        return value
    raise value


def _with_retries(what: str, fn: Callable, *args):
    """Run *fn* up to MAX_RETRIES times with exponential back-off.

    :class:`EmbedderError` means the server answered with something
    unusable; it is raised at once.
    """
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            return fn(*args)
        except EmbedderError:
            raise
        except Exception as exc:
            if attempt < MAX_RETRIES:
                wait = 2 ** attempt
                logger.warning(
                    "%s error (attempt %d/%d): %s, retrying in %ds",
                    what, attempt, MAX_RETRIES, exc, wait,
                )
                time.sleep(wait)
            else:
                raise EmbedderError(f"{what} failed after {MAX_RETRIES} attempts: {exc}") from exc
    return None  # unreachable


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class Embedder(ABC):
    """
    Abstract embedding model.

    ``initialize()`` must be called once before ``embed`` / ``embed_batch``;
    calling it again is a no-op.
    """

    model_name: str = ""

    def __init__(self) -> None:
        self._init_lock = threading.Lock()
        self._initialized = False

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Length of every vector this embedder returns."""

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            self._load()
            self._initialized = True

    def _load(self) -> None:
        """Load the model or open the client; called once by :meth:`initialize`."""

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, returning vectors in the same order."""

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def dispose(self) -> None:
        self._initialized = False


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------

class OllamaEmbedder(Embedder):
    """
    Embeddings from an Ollama server.

    Parameters
    ----------
    model:
        Ollama embedding model name.
    base_url:
        Server URL; any ``/api/...`` suffix is stripped.
    dimensions:
        Vector length.  Probed with one request on :meth:`initialize` when
        not given.
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = "http://localhost:11434",
        dimensions: Optional[int] = None,
        request_timeout: tuple[int, int] = (10, 120),
    ) -> None:
        super().__init__()
        self.model_name = model
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")
        self._dimensions = dimensions
        self._request_timeout = request_timeout

    @classmethod
    def from_config(cls, config: Config, **overrides) -> "OllamaEmbedder":
        """Embedder for ``embedding_model`` on ``ollama_base_url``; keyword arguments win."""
        values = dict(model=config.EMBEDDING_MODEL, base_url=config.OLLAMA_BASE_URL)
        values.update(overrides)
        return cls(**values)

    @property
    def dimensions(self) -> int:
        if self._dimensions is None:
            raise EmbedderError("OllamaEmbedder.initialize() must run before dimensions are known")
        return self._dimensions

    def _load(self) -> None:
        if self._dimensions is None:
            probe = self._post(["dimension probe"])
            self._dimensions = len(probe[0])
            logger.debug("Ollama model %s has %d dimensions", self.model_name, self._dimensions)

    def _post(self, texts: list[str]) -> list[list[float]]:
        url = f"{self._api_root}/api/embed"
        response = requests.post(
            url,
            json={"model": self.model_name, "input": texts},
            timeout=self._request_timeout,
        )
        response.raise_for_status()
        embeddings = response.json().get("embeddings") or []
        if len(embeddings) != len(texts):
            raise EmbedderError(
                f"Ollama returned {len(embeddings)} embeddings for {len(texts)} inputs"
            )
        return embeddings

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return _with_retries("Ollama embedding", self._post, texts)


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class OpenAIEmbedder(Embedder):
    """Embeddings from the OpenAI API.  Reads ``OPENAI_API_KEY`` when no key is given."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.model_name = model
        self._dimensions = dimensions
        self._api_key = api_key
        self._client = None

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _load(self) -> None:
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise EmbedderError(
                "openai package is required for OpenAIEmbedder. "
                "Install it with: pip install 'libragen[semantic]'"
            ) from exc
        api_key = self._api_key or os.environ.get("OPENAI_API_KEY", "")
        if not api_key:
            raise EmbedderError("OPENAI_API_KEY environment variable is not set.")
        self._client = openai.OpenAI(api_key=api_key)

    def _create(self, texts: list[str]) -> list[list[float]]:
        response = self._client.embeddings.create(
            model=self.model_name,
            input=texts,
            dimensions=self._dimensions,
        )
        return [item.embedding for item in response.data]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if self._client is None:
            raise EmbedderError("OpenAIEmbedder.initialize() has not been called")
        return _with_retries("OpenAI embedding", self._create, texts)

    def dispose(self) -> None:
        self._client = None
        super().dispose()


# ---------------------------------------------------------------------------
# sentence-transformers
# ---------------------------------------------------------------------------

class SentenceTransformerEmbedder(Embedder):
    """Local embeddings via sentence-transformers; vectors are L2-normalized."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: Optional[str] = None) -> None:
        super().__init__()
        self.model_name = model_name
        self._device = device
        self._model = None

    @property
    def dimensions(self) -> int:
        if self._model is None:
            raise EmbedderError("SentenceTransformerEmbedder.initialize() has not been called")
        return int(self._model.get_sentence_embedding_dimension())

    def _load(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer  # type: ignore
        except ImportError as exc:
            raise EmbedderError(
                "sentence-transformers is required for local embeddings. "
                "Install it with: pip install 'libragen[local]'"
            ) from exc
        t0 = time.perf_counter()
        self._model = SentenceTransformer(self.model_name, device=self._device)
        logger.info("Loaded %s in %.1fs", self.model_name, time.perf_counter() - t0)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if self._model is None:
            raise EmbedderError("SentenceTransformerEmbedder.initialize() has not been called")
        try:
            arr = self._model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        except Exception as exc:
            raise EmbedderError(f"Local embedding failed: {exc}") from exc
        return [row.tolist() for row in arr]

    def dispose(self) -> None:
        self._model = None
        super().dispose()
