from openai import OpenAI, RateLimitError
from typing import Any, Callable, List, Optional
from concurrent.futures import Future
from src.config.settings import Settings
from src.models.errors import EmbeddingProviderError, EmbeddingFormatError
import numpy as np
import threading
import time
import logging

logger = logging.getLogger(__name__)


class OpenAIEmbeddingModel:
    """OpenAI embedding endpoint exposed as a ``text -> vector`` callable."""

    def __init__(self, config: Settings):
        self.client = OpenAI(api_key=config.openai_api_key)
        self.model = config.openai_embedding_model

    def __call__(self, text: str):
        """
        Embed one text.
        Uses exponential backoff retry logic for rate limit errors.

        Returns:
            The response item (carries the vector in ``.embedding``)
        """
        max_retries = 5
        base_delay = 1.0  # Start with 1 second delay

        for attempt in range(max_retries):
            try:
                response = self.client.embeddings.create(
                    model=self.model,
                    input=[text]
                )
                return response.data[0]
            except RateLimitError:
                if attempt == max_retries - 1:
                    # Last attempt, raise the error
                    raise

                # Calculate exponential backoff delay
                delay = base_delay * (2 ** attempt)
                logger.warning(f"Rate limit hit on embedding request. Retrying in {delay}s... (attempt {attempt + 1}/{max_retries})")
                time.sleep(delay)


def to_vector(raw: Any) -> List[float]:
    """
    Coerce whatever the embedding model returned into a plain list of floats.

    Accepts lists, tuples, numpy arrays, tensor-likes exposing ``.data`` or
    ``.tolist()``, objects or dicts carrying an ``embedding`` field, and a
    single-row 2-D array (pooled output).

    Raises:
        EmbeddingFormatError: If the value is not a non-empty, finite, 1-D numeric vector
    """
    if isinstance(raw, dict) and "embedding" in raw:
        raw = raw["embedding"]
    elif hasattr(raw, "embedding"):
        raw = raw.embedding
    elif hasattr(raw, "data") and not isinstance(raw, (list, tuple, np.ndarray)):
        raw = raw.data

    if hasattr(raw, "tolist") and not isinstance(raw, np.ndarray):
        raw = raw.tolist()

    try:
        array = np.asarray(raw, dtype=float)
    except (TypeError, ValueError) as e:
        raise EmbeddingFormatError(f"Failed to convert embedding to number array: {e}") from e

    if array.ndim == 2 and array.shape[0] == 1:
        array = array[0]

    if array.ndim != 1 or array.size == 0:
        raise EmbeddingFormatError(f"Expected a 1-D embedding vector, got shape {array.shape}")
    if not np.all(np.isfinite(array)):
        raise EmbeddingFormatError("Embedding contains non-finite values")

    return array.tolist()


class EmbeddingProvider:
    """
    Shared embedding model behind an initialization barrier.

    The model is built on the first ``embed`` call. While it is being built,
    other callers block on the same future instead of starting a second
    initialization. A failed initialization returns the provider to
    ``uninitialized`` so that a later call can try again.
    """

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"

    def __init__(self, model_factory: Callable[[], Callable[[str], Any]]):
        self._model_factory = model_factory
        self._model = None
        self._state = self.UNINITIALIZED
        self._ready: Optional[Future] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state

    def _get_model(self):
        with self._lock:
            if self._state == self.READY:
                return self._model
            if self._state == self.INITIALIZING:
                future = self._ready
                owner = False
            else:
                future = Future()
                self._ready = future
                self._state = self.INITIALIZING
                owner = True

        if not owner:
            return future.result()

        logger.info("Initializing embedding model...")
        try:
            model = self._model_factory()
        except BaseException as e:
            logger.error(f"Failed to initialize embedding model: {e!r}")
            with self._lock:
                self._state = self.UNINITIALIZED
                self._ready = None
            if not isinstance(e, Exception):
                # Interrupts reach waiters and the caller unchanged
                future.set_exception(e)
                raise
            error = EmbeddingProviderError(f"Failed to initialize embedding model: {e}")
            future.set_exception(error)
            raise error from e

        with self._lock:
            self._model = model
            self._state = self.READY
        future.set_result(model)
        logger.info("Embedding model initialized successfully")
        return model

    def embed(self, text: str) -> List[float]:
        """
        Generate the embedding vector for a text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector

        Raises:
            EmbeddingProviderError: If the model cannot be initialized or fails on this text
            EmbeddingFormatError: If the model output is not a numeric vector
        """
        model = self._get_model()
        try:
            raw = model(text)
        except Exception as e:
            logger.error(f"Error generating embedding for text '{(text or '')[:100]}': {e}")
            raise EmbeddingProviderError(f"Embedding model failed: {e}") from e
        return to_vector(raw)


_default_provider: Optional[EmbeddingProvider] = None
_default_provider_lock = threading.Lock()


def get_embedding_provider(config: Settings) -> EmbeddingProvider:
    """Process-wide provider backed by the OpenAI embedding model."""
    global _default_provider
    with _default_provider_lock:
        if _default_provider is None:
            _default_provider = EmbeddingProvider(lambda: OpenAIEmbeddingModel(config))
        return _default_provider
