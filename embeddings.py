"""Text embeddings for knowledge retrieval.

Embeddings come from an ordered list of backends. Each backend is tagged
with the model that produced its vectors ("<backend>:<model>"), and the tag
is stored next to every corpus vector so that retrieval only compares
vectors from the same model.

Backends:
    openai: text-embedding-3-small via the OpenAI API (1536 dimensions)
    local:  BAAI/bge-small-en-v1.5 via sentence-transformers (384 dimensions)

Usage:
    >>> from embeddings import EmbeddingProvider
    >>> provider = EmbeddingProvider.from_config(config)
    >>> vector, tag = await provider.embed_tagged("Checkout button contrast")
"""

import asyncio
import logging
from functools import partial

import numpy as np

from errors import EmbeddingUnavailable, FallbackExhausted

logger = logging.getLogger(__name__)

OPENAI_MODEL = "text-embedding-3-small"
OPENAI_DIMS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

LOCAL_MODEL = "BAAI/bge-small-en-v1.5"
LOCAL_DIM = 384

DEFAULT_MAX_CHARS = 8000


class EmbeddingBackend:
    """Base class for embedding backends.

    Subclasses set `name`, `model` and `dim` and implement `_embed`.
    """

    name = "base"

    def __init__(self, model: str, dim: int):
        self.model = model
        self.dim = dim

    @property
    def model_tag(self) -> str:
        return f"{self.name}:{self.model}"

    async def embed(self, text: str) -> list[float]:
        vector = await self._embed(text)
        if len(vector) != self.dim:
            raise ValueError(
                f"{self.model_tag} returned {len(vector)} dimensions, expected {self.dim}"
            )
        return vector

    async def _embed(self, text: str) -> list[float]:
        raise NotImplementedError


class OpenAIEmbeddingBackend(EmbeddingBackend):
    """Embeddings from the OpenAI embeddings endpoint."""

    name = "openai"

    def __init__(self, api_key: str = "", model: str = OPENAI_MODEL, client=None):
        super().__init__(model, OPENAI_DIMS.get(model, 1536))
        self._api_key = api_key
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self._api_key:
                raise EmbeddingUnavailable("OPENAI_API_KEY is not set")
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def _embed(self, text: str) -> list[float]:
        client = self._get_client()
        response = await client.embeddings.create(model=self.model, input=text)
        return list(response.data[0].embedding)


class LocalEmbeddingBackend(EmbeddingBackend):
    """sentence-transformers model run in a worker thread.

    The model is loaded lazily on first use and reused for subsequent calls.
    """

    name = "local"

    def __init__(self, model: str = LOCAL_MODEL, dim: int = LOCAL_DIM):
        super().__init__(model, dim)
        self._model = None

    def _load_model(self):
        if self._model is None:
            logger.info("Loading embedding model: %s", self.model)
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model)
            logger.info("Embedding model loaded | dim=%d", self.dim)
        return self._model

    def _encode(self, text: str) -> list[float]:
        model = self._load_model()
        embedding = model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return embedding.astype(np.float32).tolist()

    async def _embed(self, text: str) -> list[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._encode, text))


class EmbeddingProvider:
    """Ordered fallback chain of embedding backends.

    Backends are tried in order. The first success wins; each failure is
    logged and the next backend is tried. When every backend fails the
    provider raises EmbeddingUnavailable, which callers treat as "no
    research context" rather than a pipeline failure.

    Attributes:
        backends: Backends in preference order
        max_input_chars: Longer input is truncated to this many characters
    """

    def __init__(self, backends: list[EmbeddingBackend], max_input_chars: int = DEFAULT_MAX_CHARS):
        if not backends:
            raise ValueError("EmbeddingProvider requires at least one backend")
        self.backends = list(backends)
        self.max_input_chars = max_input_chars

    @classmethod
    def from_config(cls, config) -> "EmbeddingProvider":
        """Build the backend chain named by EMBEDDING_BACKENDS."""
        backends: list[EmbeddingBackend] = []
        for name in config.embedding_backends:
            if name == "openai":
                backends.append(OpenAIEmbeddingBackend(config.openai_api_key, config.embedding_model))
            elif name == "local":
                backends.append(LocalEmbeddingBackend(config.local_embedding_model))
            else:
                raise ValueError(f"Unknown embedding backend: {name}")
        return cls(backends, max_input_chars=config.embedding_max_chars)

    @property
    def model_tags(self) -> list[str]:
        return [b.model_tag for b in self.backends]

    def prepare(self, text: str) -> str:
        """Validate and truncate input text."""
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        if len(text) > self.max_input_chars:
            logger.debug("Truncating embedding input | chars=%d max=%d", len(text), self.max_input_chars)
            text = text[: self.max_input_chars]
        return text

    async def embed_tagged(self, text: str) -> tuple[list[float], str]:
        """Embed text, returning the vector and the tag of the backend used.

        Raises:
            ValueError: If text is empty
            EmbeddingUnavailable: If every backend failed
        """
        text = self.prepare(text)
        attempts: list[tuple[str, str]] = []
        for backend in self.backends:
            try:
                vector = await backend.embed(text)
                if attempts:
                    logger.info("Embedding fallback succeeded | backend=%s", backend.model_tag)
                return vector, backend.model_tag
            except Exception as e:
                logger.warning("Embedding backend failed | backend=%s error=%s", backend.model_tag, e)
                attempts.append((backend.model_tag, str(e)))

        exhausted = FallbackExhausted("embedding", attempts)
        raise EmbeddingUnavailable(str(exhausted)) from exhausted

    async def embed(self, text: str) -> list[float]:
        vector, _ = await self.embed_tagged(text)
        return vector

