"""Unit tests for EmbeddingProvider and its backends.

Backends are replaced by in-memory fakes; no network or model download.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import Config
from embeddings import (
    EmbeddingBackend,
    EmbeddingProvider,
    LocalEmbeddingBackend,
    OpenAIEmbeddingBackend,
)
from errors import EmbeddingUnavailable, FallbackExhausted


class StaticBackend(EmbeddingBackend):
    """Backend returning a fixed vector (or raising)."""

    name = "static"

    def __init__(self, model: str = "v1", dim: int = 3, vector=None, error: Exception | None = None):
        super().__init__(model, dim)
        self.vector = vector if vector is not None else [0.1] * dim
        self.error = error
        self.inputs: list[str] = []

    async def _embed(self, text: str) -> list[float]:
        self.inputs.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vector)


class TestProvider:
    """Ordered fallback and input handling."""

    @pytest.mark.asyncio
    async def test_first_backend_wins(self):
        """Test that the first healthy backend's vector and tag are returned."""
        first = StaticBackend(model="a", vector=[1.0, 0.0, 0.0])
        second = StaticBackend(model="b", vector=[0.0, 1.0, 0.0])

        vector, tag = await EmbeddingProvider([first, second]).embed_tagged("checkout")

        assert vector == [1.0, 0.0, 0.0]
        assert tag == "static:a"
        assert second.inputs == []

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self):
        """Test that a failing backend hands over to the next one."""
        failing = StaticBackend(model="a", error=ConnectionError("unreachable"))
        healthy = StaticBackend(model="b", vector=[0.5, 0.5, 0.5])

        vector, tag = await EmbeddingProvider([failing, healthy]).embed_tagged("checkout")

        assert tag == "static:b"
        assert vector == [0.5, 0.5, 0.5]

    @pytest.mark.asyncio
    async def test_all_backends_fail(self):
        """Test that exhausting the chain raises EmbeddingUnavailable from FallbackExhausted."""
        provider = EmbeddingProvider([
            StaticBackend(model="a", error=ConnectionError("down")),
            StaticBackend(model="b", error=RuntimeError("401 unauthorized")),
        ])

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            await provider.embed("checkout")

        assert isinstance(exc_info.value.__cause__, FallbackExhausted)
        assert "static:a" in str(exc_info.value)
        assert "static:b" in str(exc_info.value)
        assert exc_info.value.fatal is False

    @pytest.mark.asyncio
    async def test_wrong_dimension_counts_as_failure(self):
        """Test that a backend returning the wrong dimensionality is skipped."""
        bad = StaticBackend(model="a", dim=3, vector=[1.0, 2.0])
        good = StaticBackend(model="b", dim=3)

        _, tag = await EmbeddingProvider([bad, good]).embed_tagged("text")

        assert tag == "static:b"

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self):
        """Test that empty or whitespace input is a ValueError, not a fallback."""
        backend = StaticBackend()

        with pytest.raises(ValueError):
            await EmbeddingProvider([backend]).embed("   ")
        assert backend.inputs == []

    @pytest.mark.asyncio
    async def test_long_text_truncated(self):
        """Test that input beyond max_input_chars is truncated before embedding."""
        backend = StaticBackend()

        await EmbeddingProvider([backend], max_input_chars=10).embed("x" * 50)

        assert backend.inputs == ["x" * 10]

    @pytest.mark.asyncio
    async def test_deterministic_for_same_input(self):
        """Test that the same text yields the same vector."""
        provider = EmbeddingProvider([StaticBackend(vector=[0.3, 0.2, 0.1])])

        assert await provider.embed("same") == await provider.embed("same")

    def test_requires_backend(self):
        with pytest.raises(ValueError):
            EmbeddingProvider([])


class TestBackends:
    """Concrete backends with their clients mocked."""

    @pytest.mark.asyncio
    async def test_openai_backend_calls_embeddings_endpoint(self):
        """Test that the OpenAI backend sends {model, input} and reads the embedding."""
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[0.0] * 1536)])
        )
        backend = OpenAIEmbeddingBackend(api_key="sk-test", model="text-embedding-3-small", client=client)

        vector = await backend.embed("hello")

        client.embeddings.create.assert_awaited_once_with(model="text-embedding-3-small", input="hello")
        assert len(vector) == 1536
        assert backend.model_tag == "openai:text-embedding-3-small"

    @pytest.mark.asyncio
    async def test_openai_backend_without_key_unavailable(self):
        """Test that a missing API key fails the backend (so the chain falls back)."""
        with pytest.raises(EmbeddingUnavailable):
            await OpenAIEmbeddingBackend(api_key="").embed("hello")

    @pytest.mark.asyncio
    async def test_local_backend_uses_loaded_model(self):
        """Test that the local backend encodes with the sentence-transformers model."""
        import numpy as np

        backend = LocalEmbeddingBackend(dim=4)
        model = MagicMock()
        model.encode.return_value = np.array([0.5, 0.5, 0.5, 0.5], dtype=np.float32)
        backend._model = model

        vector = await backend.embed("hello")

        assert vector == [0.5, 0.5, 0.5, 0.5]
        model.encode.assert_called_once()

    def test_from_config_order(self):
        """Test that EMBEDDING_BACKENDS order becomes the fallback order."""
        config = Config(embedding_backends=["local", "openai"], openai_api_key="sk-test")

        provider = EmbeddingProvider.from_config(config)

        assert [b.name for b in provider.backends] == ["local", "openai"]

    def test_from_config_unknown_backend(self):
        with pytest.raises(ValueError):
            EmbeddingProvider.from_config(Config(embedding_backends=["mystery"]))
