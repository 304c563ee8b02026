"""Pytest configuration and shared fixtures."""

import math
from unittest.mock import AsyncMock

import pytest

from config import PipelineSettings
from database import Database
from models.critique import Annotation, PersonaCritique
from models.knowledge import KnowledgeEntry

TEST_MODEL_TAG = "fake:unit-2d"


def vector_with_similarity(similarity: float) -> list[float]:
    """2-d unit vector whose cosine similarity to [1, 0] is `similarity`."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity))]


class FakeEmbeddingProvider:
    """Embedding provider stand-in returning one fixed query vector."""

    def __init__(self, vector=None, tag: str = TEST_MODEL_TAG, error: Exception | None = None):
        self.vector = vector or [1.0, 0.0]
        self.tag = tag
        self.error = error
        self.calls: list[str] = []

    async def embed_tagged(self, text: str):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vector), self.tag

    async def embed(self, text: str):
        vector, _ = await self.embed_tagged(text)
        return vector


@pytest.fixture
def db(tmp_path):
    """Fresh database per test.

    Returns:
        Database: SQLite database in a temporary directory
    """
    database = Database(tmp_path / "lens.db")
    yield database
    database.close()


@pytest.fixture
def settings() -> PipelineSettings:
    """Pipeline settings with short timeouts."""
    return PipelineSettings(
        rag_enabled=True,
        match_threshold=0.5,
        match_count=8,
        max_context_chars=6000,
        snippet_chars=400,
        stage_timeouts={
            "prompt_building": 5.0,
            "critique": 5.0,
            "synthesis": 5.0,
            "scoring": 5.0,
        },
        stale_session_minutes=10,
        backfill_delay_seconds=0.0,
        max_workers=2,
        validate_images=False,
    )


@pytest.fixture
def add_knowledge(db):
    """Factory storing a knowledge entry whose similarity to [1, 0] is known."""

    def _add(entry_id: str, similarity: float, category: str = "usability",
             tag: str = TEST_MODEL_TAG, title: str | None = None, content: str | None = None):
        entry = KnowledgeEntry(
            id=entry_id,
            title=title or f"Finding {entry_id}",
            content=content or f"Research content for {entry_id}.",
            category=category,
            embedding=vector_with_similarity(similarity),
            embedding_model=tag,
            source=f"Source {entry_id}",
        )
        assert db.insert_knowledge(entry)
        return entry

    return _add


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def make_provider():
    """Factory for embedding providers with a custom vector, tag or error."""
    return FakeEmbeddingProvider


def _critique_for(persona: str) -> PersonaCritique:
    return PersonaCritique(
        persona=persona,
        analysis="The checkout button is confusing and the form is hard to scan.",
        recommendations=["Make the primary button stand out"],
        annotations=[
            Annotation(
                category="conversion",
                severity="critical",
                feedback="Primary call to action blends into the background",
                image_index=0,
                x=50,
                y=80,
            ),
            Annotation(
                category="accessibility",
                severity="suggested",
                feedback="Placeholder text contrast is below 4.5:1",
                image_index=0,
                x=30,
                y=40,
            ),
        ],
        biggest_gripe="The button hides",
    )


@pytest.fixture
def sample_critique() -> PersonaCritique:
    return _critique_for("clarity")


@pytest.fixture
def fake_critic() -> AsyncMock:
    """Critique agent mock returning one canned critique per persona prompt."""
    critic = AsyncMock()

    async def critique(payload, image_urls):
        return _critique_for(payload.metadata.get("persona", "clarity"))

    critic.critique.side_effect = critique
    return critic
