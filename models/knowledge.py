"""Knowledge corpus models for research-augmented critique.

KnowledgeEntry rows are written by ingestion and never updated. Retrieval
returns KnowledgeMatch objects, and the context assembler turns an ordered
list of matches into a RAGContext: a bounded text block plus the citations
that were actually included.
"""

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class KnowledgeEntry(BaseModel):
    """A curated piece of UX research stored with its embedding.

    Attributes:
        id: Unique entry id
        title: Short headline of the finding
        content: Full text of the finding
        category: Category tag (e.g. 'accessibility', 'conversion')
        embedding: Vector from the embedding backend named by embedding_model
        embedding_model: Model-version tag of the backend that produced the vector
        source: Citation for the finding
        freshness_score: 0-1 recency weight assigned at curation time
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    category: str = Field(default="general")
    embedding: list[float] = Field(default_factory=list)
    embedding_model: str = Field(default="")
    source: str = Field(default="")
    freshness_score: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}

    @property
    def embedding_text(self) -> str:
        """Text that gets embedded for this entry."""
        return f"{self.title}\n\n{self.content}"

    @property
    def dim(self) -> int:
        return len(self.embedding)


class KnowledgeMatch(BaseModel):
    """A knowledge entry returned from similarity search."""

    id: str
    title: str
    content: str
    category: str
    source: str = ""
    similarity: float

    def to_dict(self) -> dict:
        """Wire format of a search hit."""
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "similarity": self.similarity,
        }


class Citation(BaseModel):
    """Provenance for one research block included in a prompt."""

    index: int
    id: str
    title: str
    category: str
    source: str = ""
    similarity: float


class RAGContext(BaseModel):
    """Research context assembled for one prompt.

    Owned by the request that built it. Only the citations outlive the
    prompt: they are copied into the synthesis result.

    Attributes:
        matches: Matches whose blocks were included, in rank order
        text: Concatenated citation blocks (never longer than the budget)
        knowledge_sources_used: Number of included knowledge blocks
        total_relevant: Number of matches offered to the assembler
        categories: Category histogram of the included blocks
        citations: Provenance list for the included blocks
    """

    matches: list[KnowledgeMatch] = Field(default_factory=list)
    text: str = ""
    knowledge_sources_used: int = 0
    total_relevant: int = 0
    categories: dict[str, int] = Field(default_factory=dict)
    citations: list[Citation] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "RAGContext":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.text
