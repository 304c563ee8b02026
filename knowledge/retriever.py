"""Similarity search over the knowledge corpus.

Search is brute-force cosine similarity over a snapshot of the stored
vectors. The corpus is small (hundreds to low thousands of curated
entries), so a numpy matrix product over all rows is fast enough and
needs no index structure.

Ranking rule (used everywhere matches are ordered):
    similarity descending, ties broken by entry id ascending.
"""

import logging

import numpy as np

from database import Database, StoredVector
from embeddings import EmbeddingProvider
from errors import EmbeddingUnavailable, RetrievalEmpty
from models.knowledge import KnowledgeMatch

logger = logging.getLogger(__name__)

# Queries every retrieval starts from
BASE_QUERIES = [
    "UX design principles",
    "usability best practices",
    "user interface guidelines",
    "conversion optimization",
    "accessibility standards",
]

# Extra queries added when the goal mentions a keyword
KEYWORD_QUERIES: dict[str, list[str]] = {
    "button": ["button design UX", "call to action buttons", "button accessibility"],
    "form": ["form design conversion", "form usability", "form validation patterns"],
    "checkout": ["checkout optimization", "ecommerce checkout flow", "cart abandonment"],
    "mobile": ["mobile UX patterns", "responsive design", "mobile usability"],
    "navigation": ["navigation UX", "menu design patterns", "navigation accessibility"],
    "landing": ["landing page conversion", "landing page optimization", "page layout design"],
    "dashboard": ["dashboard UX design", "data visualization", "admin interface design"],
    "search": ["search UX patterns", "search functionality", "filters and sorting"],
    "signup": ["signup flow optimization", "registration forms", "onboarding UX"],
    "color": ["color theory UX", "color accessibility", "brand color usage"],
    "typography": ["typography UX", "font readability", "text hierarchy"],
    "spacing": ["layout spacing", "white space design", "visual hierarchy"],
}

# Stored vectors are float32, so a similarity equal to the threshold can come
# back a few ulps below it. Matches within this distance of the threshold pass.
SIMILARITY_TOLERANCE = 1e-6

GOAL_QUERY_MIN_CHARS = 10
GOAL_QUERY_MAX_CHARS = 100


def build_search_queries(goal: str | None) -> list[str]:
    """Derive search queries from a free-text goal.

    Base queries first, then keyword-triggered queries in KEYWORD_QUERIES
    order, then the goal itself when it is a short phrase. Duplicates are
    removed keeping first occurrence.
    """
    queries = list(BASE_QUERIES)
    goal = (goal or "").strip()
    if goal:
        lowered = goal.lower()
        for keyword, related in KEYWORD_QUERIES.items():
            if keyword in lowered:
                queries.extend(related)
        if GOAL_QUERY_MIN_CHARS < len(goal) < GOAL_QUERY_MAX_CHARS:
            queries.append(goal)
    return list(dict.fromkeys(queries))


def rank_matches(matches: list[KnowledgeMatch]) -> list[KnowledgeMatch]:
    return sorted(matches, key=lambda m: (-m.similarity, m.id))


class KnowledgeRetriever:
    """Read-only similarity search over the knowledge corpus.

    Attributes:
        db: Database holding knowledge_entries
        provider: Embedding provider for text queries (retrieve only)
        threshold: Default minimum similarity for retrieve()
        top_k: Default result count for retrieve()
    """

    def __init__(
        self,
        db: Database,
        provider: EmbeddingProvider | None = None,
        threshold: float = 0.5,
        top_k: int = 8,
    ):
        self.db = db
        self.provider = provider
        self.threshold = threshold
        self.top_k = top_k

    def search(
        self,
        query_embedding: list[float] | np.ndarray,
        threshold: float,
        top_k: int,
        category: str | None = None,
        model_tag: str | None = None,
    ) -> list[KnowledgeMatch]:
        """Rank stored entries by cosine similarity to a query vector.

        Args:
            query_embedding: Query vector
            threshold: Minimum similarity (inclusive, within SIMILARITY_TOLERANCE)
            top_k: Maximum number of matches
            category: Only search entries with this category
            model_tag: Only compare vectors produced by this embedding model

        Returns:
            Matches with similarity >= threshold, best first (empty if none)
        """
        rows = self.db.knowledge_snapshot(category=category)
        return self._rank(rows, query_embedding, threshold, top_k, model_tag)

    def _rank(
        self,
        rows: list[StoredVector],
        query_embedding,
        threshold: float,
        top_k: int,
        model_tag: str | None,
    ) -> list[KnowledgeMatch]:
        if not rows or top_k <= 0:
            return []

        query = np.asarray(query_embedding, dtype=np.float64)
        dim = query.shape[0]
        candidates = [
            row for row in rows
            if row.embedding is not None
            and row.embedding.shape[0] == dim
            and (model_tag is None or row.embedding_model == model_tag)
        ]
        excluded = sum(1 for row in rows if row.embedding is not None) - len(candidates)
        if excluded:
            logger.warning(
                "Knowledge rows skipped (model/dimension mismatch) | skipped=%d model=%s dim=%d",
                excluded, model_tag, dim,
            )
        if not candidates:
            return []

        matrix = np.vstack([row.embedding for row in candidates]).astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        matches = [
            KnowledgeMatch(
                id=row.id,
                title=row.title,
                content=row.content,
                category=row.category,
                source=row.source,
                similarity=float(sim),
            )
            for row, sim in zip(candidates, similarities)
            if sim >= threshold - SIMILARITY_TOLERANCE
        ]
        return rank_matches(matches)[:top_k]

    async def retrieve(
        self,
        goal: str | None,
        threshold: float | None = None,
        top_k: int | None = None,
        category: str | None = None,
    ) -> list[KnowledgeMatch]:
        """Find research relevant to a goal.

        Each derived search query is embedded and searched; an entry hit by
        several queries keeps its best similarity. Embedding failures degrade
        to fewer (or no) matches and are never raised.
        """
        threshold = self.threshold if threshold is None else threshold
        top_k = self.top_k if top_k is None else top_k
        if self.provider is None:
            logger.debug("Retrieval skipped | reason=no embedding provider")
            return []

        rows = self.db.knowledge_snapshot(category=category)
        if not rows:
            logger.info("Retrieval skipped | reason=empty corpus")
            return []

        queries = build_search_queries(goal)
        best: dict[str, KnowledgeMatch] = {}
        embedded = 0
        for query in queries:
            try:
                vector, tag = await self.provider.embed_tagged(query)
            except EmbeddingUnavailable as e:
                logger.warning("Query embedding unavailable | query='%s' error=%s", query[:50], e)
                continue
            embedded += 1
            for match in self._rank(rows, vector, threshold, top_k, tag):
                current = best.get(match.id)
                if current is None or match.similarity > current.similarity:
                    best[match.id] = match

        if not embedded:
            logger.warning("Retrieval degraded | reason=embedding unavailable queries=%d", len(queries))
            return []

        results = rank_matches(list(best.values()))[:top_k]
        if not results:
            logger.info("%s | queries=%d threshold=%.2f", RetrievalEmpty.__name__, len(queries), threshold)
        else:
            logger.info(
                "Retrieval complete | queries=%d matches=%d top=%.3f",
                len(queries), len(results), results[0].similarity,
            )
        return results
