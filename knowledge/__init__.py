"""Knowledge corpus: retrieval, context assembly, and ingestion.

KnowledgeRetriever:
    Cosine similarity search over a snapshot of the stored corpus.
    Only vectors produced by the same embedding model as the query
    are compared.

ContextAssembler:
    Turns ranked matches into a bounded research context block with
    citation provenance.

KnowledgeIngestor:
    Loads curated entries from JSON, embeds them, and stores them.

Example:
    >>> from knowledge import KnowledgeRetriever, ContextAssembler
    >>> retriever = KnowledgeRetriever(db, provider)
    >>> matches = await retriever.retrieve("Improve checkout conversion")
    >>> context = ContextAssembler().build(matches, max_context_chars=6000)
"""

from knowledge.context import ContextAssembler
from knowledge.ingest import IngestReport, KnowledgeIngestor
from knowledge.retriever import KnowledgeRetriever, build_search_queries

__all__ = [
    "ContextAssembler",
    "IngestReport",
    "KnowledgeIngestor",
    "KnowledgeRetriever",
    "build_search_queries",
]
