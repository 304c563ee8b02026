"""Knowledge corpus ingestion.

Curated entries are loaded from a JSON file (a list of objects with
title, content, category, source and optional id / freshness_score),
embedded, and stored. Entries are immutable: re-ingesting the same file
skips ids that already exist.

Entries whose embedding fails are stored without a vector and picked up
later by embed_missing().
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from database import Database
from embeddings import EmbeddingProvider
from errors import EmbeddingUnavailable
from models.knowledge import KnowledgeEntry

logger = logging.getLogger(__name__)


@dataclass
class IngestReport:
    """Counts from one ingestion or embedding backfill run."""
    inserted: int = 0
    existing: int = 0
    embedded: int = 0
    unembedded: int = 0
    invalid: int = 0
    errors: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"inserted={self.inserted} existing={self.existing} embedded={self.embedded} "
            f"unembedded={self.unembedded} invalid={self.invalid}"
        )


def entry_id(title: str, content: str) -> str:
    """Stable id for an entry without one (same text, same id)."""
    digest = hashlib.sha1(f"{title.strip().lower()}\n{content.strip()}".encode("utf-8"))
    return digest.hexdigest()[:16]


def load_entries(path: Path | str) -> tuple[list[KnowledgeEntry], list[str]]:
    """Parse a JSON corpus file.

    Returns:
        (valid entries, error messages for invalid records)

    Raises:
        ValueError: If the file is not a JSON list
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("entries", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of knowledge entries")

    entries: list[KnowledgeEntry] = []
    errors: list[str] = []
    for i, record in enumerate(data):
        try:
            record = dict(record)
            record.setdefault("id", entry_id(record.get("title", ""), record.get("content", "")))
            record.pop("embedding", None)
            record.pop("embedding_model", None)
            entries.append(KnowledgeEntry.model_validate(record))
        except (TypeError, ValueError, ValidationError) as e:
            errors.append(f"record {i}: {e}")
    return entries, errors


class KnowledgeIngestor:
    """Embed and store knowledge entries."""

    def __init__(self, db: Database, provider: EmbeddingProvider):
        self.db = db
        self.provider = provider

    async def ingest(self, entries: list[KnowledgeEntry]) -> IngestReport:
        report = IngestReport()
        for entry in entries:
            if self.db.knowledge_exists(entry.id):
                report.existing += 1
                continue
            try:
                vector, tag = await self.provider.embed_tagged(entry.embedding_text)
                entry = entry.model_copy(update={"embedding": vector, "embedding_model": tag})
                report.embedded += 1
            except EmbeddingUnavailable as e:
                logger.warning("Entry stored without embedding | id=%s error=%s", entry.id, e)
                report.unembedded += 1
            if self.db.insert_knowledge(entry, commit=False):
                report.inserted += 1
            else:
                report.existing += 1
        self.db.commit()
        logger.info("Knowledge ingested | %s", report)
        return report

    async def ingest_file(self, path: Path | str) -> IngestReport:
        entries, errors = load_entries(path)
        for error in errors:
            logger.warning("Invalid knowledge record | file=%s %s", path, error)
        report = await self.ingest(entries)
        report.invalid = len(errors)
        report.errors.extend(errors)
        return report

    async def embed_missing(self, limit: int | None = None) -> IngestReport:
        """Embed stored entries that have no vector yet."""
        report = IngestReport()
        for entry in self.db.knowledge_missing_embeddings(limit=limit):
            try:
                vector, tag = await self.provider.embed_tagged(entry.embedding_text)
            except EmbeddingUnavailable as e:
                report.unembedded += 1
                report.errors.append(f"{entry.id}: {e}")
                continue
            if self.db.set_knowledge_embedding(entry.id, vector, tag, commit=False):
                report.embedded += 1
        self.db.commit()
        logger.info("Missing embeddings backfilled | %s", report)
        return report
