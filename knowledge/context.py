"""Research context assembly.

Formats ranked knowledge matches into citation blocks under a character
budget. Blocks are whole or absent: the first block that does not fit
ends assembly, so the included blocks are always a prefix of the ranking.

Block format:
    [1] Title (category, similarity 0.87)
    Truncated content...
    Source: Nielsen Norman Group

Blocks are separated by a blank line.
"""

import logging

from models.knowledge import Citation, KnowledgeMatch, RAGContext

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "UX Research Database"


class ContextAssembler:
    """Build a RAGContext from ranked matches.

    Pure and deterministic: the same matches, budget and notes always give
    the same context.

    Attributes:
        snippet_chars: Content characters kept per block
    """

    def __init__(self, snippet_chars: int = 400):
        self.snippet_chars = snippet_chars

    def _snippet(self, content: str) -> str:
        content = content.strip()
        if len(content) <= self.snippet_chars:
            return content
        return content[: max(self.snippet_chars - 3, 0)].rstrip() + "..."

    def format_block(self, index: int, match: KnowledgeMatch) -> str:
        return (
            f"[{index}] {match.title} ({match.category}, similarity {match.similarity:.2f})\n"
            f"{self._snippet(match.content)}\n"
            f"Source: {match.source or DEFAULT_SOURCE}\n"
        )

    @staticmethod
    def _note_block(label: str, notes: str) -> str:
        return f"[{label}]\n{notes.strip()}\n"

    def build(
        self,
        matches: list[KnowledgeMatch],
        max_context_chars: int,
        competitive_notes: str | None = None,
        vision_notes: str | None = None,
    ) -> RAGContext:
        """Assemble ranked matches (and optional notes) into a bounded context.

        Args:
            matches: Matches in rank order; repeated ids keep the first
            max_context_chars: Hard limit on len(context.text)
            competitive_notes: Optional competitor findings, added after the research blocks
            vision_notes: Optional visual-analysis notes, added last

        Returns:
            RAGContext whose text never exceeds max_context_chars
        """
        unique: list[KnowledgeMatch] = []
        seen: set[str] = set()
        for match in matches:
            if match.id not in seen:
                seen.add(match.id)
                unique.append(match)

        blocks: list[str] = []
        used = 0
        included: list[KnowledgeMatch] = []
        citations: list[Citation] = []
        categories: dict[str, int] = {}
        stopped = False

        def fits(block: str) -> bool:
            separator = 1 if blocks else 0
            return used + separator + len(block) <= max_context_chars

        for match in unique:
            index = len(included) + 1
            block = self.format_block(index, match)
            if not fits(block):
                stopped = True
                logger.debug(
                    "Context budget reached | included=%d dropped_from=%d budget=%d",
                    len(included), index, max_context_chars,
                )
                break
            used += (1 if blocks else 0) + len(block)
            blocks.append(block)
            included.append(match)
            citations.append(Citation(
                index=index,
                id=match.id,
                title=match.title,
                category=match.category,
                source=match.source,
                similarity=match.similarity,
            ))
            categories[match.category] = categories.get(match.category, 0) + 1

        if not stopped:
            for label, notes in (("Competitive context", competitive_notes), ("Visual analysis", vision_notes)):
                if not notes or not notes.strip():
                    continue
                block = self._note_block(label, notes)
                if not fits(block):
                    break
                used += (1 if blocks else 0) + len(block)
                blocks.append(block)

        text = "\n".join(blocks)
        return RAGContext(
            matches=included,
            text=text,
            knowledge_sources_used=len(included),
            total_relevant=len(unique),
            categories=categories,
            citations=citations,
        )
