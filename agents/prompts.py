"""Prompt assembly for persona critiques.

PromptBuilder merges a base instruction, the assembled research context,
persona instructions and the session parameters into the payload sent to
the critique model. It performs no I/O, and identical inputs always give
byte-identical output.

Prompt layout:
    base prompt
    goal and screen summary
    === RESEARCH CONTEXT === ... === END RESEARCH CONTEXT ===   (only with research)
    persona instructions
    comparative-mode instructions                                (only when comparing)
    annotation output rules
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from models.knowledge import RAGContext

logger = logging.getLogger(__name__)

DEFAULT_PERSONA = "clarity"

RESEARCH_START = "=== RESEARCH CONTEXT ==="
RESEARCH_END = "=== END RESEARCH CONTEXT ==="

BASE_PROMPT = (
    "Analyze the uploaded interface screens and identify the usability, accessibility, "
    "visual hierarchy and conversion issues that most affect the user's goal."
)

PERSONA_SYSTEM_PROMPTS = {
    "clarity": (
        "You are Clarity, a brutally honest UX critic. You tell the hard truths about design "
        "with wit and directness. Be specific, actionable, and don't sugarcoat issues."
    ),
    "strategic": (
        "You are a strategic UX analyst. Focus on business impact, user goals, and measurable "
        "outcomes. Provide strategic recommendations based on UX research principles."
    ),
    "mirror": (
        "You are an empathetic UX mirror. Reflect back what users might feel and experience. "
        "Focus on emotional aspects of the design and user empathy."
    ),
    "mad_scientist": (
        "You are the Mad UX Scientist. Think outside the box with creative, experimental "
        "approaches to UX problems. Propose wild but potentially brilliant solutions."
    ),
    "executive": (
        "You are an executive UX lens. Focus on business impact, ROI, and stakeholder "
        "communication. Provide executive-level insights and recommendations."
    ),
}

PERSONA_INSTRUCTIONS = {
    "clarity": """## Persona: Clarity
Tell the user what people ACTUALLY experience with this design, not what the designer thinks they experience.
- analysis: your honest analysis of the interface
- recommendations: specific, actionable fixes, most important first
- biggest_gripe: the one UX problem that annoys you most
- wisdom: your key insight about the UX
- prediction: what happens if the user follows your advice""",
    "strategic": """## Persona: Strategic
Evaluate the design along four dimensions: user experience strategy, competitive positioning,
implementation feasibility, and success metrics.
- analysis: strategic analysis focused on business impact
- recommendations: business-focused recommendations with expected outcomes
- biggest_gripe: the most critical strategic UX priority
- wisdom: the competitive opportunity the design is missing
- prediction: the measurable improvement expected from the changes""",
    "mirror": """## Persona: Mirror
Help the designer discover insights through reflection rather than verdicts. Consider the
assumptions made about users, how their mental models differ, and what emotions each step evokes.
- analysis: empathetic reflection on what users feel
- recommendations: the empathy gaps to close, one per item
- biggest_gripe: where intent and user perception diverge the most
- wisdom: the story this interface tells from a user's perspective
- prediction: how users will feel after the changes""",
    "mad_scientist": """## Persona: Mad Scientist
Form a bold hypothesis about the interface and propose experiments to test it.
- analysis: your experimental hypothesis and the anomalies you found
- recommendations: unconventional experiments worth running
- biggest_gripe: the strangest pattern in the interface
- wisdom: your lab notes on user behavior
- prediction: what the boldest experiment would reveal""",
    "executive": """## Persona: Executive
Communicate to stakeholders: risk, ROI, and competitive implications.
- analysis: a high-level executive summary of UX impact
- recommendations: executive recommendations tied to business risk
- biggest_gripe: the business risk that worries you most
- wisdom: the ROI implication of the current UX
- prediction: how fixing the UX affects competitive positioning""",
}

OUTPUT_RULES = """## Annotation rules
Return findings as annotations. Every annotation needs:
- category: e.g. accessibility, usability, visual_hierarchy, conversion, content
- severity: critical (blocks the goal), suggested (clear improvement), or enhancement (polish)
- feedback: what is wrong and how to fix it
- x, y: position of the problem as a percentage of the screen width and height (0-100)
{image_rule}"""


def resolve_persona(persona: str | None) -> str:
    """Known persona name, or the default for anything unknown."""
    key = (persona or "").strip().lower()
    return key if key in PERSONA_INSTRUCTIONS else DEFAULT_PERSONA


@dataclass(frozen=True)
class PromptPayload:
    """Everything the critique model receives for one persona.

    Attributes:
        system_prompt: Persona voice
        prompt: User message (research, instructions, output rules)
        metadata: Parameters the prompt was built from
    """
    system_prompt: str
    prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"system_prompt": self.system_prompt, "prompt": self.prompt, "metadata": dict(self.metadata)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PromptPayload":
        return cls(
            system_prompt=data["system_prompt"],
            prompt=data["prompt"],
            metadata=dict(data.get("metadata", {})),
        )


class PromptBuilder:
    """Deterministic prompt assembly."""

    @staticmethod
    def _research_section(rag_context: RAGContext | None) -> str | None:
        if rag_context is None or rag_context.is_empty:
            return None
        return "\n".join([
            RESEARCH_START,
            rag_context.text.rstrip("\n"),
            RESEARCH_END,
            "Ground your recommendations in the research above and cite findings by their [n] index.",
        ])

    @staticmethod
    def _comparative_section(image_count: int) -> str:
        lines = [
            "## Comparative analysis",
            f"You are comparing {image_count} screens of one user journey. Evaluate consistency "
            "between screens and the transitions from one step to the next, not just each screen alone.",
        ]
        for i in range(image_count):
            lines.append(f"- Screen {i + 1} = image_index {i}")
        lines.append("Distribute annotations across ALL screens based on their individual content.")
        return "\n".join(lines)

    def build(
        self,
        base_prompt: str,
        rag_context: RAGContext | None,
        persona: str,
        goal: str,
        image_count: int,
        is_comparative: bool,
    ) -> PromptPayload:
        """Assemble the prompt payload.

        Args:
            base_prompt: Core analysis instruction
            rag_context: Assembled research context (None or empty to omit)
            persona: Persona name (unknown names fall back to clarity)
            goal: User's free-text goal
            image_count: Number of screens being analyzed
            is_comparative: Whether the screens form a journey to compare

        Returns:
            PromptPayload with system prompt, prompt and metadata
        """
        resolved = resolve_persona(persona)
        if resolved != (persona or "").strip().lower():
            logger.debug("Unknown persona '%s', using %s", persona, resolved)

        mode = "Multi-screen user journey analysis" if is_comparative else "Single screen analysis"
        sections = [
            base_prompt.strip() or BASE_PROMPT,
            f"USER'S GOAL: {goal.strip() or 'No specific goal provided'}\n"
            f"SCREENS: {image_count} screen(s) - {mode}",
        ]

        research = self._research_section(rag_context)
        if research:
            sections.append(research)

        sections.append(PERSONA_INSTRUCTIONS[resolved])

        if is_comparative:
            sections.append(self._comparative_section(image_count))

        if image_count > 1:
            image_rule = f"- image_index: which screen (0 to {image_count - 1}) the annotation belongs to"
        else:
            image_rule = "- image_index: 0"
        sections.append(OUTPUT_RULES.format(image_rule=image_rule))

        metadata = {
            "persona": resolved,
            "requested_persona": persona,
            "image_count": image_count,
            "mode": "comparative" if is_comparative else "single",
            "has_research_context": research is not None,
            "knowledge_sources_used": rag_context.knowledge_sources_used if rag_context else 0,
            "citation_ids": [c.id for c in rag_context.citations] if rag_context else [],
        }
        return PromptPayload(
            system_prompt=PERSONA_SYSTEM_PROMPTS[resolved],
            prompt="\n\n".join(sections),
            metadata=metadata,
        )
