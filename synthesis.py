"""Cross-persona synthesis.

Merges the persona critiques of one session into a single result:

    1. Annotations: critiques without pinned findings get annotations
       generated from their recommendations; all annotations are then
       deduplicated across personas.
    2. Priority matrix: every kept annotation bucketed by severity.
    3. Summary: a deterministic narrative of personas, goal and counts.
    4. Gripe level: how angry the clarity persona is (clarity only).

Everything here is a pure function of the inputs. There is no model call
and no randomness, so the bucket counts depend only on the severities
present.
"""

import hashlib
import logging
import re

from models.critique import Annotation, PersonaCritique, Severity
from models.knowledge import Citation
from models.synthesis import PriorityMatrix, SynthesisResult

logger = logging.getLogger(__name__)

# Generated annotation layout
MIN_PER_IMAGE = 2
MAX_GENERATED = 8
POSITIONS = [
    (15, 15), (85, 15), (15, 85), (85, 85),
    (50, 25), (25, 50), (75, 50), (50, 75),
]

GRIPE_TRIGGERS = [
    ("rage-cranked", ("rage", "terrible", "disaster", "awful")),
    ("medium", ("annoying", "frustrating", "confusing", "problem")),
]

CATEGORY_KEYWORDS = {
    "navigation": ("navigation", "menu", "nav", "header", "sidebar"),
    "conversion": ("button", "cta", "call-to-action", "convert", "sign up", "buy", "purchase"),
    "readability": ("content", "text", "hierarchy", "typography", "font", "read"),
    "usability": ("flow", "path", "journey", "user", "ease", "simple"),
    "interaction": ("feedback", "response", "click", "hover", "interaction"),
    "responsive": ("mobile", "tablet", "responsive", "touch", "device"),
    "performance": ("loading", "speed", "performance", "wait", "fast"),
    "validation": ("error", "validation", "form", "mistake", "prevent"),
}

CRITICAL_KEYWORDS = ("critical", "broken", "blocks", "blocking", "cannot", "can't", "fails", "inaccessible", "urgent")
ENHANCEMENT_KEYWORDS = ("consider", "could", "polish", "nice to have", "optional", "delight", "subtle")

PERSONA_NAMES = {
    "clarity": "Clarity",
    "strategic": "Strategic",
    "mirror": "Mirror",
    "mad_scientist": "Mad Scientist",
    "executive": "Executive",
}

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def normalize_feedback(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    return " ".join(_NON_WORD.sub("", text.lower()).split())


def annotation_key(annotation: Annotation) -> tuple:
    """Identity used to detect the same finding raised twice.

    (image index, rounded position, category, hash of the first 80
    normalized feedback characters)
    """
    digest = hashlib.sha1(normalize_feedback(annotation.feedback)[:80].encode("utf-8")).hexdigest()[:12]
    return (
        annotation.image_index,
        round(annotation.x) if annotation.x is not None else None,
        round(annotation.y) if annotation.y is not None else None,
        annotation.category.strip().lower(),
        digest,
    )


def infer_severity(text: str) -> Severity:
    lowered = text.lower()
    if any(word in lowered for word in CRITICAL_KEYWORDS):
        return Severity.CRITICAL
    if any(word in lowered for word in ENHANCEMENT_KEYWORDS):
        return Severity.ENHANCEMENT
    return Severity.SUGGESTED


def infer_category(text: str) -> str:
    lowered = text.lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return "usability"


def gripe_level(critique: PersonaCritique) -> str:
    """Clarity's gripe level from trigger words in its analysis."""
    text = f"{critique.analysis} {critique.biggest_gripe}".lower()
    for level, triggers in GRIPE_TRIGGERS:
        if any(trigger in text for trigger in triggers):
            return level
    return "low"


def generate_annotations(critique: PersonaCritique, image_count: int, limit: int) -> list[Annotation]:
    """Pin a critique's recommendations to screens.

    Targets MIN_PER_IMAGE annotations per screen (at most `limit`),
    cycling through the recommendations and assigning screens round-robin.
    """
    image_count = max(image_count, 1)
    target = min(image_count * MIN_PER_IMAGE, limit)
    recommendations = [r for r in critique.recommendations if r.strip()]
    if not recommendations:
        recommendations = [f"Improve user experience for {critique.persona} persona"]

    annotations = []
    for i in range(target):
        text = recommendations[i % len(recommendations)]
        x, y = POSITIONS[(i // image_count) % len(POSITIONS)]
        annotations.append(Annotation(
            category=infer_category(text),
            severity=infer_severity(text),
            feedback=text,
            title=text[:60],
            image_index=i % image_count,
            x=x,
            y=y,
            persona=critique.persona,
        ))
    return annotations


def _clamp_image(annotation: Annotation, image_count: int) -> Annotation:
    last = max(image_count, 1) - 1
    index = annotation.image_index
    if index is None:
        index = 0
    elif index > last:
        index = last
    if index == annotation.image_index:
        return annotation
    return annotation.model_copy(update={"image_index": index})


def dedupe_annotations(annotations: list[Annotation]) -> list[Annotation]:
    """Keep the first occurrence of each finding.

    A later duplicate with higher severity upgrades the kept annotation.
    """
    kept: dict[tuple, Annotation] = {}
    for annotation in annotations:
        key = annotation_key(annotation)
        current = kept.get(key)
        if current is None:
            kept[key] = annotation
        elif annotation.severity.rank < current.severity.rank:
            kept[key] = current.model_copy(update={"severity": annotation.severity})
    return list(kept.values())


def build_priority_matrix(annotations: list[Annotation]) -> PriorityMatrix:
    matrix = PriorityMatrix()
    for annotation in annotations:
        matrix.bucket(annotation.severity).append(annotation)
    return matrix


def _persona_list(personas: list[str]) -> str:
    names = [PERSONA_NAMES.get(p, p.replace("_", " ").title()) for p in personas]
    if len(names) <= 1:
        return "".join(names) or "No persona"
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def build_summary(
    personas: list[str],
    goal: str,
    image_count: int,
    matrix: PriorityMatrix,
    sources: int,
) -> str:
    counts = matrix.counts()
    total = sum(counts.values())
    goal_text = f'the goal "{goal.strip()}"' if goal.strip() else "no stated goal"
    parts = [
        f"{_persona_list(personas)} reviewed {image_count} screen(s) for {goal_text}.",
        f"{total} finding(s): {counts['critical']} critical, "
        f"{counts['suggested']} suggested, {counts['enhancement']} enhancement.",
    ]
    if matrix.critical:
        parts.append(f"Fix first: {matrix.critical[0].feedback.strip()}")
    if sources:
        parts.append(f"Grounded in {sources} research source(s).")
    else:
        parts.append("No research sources matched; recommendations rely on general UX principles.")
    return " ".join(parts)


class SynthesisEngine:
    """Merge persona critiques into one SynthesisResult."""

    def synthesize(
        self,
        critiques: list[PersonaCritique],
        goal: str = "",
        image_count: int = 1,
        citations: list[Citation] | None = None,
        session_id: str = "",
    ) -> SynthesisResult:
        """Combine critiques (in persona order) into a single result.

        Args:
            critiques: One critique per persona
            goal: Session goal, used in the summary
            image_count: Number of screens analyzed
            citations: Research provenance carried into the result
            session_id: Owning session

        Returns:
            SynthesisResult with summary, priority matrix and deduplicated annotations
        """
        citations = list(citations or [])
        collected: list[Annotation] = []
        generated_total = 0
        for critique in critiques:
            if critique.annotations:
                collected.extend(
                    _clamp_image(a if a.persona else a.model_copy(update={"persona": critique.persona}), image_count)
                    for a in critique.annotations
                )
                continue
            remaining = MAX_GENERATED - generated_total
            if remaining <= 0:
                continue
            generated = generate_annotations(critique, image_count, remaining)
            generated_total += len(generated)
            collected.extend(generated)

        annotations = dedupe_annotations(collected)
        matrix = build_priority_matrix(annotations)

        level = None
        for critique in critiques:
            if critique.persona == "clarity":
                level = gripe_level(critique)
                break

        personas = [c.persona for c in critiques]
        summary = build_summary(personas, goal, image_count, matrix, len(citations))
        logger.debug(
            "Synthesis complete | session_id=%s personas=%d annotations=%d duplicates=%d",
            session_id, len(critiques), len(annotations), len(collected) - len(annotations),
        )
        return SynthesisResult(
            session_id=session_id,
            persona_feedback=list(critiques),
            summary=summary,
            priority_matrix=matrix,
            annotations=annotations,
            citations=citations,
            gripe_level=level,
        )
