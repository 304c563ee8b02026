"""PydanticAI agents and prompts for the Lens critique pipeline.

PromptBuilder:
    Deterministic prompt assembly: goal, research context, persona
    instructions and output rules.

CritiqueAgent:
    Vision critique with an ordered model fallback chain. Produces one
    PersonaCritique per prompt.

Example:
    >>> from agents import CritiqueAgent, PromptBuilder
    >>> payload = PromptBuilder().build(BASE_PROMPT, context, "clarity", goal, 1, False)
    >>> critique = await CritiqueAgent(config.critique_models).critique(payload, urls)
"""

from agents.critic import CritiqueAgent
from agents.prompts import PromptBuilder, PromptPayload

__all__ = [
    "CritiqueAgent",
    "PromptBuilder",
    "PromptPayload",
]
