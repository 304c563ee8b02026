"""Critique agent: one persona critique of a set of screens.

The agent sends the assembled prompt plus the stored image URLs to a
vision-capable model and parses a PersonaCritique from the response.

Models are an ordered fallback chain (CRITIQUE_MODELS). Each model is
tried in turn; the first valid critique wins. Models tagged without
"vision" are skipped when there are screens to look at. When every model
fails the agent raises the typed provider error matching the last failure
(AuthenticationFailure, RateLimitExceeded, ...) carrying every attempt,
or FallbackExhausted when the failure has no provider type.

Model strings use pydantic-ai's provider:model format. A local
OpenAI-compatible server can be used with "openai:<model>@<base_url>".
"""

import logging
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI
from pydantic_ai import Agent, ImageUrl, PromptedOutput, RunContext, UsageLimits
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.profiles.openai import OpenAIModelProfile
from pydantic_ai.providers.openai import OpenAIProvider

from agents.prompts import PromptPayload
from config import MODEL_CAPABILITIES, parse_model_entry
from errors import FallbackExhausted, categorize_error, provider_error
from models.critique import PersonaCritique

logger = logging.getLogger(__name__)


@dataclass
class CritiqueContext:
    """Runtime context passed to the critique agent.

    Attributes:
        system_prompt: Persona voice for this run
    """
    system_prompt: str


def _parse_local_model(model_str: str) -> tuple[str, str] | None:
    """Parse local model string into (model_name, base_url) or None if not local."""
    if model_str.startswith("openai:") and "@" in model_str:
        rest = model_str[7:]
        model_name, base_url = rest.split("@", 1)
        return model_name, base_url
    return None


def _create_model(model):
    """Create a PydanticAI model instance or pass through remote model string."""
    if not isinstance(model, str):
        return model
    parsed = _parse_local_model(model)
    if parsed:
        model_name, base_url = parsed
        logger.info("Using local model | model=%s base_url=%s", model_name, base_url)
        client = AsyncOpenAI(base_url=base_url, api_key="local-model")
        profile = OpenAIModelProfile(supports_json_object_output=False)
        return OpenAIChatModel(
            model_name=model_name,
            provider=OpenAIProvider(openai_client=client),
            profile=profile,
        )
    return model


def model_label(model) -> str:
    if isinstance(model, str):
        return model
    return getattr(model, "model_name", type(model).__name__)


def _create_agent(model) -> Agent[CritiqueContext, PersonaCritique]:
    """Create the underlying PydanticAI agent for one model."""
    model_instance = _create_model(model)
    is_local = isinstance(model, str) and _parse_local_model(model) is not None
    output_type = PromptedOutput(PersonaCritique) if is_local else PersonaCritique

    agent = Agent(
        model_instance,
        output_type=output_type,
        deps_type=CritiqueContext,
        retries=2,
    )

    @agent.system_prompt
    def persona_prompt(ctx: RunContext[CritiqueContext]) -> str:
        return ctx.deps.system_prompt

    return agent


@dataclass(frozen=True)
class CritiqueBackend:
    """One entry of the model fallback chain.

    Attributes:
        model: pydantic-ai model string or Model instance
        capabilities: Inputs the model accepts ("text", "vision")
    """
    model: Any
    capabilities: frozenset[str] = frozenset(MODEL_CAPABILITIES)

    @classmethod
    def parse(cls, entry) -> "CritiqueBackend":
        if isinstance(entry, CritiqueBackend):
            return entry
        if not isinstance(entry, str):
            return cls(entry)
        model, capabilities = parse_model_entry(entry)
        return cls(model, capabilities)

    @property
    def sees_images(self) -> bool:
        return "vision" in self.capabilities


class CritiqueAgent:
    """Produces persona critiques with model fallback.

    Backends that are not tagged with "vision" are skipped whenever the
    critique has images to look at.

    Example:
        >>> agent = CritiqueAgent(config.critique_models)
        >>> critique = await agent.critique(payload, session.image_urls)
    """

    def __init__(self, models: list, request_limit: int = 4):
        if not models:
            raise ValueError("CritiqueAgent requires at least one model")
        self.backends = [CritiqueBackend.parse(m) for m in models]
        self.models = [b.model for b in self.backends]
        self.request_limit = request_limit
        self._agents: dict[int, Agent] = {}

    def _agent_for(self, index: int) -> Agent:
        if index not in self._agents:
            self._agents[index] = _create_agent(self.models[index])
        return self._agents[index]

    async def _run_model(self, index: int, payload: PromptPayload, image_urls: list[str]) -> PersonaCritique:
        agent = self._agent_for(index)
        user_content = [payload.prompt, *(ImageUrl(url=url) for url in image_urls)]
        result = await agent.run(
            user_content,
            deps=CritiqueContext(system_prompt=payload.system_prompt),
            usage_limits=UsageLimits(request_limit=self.request_limit),
        )
        usage = result.usage()
        logger.debug(
            "Critique usage | model=%s input_tokens=%d output_tokens=%d",
            model_label(self.models[index]),
            usage.input_tokens or 0,
            usage.output_tokens or 0,
        )
        return result.output

    async def critique(self, payload: PromptPayload, image_urls: list[str]) -> PersonaCritique:
        """Run one persona critique, falling back through the model chain.

        Raises:
            ProviderError: If every model failed and the last failure was an
                auth, rate limit, access or network error (attempts attached)
            FallbackExhausted: If every model failed for any other reason
        """
        persona = payload.metadata.get("persona", "clarity")
        attempts: list[tuple[str, str]] = []
        last_error: Exception | None = None

        for index, backend in enumerate(self.backends):
            label = model_label(backend.model)
            if image_urls and not backend.sees_images:
                logger.info("Critique model skipped | model=%s persona=%s reason=no vision", label, persona)
                attempts.append((label, "skipped: no vision support"))
                continue
            try:
                critique = await self._run_model(index, payload, image_urls)
            except Exception as e:
                logger.warning("Critique model failed | model=%s persona=%s error=%s", label, persona, e)
                attempts.append((label, str(e)))
                last_error = e
                continue

            if attempts:
                logger.info("Critique fallback succeeded | model=%s persona=%s", label, persona)
            annotations = [
                a if a.persona else a.model_copy(update={"persona": persona})
                for a in critique.annotations
            ]
            return critique.model_copy(update={"persona": persona, "model": label, "annotations": annotations})

        exhausted = FallbackExhausted("critique model", attempts)
        if last_error is None:
            raise exhausted
        exhausted.category = categorize_error(last_error)
        typed = provider_error(last_error, str(exhausted), attempts)
        if typed is not None:
            raise typed from exhausted
        raise exhausted from last_error
