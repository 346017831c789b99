"""
Two-tier language model capability.

Narration goes to the quality model; classification and memory compaction
go to the cheap "cost" model. Both tiers return schema-shaped dictionaries
that callers validate themselves, so malformed fields can be recovered
instead of rejected wholesale.
"""

import time
from typing import Any, Dict, Optional, Type

from langchain_core.messages import HumanMessage
from pydantic import BaseModel

from impressionist.config import Settings, settings as default_settings
from impressionist.schemas.outcome import TokenUsage
from impressionist.utils.logger import get_logger

from .base import (
    BaseProvider,
    LanguageModelNotConfigured,
    StructuredOutputError,
)
from .factory import create_provider

logger = get_logger(__name__)


class StructuredResult(BaseModel):
    """Unvalidated structured output plus token usage"""

    data: Dict[str, Any]
    usage: TokenUsage = TokenUsage()
    model: Optional[str] = None
    latency_ms: float = 0.0


class LanguageModel:
    """
    Structured-output LLM access with a quality tier and a cost tier.

    Attributes:
        quality: Provider used for narration (None when unconfigured)
        cost: Provider used for cheap calls; falls back to ``quality``
    """

    def __init__(
        self,
        quality: Optional[BaseProvider] = None,
        cost: Optional[BaseProvider] = None,
    ):
        self.quality = quality
        self.cost = cost or quality

    def is_configured(self) -> bool:
        return self.quality is not None

    async def invoke(
        self,
        prompt: str,
        schema: Type[BaseModel],
        temperature: Optional[float] = None,
        use_cost_model: bool = False,
    ) -> StructuredResult:
        """
        Send one prompt and request output shaped like ``schema``.

        Args:
            prompt: Complete prompt text
            schema: pydantic model describing the expected object
            temperature: Sampling temperature override
            use_cost_model: Route to the cheap tier

        Returns:
            StructuredResult whose ``data`` has NOT been validated against
            ``schema``

        Raises:
            LanguageModelNotConfigured: no provider for the requested tier
            StructuredOutputError: the reply could not be parsed as an object
            LanguageModelError: the provider call itself failed
        """
        provider = self.cost if use_cost_model else self.quality
        if provider is None:
            raise LanguageModelNotConfigured(
                "No model configured. Set OPENAI_API_KEY or configure a generic endpoint."
            )

        start_time = time.time()
        response = await provider.chat(
            [HumanMessage(content=prompt)],
            json_schema=schema.model_json_schema(),
            temperature=temperature,
        )
        latency_ms = round((time.time() - start_time) * 1000, 2)

        if response.parsed is None:
            raise StructuredOutputError(
                f"Could not parse {schema.__name__} output: {response.parsing_error}",
                raw_text=response.content,
            )

        return StructuredResult(
            data=response.parsed,
            usage=response.usage,
            model=response.model,
            latency_ms=latency_ms,
        )


def create_language_model(config: Optional[Settings] = None) -> LanguageModel:
    """
    Build a LanguageModel from settings.

    The OpenAI provider needs an API key; without one the model is returned
    unconfigured and every caller falls back to its instructional response.
    """
    config = config or default_settings

    if config.model_provider == "openai" and not config.openai_api_key:
        logger.warning("[LLM] No OpenAI API key configured; narration is disabled")
        return LanguageModel()

    quality = create_provider(config.model_name, config)
    cost = (
        create_provider(config.cost_model_name, config)
        if config.cost_model_name and config.cost_model_name != config.model_name
        else quality
    )
    logger.info(
        f"[LLM] Quality model: {config.model_name}, cost model: {cost.model_name}"
    )
    return LanguageModel(quality=quality, cost=cost)
