"""
OpenAI provider implementation using LangChain
"""

from typing import Any, Dict, List, Optional

from langchain_core.messages import BaseMessage, HumanMessage
from langchain_openai import ChatOpenAI

from impressionist.utils.logger import get_logger

from .base import BaseProvider, ProviderResponse
from .capabilities import get_model_capabilities

logger = get_logger(__name__)


class OpenAIProvider(BaseProvider):
    """OpenAI API provider using LangChain"""

    def __init__(self, api_base: str, api_key: str, model_name: str):
        super().__init__(api_base, api_key, model_name)
        self.capabilities = get_model_capabilities(model_name)
        self.llm = self._create_llm(None)
        # One client per temperature override, created lazily
        self._llm_by_temperature: Dict[float, ChatOpenAI] = {}

        logger.info(
            f"Initialized OpenAI provider for {model_name} "
            f"(temperature override: {self.capabilities.supports_temperature})"
        )

    def _create_llm(self, temperature: Optional[float]) -> ChatOpenAI:
        kwargs: Dict[str, Any] = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        return ChatOpenAI(
            model=self.model_name,
            base_url=self.api_base,
            api_key=self.api_key,  # type: ignore
            **kwargs,
        )

    def _llm_for(self, temperature: Optional[float]) -> ChatOpenAI:
        if temperature is None:
            return self.llm
        if not self.capabilities.supports_temperature:
            logger.debug(
                f"Model {self.model_name} does not support temperature, ignoring {temperature}"
            )
            return self.llm
        if temperature not in self._llm_by_temperature:
            self._llm_by_temperature[temperature] = self._create_llm(temperature)
        return self._llm_by_temperature[temperature]

    async def chat(
        self,
        messages: List[BaseMessage],
        json_schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ) -> ProviderResponse:
        """Send chat request to OpenAI API"""
        return await self._invoke(
            self._llm_for(temperature),
            messages,
            json_schema,
            self.capabilities.structured_output_method,
            temperature=temperature,
        )

    async def health_check(self) -> bool:
        """Check if OpenAI API is accessible"""
        try:
            await self.llm.ainvoke([HumanMessage(content="Hello")])
            return True
        except Exception as e:
            logger.warning(f"OpenAI health check failed: {e}")
            return False
