"""
Generic provider for OpenAI-compatible endpoints (LM Studio, Ollama, vLLM)
"""

import json
from typing import Any, Dict, List, Optional

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from impressionist.utils.logger import get_logger

from .base import BaseProvider, ProviderResponse

logger = get_logger(__name__)

JSON_MODE_INSTRUCTIONS = """Respond with a single JSON object and nothing else.
The object must match this JSON schema:
{schema}"""


class GenericProvider(BaseProvider):
    """Generic provider for OpenAI-compatible endpoints using LangChain"""

    def __init__(self, api_base: str, api_key: str, model_name: str):
        super().__init__(api_base, api_key, model_name)
        self.llm = ChatOpenAI(
            model=model_name,
            base_url=api_base,
            api_key=api_key or "not-needed",  # type: ignore
            temperature=0.7,
        )

    async def chat(
        self,
        messages: List[BaseMessage],
        json_schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ) -> ProviderResponse:
        """Send chat request to an OpenAI-compatible endpoint"""
        llm: Any = self.llm
        if temperature is not None:
            llm = self.llm.model_copy(update={"temperature": temperature})

        # json_mode relies on the prompt to describe the expected shape
        if json_schema is not None:
            messages = [
                SystemMessage(
                    content=JSON_MODE_INSTRUCTIONS.format(
                        schema=json.dumps(json_schema, indent=2)
                    )
                ),
                *messages,
            ]

        return await self._invoke(
            llm, messages, json_schema, "json_mode", temperature=temperature
        )

    async def health_check(self) -> bool:
        """Check if the generic endpoint is accessible"""
        try:
            await self.llm.ainvoke([HumanMessage(content="Hello")])
            return True
        except Exception:
            return False
