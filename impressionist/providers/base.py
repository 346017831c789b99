"""
Abstract base class for LLM providers using LangChain
"""

import json
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from langchain_core.messages import BaseMessage
from pydantic import BaseModel

from impressionist.schemas.outcome import TokenUsage, usage_from_metadata
from impressionist.utils.logger import get_logger

logger = get_logger(__name__)


class LanguageModelError(Exception):
    """A model call failed (network, auth, provider error)"""


class LanguageModelNotConfigured(LanguageModelError):
    """No provider is configured for the requested tier"""


class StructuredOutputError(LanguageModelError):
    """The model answered, but not with parseable structured output"""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class ProviderResponse(BaseModel):
    """Response from an LLM provider"""

    content: str
    usage: TokenUsage = TokenUsage()
    model: Optional[str] = None
    parsed: Optional[Dict[str, Any]] = None
    parsing_error: Optional[str] = None


class BaseProvider(ABC):
    """Abstract base class for LLM providers using LangChain"""

    def __init__(self, api_base: str, api_key: str, model_name: str):
        self.api_base = api_base
        self.api_key = api_key
        self.model_name = model_name
        self.llm: Any = None  # Will be set by subclasses

    def _log_llm_call(self, messages: List[BaseMessage], **kwargs) -> str:
        """Log LLM call details and return a call ID for correlation"""
        call_id = str(uuid.uuid4())[:8]
        total_chars = sum(len(str(msg.content)) for msg in messages)

        logger.info(
            f"[LLM] Call started: {self.model_name}",
            extra={
                "component": "LLM",
                "call_id": call_id,
                "model": self.model_name,
                "provider": self.__class__.__name__,
                "message_count": len(messages),
                "total_input_chars": total_chars,
                "temperature": kwargs.get("temperature", "default"),
                "structured": kwargs.get("json_schema") is not None,
            },
        )
        return call_id

    def _log_llm_response(
        self,
        call_id: str,
        response: Optional[ProviderResponse],
        duration_ms: float,
        error: Optional[Exception] = None,
    ):
        """Log LLM response details"""
        if error:
            logger.error(
                f"[LLM] Call failed: {self.model_name} ({duration_ms}ms): {error}",
                extra={
                    "component": "LLM",
                    "call_id": call_id,
                    "model": self.model_name,
                    "duration_ms": duration_ms,
                    "error_type": type(error).__name__,
                },
            )
            return

        assert response is not None
        logger.info(
            f"[LLM] Call completed: {self.model_name} ({duration_ms}ms)",
            extra={
                "component": "LLM",
                "call_id": call_id,
                "model": self.model_name,
                "duration_ms": duration_ms,
                "response_chars": len(response.content),
                "usage": response.usage.model_dump(),
                "parsed": response.parsed is not None,
            },
        )
        logger.debug(f"[LLM] {call_id} raw response: {response.content}")

    @abstractmethod
    async def chat(
        self,
        messages: List[BaseMessage],
        json_schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ) -> ProviderResponse:
        """
        Send a chat request to the LLM provider

        Args:
            messages: List of LangChain message objects
            json_schema: Optional JSON schema for structured output
            temperature: Optional sampling temperature override

        Returns:
            ProviderResponse; ``parsed`` is set when a schema was given and
            the output could be parsed
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the provider is healthy and accessible"""
        pass

    async def _invoke(
        self,
        llm: Any,
        messages: List[BaseMessage],
        json_schema: Optional[Dict[str, Any]],
        method: str,
        **kwargs,
    ) -> ProviderResponse:
        """Run one LangChain invocation with logging and timing."""
        call_id = self._log_llm_call(messages, json_schema=json_schema, **kwargs)
        start_time = time.time()

        try:
            if json_schema is not None:
                structured_llm = llm.with_structured_output(
                    json_schema, method=method, include_raw=True
                )
                result = await structured_llm.ainvoke(messages)
                response = self._from_structured_result(result)
            else:
                message = await llm.ainvoke(messages)
                response = ProviderResponse(
                    content=str(message.content),
                    usage=usage_from_metadata(getattr(message, "usage_metadata", None)),
                    model=self.model_name,
                )
        except Exception as e:
            duration_ms = round((time.time() - start_time) * 1000, 2)
            self._log_llm_response(call_id, None, duration_ms, error=e)
            raise LanguageModelError(f"{self.__class__.__name__} error: {e}") from e

        duration_ms = round((time.time() - start_time) * 1000, 2)
        self._log_llm_response(call_id, response, duration_ms)
        return response

    def _from_structured_result(self, result: Dict[str, Any]) -> ProviderResponse:
        """Convert an ``include_raw=True`` structured result to a ProviderResponse."""
        raw = result.get("raw")
        parsed = result.get("parsed")
        parsing_error = result.get("parsing_error")

        if isinstance(parsed, BaseModel):
            parsed = parsed.model_dump()
        if parsed is not None and not isinstance(parsed, dict):
            parsing_error = parsing_error or TypeError(
                f"expected an object, got {type(parsed).__name__}"
            )
            parsed = None

        return ProviderResponse(
            content=self._raw_text(raw),
            usage=usage_from_metadata(getattr(raw, "usage_metadata", None)),
            model=self.model_name,
            parsed=parsed,
            parsing_error=str(parsing_error) if parsing_error else None,
        )

    @staticmethod
    def _raw_text(raw: Any) -> str:
        """Best available text of what the model actually produced."""
        if raw is None:
            return ""
        invalid_calls = getattr(raw, "invalid_tool_calls", None) or []
        if invalid_calls and invalid_calls[0].get("args"):
            return str(invalid_calls[0]["args"])
        tool_calls = getattr(raw, "tool_calls", None) or []
        if tool_calls:
            return json.dumps(tool_calls[0].get("args", {}))
        return str(getattr(raw, "content", "") or "")
