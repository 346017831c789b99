"""
LLM provider implementations for the Impressionist engine
"""

from .base import (
    BaseProvider,
    LanguageModelError,
    LanguageModelNotConfigured,
    ProviderResponse,
    StructuredOutputError,
)
from .factory import create_provider
from .generic import GenericProvider
from .language_model import LanguageModel, StructuredResult, create_language_model
from .openai import OpenAIProvider

__all__ = [
    "BaseProvider",
    "ProviderResponse",
    "OpenAIProvider",
    "GenericProvider",
    "create_provider",
    "LanguageModel",
    "StructuredResult",
    "create_language_model",
    "LanguageModelError",
    "LanguageModelNotConfigured",
    "StructuredOutputError",
]
