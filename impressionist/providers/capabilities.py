"""
Provider capabilities matrix and model family detection.

Decides, from the model name alone, whether a model accepts a temperature
override and which LangChain structured-output method it handles.
"""

from typing import Dict, Literal

from pydantic import BaseModel

StructuredOutputMethod = Literal["function_calling", "json_mode"]


class ModelCapabilities(BaseModel):
    """Capabilities for a model family."""

    supports_temperature: bool = True
    structured_output_method: StructuredOutputMethod = "function_calling"
    default_max_tokens: int = 4096


# Model family capability definitions, matched by name prefix
MODEL_CAPABILITIES: Dict[str, ModelCapabilities] = {
    # Reasoning families only accept the default temperature
    "gpt-5": ModelCapabilities(supports_temperature=False),
    "o1": ModelCapabilities(supports_temperature=False),
    "o3": ModelCapabilities(supports_temperature=False),
    "o4": ModelCapabilities(supports_temperature=False),
    "gpt-4o": ModelCapabilities(),
    "gpt-4": ModelCapabilities(),
    "gpt-3.5": ModelCapabilities(),
}

OPENAI_COMPATIBLE = ModelCapabilities(
    supports_temperature=True,
    structured_output_method="json_mode",  # Tool calling is not guaranteed
    default_max_tokens=2048,
)


def detect_model_family(model_name: str) -> str:
    """
    Detect the model family from model name.

    Args:
        model_name: Full model name (e.g., "gpt-5-nano", "gpt-4o-mini")

    Returns:
        Model family prefix (e.g., "gpt-5", "gpt-4o") or "openai-compatible"
    """
    # Longest prefix first so "gpt-4o" wins over "gpt-4"
    for prefix in sorted(MODEL_CAPABILITIES, key=len, reverse=True):
        if model_name.startswith(prefix):
            return prefix

    if model_name.startswith("gpt-"):
        return "gpt-4"

    return "openai-compatible"


def get_model_capabilities(model_name: str) -> ModelCapabilities:
    """
    Get capabilities for a model.

    Args:
        model_name: Full model name

    Returns:
        ModelCapabilities for the model family
    """
    family = detect_model_family(model_name)
    return MODEL_CAPABILITIES.get(family, OPENAI_COMPATIBLE)


def supports_temperature(model_name: str) -> bool:
    return get_model_capabilities(model_name).supports_temperature
