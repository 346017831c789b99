"""
Outcome schema definitions for LLM calls.

The ``*Output`` models describe what the model is asked to return; their
JSON schemas are sent with structured-output requests. The remaining models
are what the engine works with after recovery and validation.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class FlagChanges(BaseModel):
    """Flag mutations extracted by the narrator"""

    set: List[str] = Field(
        default_factory=list, description="Story flags that became true this turn"
    )
    clear: List[str] = Field(
        default_factory=list, description="Story flags that stopped being true this turn"
    )

    def is_empty(self) -> bool:
        return not self.set and not self.clear


class DirectorOutput(BaseModel):
    """Complete narrator response to a player action or scene establishment"""

    reasoning: str = Field(
        ..., description="Brief reasoning about the scene and any flag changes"
    )
    narrative_parts: List[str] = Field(
        ..., min_length=1, description="The narration, one paragraph per array element"
    )
    memories: List[str] = Field(
        default_factory=list,
        description="Important details to remember: discoveries, changes to the world, new knowledge",
    )
    importance: int = Field(
        default=5, ge=1, le=10, description="How important this interaction is (1-10)"
    )
    flag_changes: Optional[FlagChanges] = Field(
        default=None, description="Story flags to set or clear as a result of this turn"
    )
    discoveries: List[str] = Field(
        default_factory=list, description="Ids of world items the player discovered"
    )


class DirectorSignals(BaseModel):
    """Engine-facing signals attached to a narration"""

    scene: Optional[str] = None
    ending: Optional[str] = None
    error: Optional[str] = None


class DirectorResponse(BaseModel):
    """Narration plus side effects, uniform across all director modes"""

    narrative: str
    narrative_parts: List[str] = Field(default_factory=list)
    memories: List[str] = Field(default_factory=list)
    importance: Optional[int] = Field(default=None, ge=1, le=10)
    flag_changes: FlagChanges = Field(default_factory=FlagChanges)
    discoveries: List[str] = Field(default_factory=list)
    reasoning: str = ""
    signals: DirectorSignals = Field(default_factory=DirectorSignals)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    latency_ms: float = 0.0
    context_size: int = 0
    llm_calls: int = 0


class ClassifierOutput(BaseModel):
    """Raw classifier reply"""

    reasoning: str = Field(
        ..., description="Justification for each clause met or not met (1-2 sentences)"
    )
    result: str = Field(..., description='"continue" or a transition token such as "T0"')


class ClassificationMode(str, Enum):
    ACTION = "action"
    SCENE_TRANSITION = "scene_transition"
    ENDING = "ending"


class ClassificationResult(BaseModel):
    mode: ClassificationMode
    target_id: Optional[str] = None
    reasoning: str = ""
    confidence: float = Field(default=0.5, ge=0, le=1)


class CompactedMemory(BaseModel):
    content: str = Field(..., description="The consolidated memory content")
    importance: int = Field(..., ge=1, le=10, description="Importance rating from 1-10")


class CompactionOutput(BaseModel):
    compacted_memories: List[CompactedMemory] = Field(
        ..., description="Array of compacted memories"
    )


def usage_from_metadata(metadata: Optional[Dict[str, Any]]) -> TokenUsage:
    """Build TokenUsage from LangChain usage metadata (any key casing)."""
    if not metadata:
        return TokenUsage()
    input_tokens = metadata.get("input_tokens", metadata.get("prompt_tokens", 0)) or 0
    output_tokens = (
        metadata.get("output_tokens", metadata.get("completion_tokens", 0)) or 0
    )
    return TokenUsage(input_tokens=int(input_tokens), output_tokens=int(output_tokens))
