"""
Schemas for stories, session state and LLM outcomes
"""

from .outcome import (
    ClassificationMode,
    ClassificationResult,
    ClassifierOutput,
    CompactedMemory,
    CompactionOutput,
    DirectorOutput,
    DirectorResponse,
    DirectorSignals,
    FlagChanges,
    TokenUsage,
)
from .state import (
    EngineResult,
    GameResponse,
    GameState,
    Interaction,
    MemoryEntry,
    PlayerAction,
)
from .story import (
    Character,
    Ending,
    EndingCollection,
    FlagCondition,
    FlagDefinition,
    FlagValue,
    Item,
    Location,
    Scene,
    SceneTransition,
    Story,
    WorldDefinition,
)

__all__ = [
    # Story models
    "Story",
    "Scene",
    "SceneTransition",
    "Ending",
    "EndingCollection",
    "FlagCondition",
    "FlagDefinition",
    "FlagValue",
    "WorldDefinition",
    "Character",
    "Location",
    "Item",
    # Session state
    "GameState",
    "Interaction",
    "MemoryEntry",
    "PlayerAction",
    "GameResponse",
    "EngineResult",
    # LLM outcomes
    "DirectorOutput",
    "DirectorResponse",
    "DirectorSignals",
    "FlagChanges",
    "ClassifierOutput",
    "ClassificationMode",
    "ClassificationResult",
    "CompactedMemory",
    "CompactionOutput",
    "TokenUsage",
]
