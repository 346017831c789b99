"""
Session state schema definitions
"""

from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class Interaction(BaseModel):
    """One player turn and the narration it produced"""

    player_input: str
    narrative_response: str
    timestamp: datetime = Field(default_factory=datetime.now)
    scene_id: str
    importance: int = Field(default=5, ge=1, le=10)


class GameState(BaseModel):
    """Authoritative per-session story progress"""

    current_scene_id: str = ""
    is_ended: bool = False
    ending_id: Optional[str] = None
    interactions: List[Interaction] = Field(
        default_factory=list, description="Most recent interactions, oldest first"
    )


class MemoryEntry(BaseModel):
    """Free-text memory retained across turns"""

    id: str
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    importance: int = Field(default=5, ge=1, le=10)


class PlayerAction(BaseModel):
    input: str


class EngineResult(BaseModel, Generic[T]):
    """Success flag plus either data or a descriptive error"""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None


class GameResponse(BaseModel):
    """What a turn hands back to the caller"""

    text: str
    game_state: GameState
    error: Optional[str] = None
    ending_triggered: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
