"""
Story schema definitions.

A story arrives already parsed (from YAML, JSON or code) as a mapping; these
models validate its shape. Stories are never mutated once loaded.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)

# Bool is listed first so True/False never collapse into 1/0
FlagValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]

CONDITION_KEYS = {"all_of", "any_of", "none_of"}


class FlagCondition(BaseModel):
    """Structural predicate over flag names; entries may be prefixed with '!'"""

    all_of: Optional[List[str]] = Field(None, description="Every entry must hold")
    any_of: Optional[List[str]] = Field(None, description="At least one entry must hold")
    none_of: Optional[List[str]] = Field(None, description="No entry may hold")

    def is_empty(self) -> bool:
        return self.all_of is None and self.any_of is None and self.none_of is None

    def describe(self) -> str:
        """Render the condition as plain text for prompts."""
        parts = []
        if self.all_of:
            parts.append(" AND ".join(_describe_token(t) for t in self.all_of))
        if self.any_of:
            parts.append("(" + " OR ".join(_describe_token(t) for t in self.any_of) + ")")
        if self.none_of:
            parts.append(" AND ".join(f"NOT {_describe_token(t)}" for t in self.none_of))
        return " AND ".join(parts) if parts else "always"


def _describe_token(token: str) -> str:
    if token.startswith("!"):
        return f"{token[1:].strip()} is not set"
    return f"{token} is set"


class FlagDefinition(BaseModel):
    """Story flag with a hint to the narrator about when to set it"""

    default: FlagValue = Field(default=False)
    description: str = Field(default="", description="When the narrator should set it")
    requires: Optional[FlagCondition] = Field(
        None, description="Must hold before the flag may take a non-default value"
    )


class SceneTransition(BaseModel):
    """Outgoing edge from a scene"""

    requires: Optional[FlagCondition] = Field(None, description="Flag-based condition")
    when: Optional[str] = Field(None, description="Natural-language condition")

    @model_validator(mode="before")
    @classmethod
    def accept_bare_condition(cls, data: Any) -> Any:
        # {"all_of": [...]} is shorthand for {"requires": {"all_of": [...]}}
        if isinstance(data, dict) and data and set(data) <= CONDITION_KEYS:
            return {"requires": data}
        if isinstance(data, str):
            return {"when": data}
        return data


class Scene(BaseModel):
    """Impressionistic outline of one scene"""

    id: str = Field(default="", description="Filled from the story's scene key")
    sketch: str = Field(..., description="Narrative seed for the narrator")
    location: Optional[str] = None
    guidance: Optional[str] = None
    leads_to: Dict[str, str] = Field(
        default_factory=dict, description="Legacy natural-language transitions"
    )
    transitions: Dict[str, SceneTransition] = Field(default_factory=dict)
    initial_flags: Dict[str, FlagValue] = Field(default_factory=dict)


class Ending(BaseModel):
    """One way the story can conclude"""

    id: str
    sketch: str
    requires: Optional[FlagCondition] = None
    when: Optional[Union[str, List[str]]] = None

    def when_list(self) -> List[str]:
        if self.when is None:
            return []
        if isinstance(self.when, str):
            return [self.when] if self.when.strip() else []
        return [w for w in self.when if w.strip()]


class EndingCollection(BaseModel):
    """Endings plus the conditions that gate all of them"""

    requires: Optional[FlagCondition] = None
    when: Optional[Union[str, List[str]]] = None
    variations: List[Ending] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"variations": data}
        return data

    def when_list(self) -> List[str]:
        if self.when is None:
            return []
        if isinstance(self.when, str):
            return [self.when] if self.when.strip() else []
        return [w for w in self.when if w.strip()]

    def get(self, ending_id: str) -> Optional[Ending]:
        for ending in self.variations:
            if ending.id == ending_id:
                return ending
        return None


class NarrativeMetadata(BaseModel):
    """Narrative voice and tone"""

    voice: Optional[str] = None
    tone: Optional[str] = None
    setting: Optional[Dict[str, str]] = None
    themes: List[str] = Field(default_factory=list)


class CharacterState(BaseModel):
    """Behavior that applies while its flag condition holds"""

    when: Optional[FlagCondition] = None
    description: str
    voice: Optional[str] = None


class CharacterBehaviors(BaseModel):
    base: str
    states: List[CharacterState] = Field(default_factory=list)


class Character(BaseModel):
    id: str = ""
    name: str
    sketch: str = ""
    voice: Optional[str] = None
    behaviors: Optional[CharacterBehaviors] = None


class Location(BaseModel):
    name: str
    sketch: str = ""
    atmosphere: List[str] = Field(default_factory=list)
    guidance: Optional[str] = None
    connections: List[str] = Field(default_factory=list)
    contains: List[str] = Field(default_factory=list)


class Item(BaseModel):
    name: str
    sketch: str = ""
    found_in: List[str] = Field(default_factory=list)
    reveals: Optional[str] = Field(None, description="Memory recorded when discovered")
    hidden: bool = False

    @field_validator("found_in", mode="before")
    @classmethod
    def wrap_single_location(cls, v):
        if isinstance(v, str):
            return [v]
        return v


class WorldDefinition(BaseModel):
    characters: Dict[str, Character] = Field(default_factory=dict)
    locations: Dict[str, Location] = Field(default_factory=dict)
    items: Dict[str, Item] = Field(default_factory=dict)


class Story(BaseModel):
    """A complete, validated story"""

    title: str = Field(..., min_length=1)
    author: str = ""
    blurb: str = ""
    version: str = "1.0"
    context: str = Field(default="", description="1-3 sentences of story essence")
    guidance: str = Field(default="", description="Global narrator guidance")
    scenes: Dict[str, Scene] = Field(..., min_length=1)
    endings: EndingCollection = Field(default_factory=EndingCollection)
    flags: Dict[str, FlagDefinition] = Field(default_factory=dict)
    narrative: Optional[NarrativeMetadata] = None
    world: Optional[WorldDefinition] = None
    start_scene: Optional[str] = Field(
        None, description="Entry scene id; defaults to the first declared scene"
    )

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v

    @model_validator(mode="after")
    def fill_ids(self) -> "Story":
        for scene_id, scene in self.scenes.items():
            scene.id = scene_id
        if self.world:
            for char_id, character in self.world.characters.items():
                if not character.id:
                    character.id = char_id
        if self.start_scene is not None and self.start_scene not in self.scenes:
            raise ValueError(f"start_scene '{self.start_scene}' is not a declared scene")
        return self

    @property
    def entry_scene_id(self) -> str:
        return self.start_scene or next(iter(self.scenes))
