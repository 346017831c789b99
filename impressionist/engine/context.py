"""
Director context assembly.

Collects everything the narrator needs for one call (story guidance, world
elements active in the current scene, recent dialogue, memories and flag
state) and renders it into the prompt preamble.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from impressionist.engine.flags import FlagStore
from impressionist.schemas.state import Interaction
from impressionist.schemas.story import Item, Location, NarrativeMetadata, Scene, Story
from impressionist.prompts import DIRECTOR_ROLE

PLAYER_CHARACTER_ID = "player"
RECENT_DIALOGUE_LIMIT = 5
MAX_LISTED_DETAILS = 5


class ActiveCharacter(BaseModel):
    """A character as the narrator should portray it right now"""

    id: str
    name: str
    sketch: str = ""
    voice: Optional[str] = None
    behaviors: List[str] = Field(
        default_factory=list, description="Base behavior followed by active flag states"
    )

    @property
    def is_player(self) -> bool:
        return self.id == PLAYER_CHARACTER_ID


class DirectorContext(BaseModel):
    """Rendered-ready snapshot of story and session state"""

    story_context: str = ""
    guidance: str = ""
    narrative: Optional[NarrativeMetadata] = None
    characters: List[ActiveCharacter] = Field(default_factory=list)
    location: Optional[Location] = None
    items: Dict[str, Item] = Field(default_factory=dict)
    scene_id: str = ""
    current_sketch: str = ""
    scene_guidance: Optional[str] = None
    recent_interactions: List[Interaction] = Field(default_factory=list)
    memories: List[str] = Field(default_factory=list)
    flag_context: str = ""
    story_complete: bool = False


def active_characters(story: Story, flags: FlagStore) -> List[ActiveCharacter]:
    """Characters with the behavior states whose conditions currently hold."""
    if not story.world:
        return []

    characters = []
    for char_id, character in story.world.characters.items():
        behaviors: List[str] = []
        voice = character.voice
        if character.behaviors:
            behaviors.append(character.behaviors.base)
            for state in character.behaviors.states:
                if state.when is None or flags.evaluate(state.when):
                    behaviors.append(state.description)
                    if state.voice:
                        voice = state.voice
        characters.append(
            ActiveCharacter(
                id=character.id or char_id,
                name=character.name,
                sketch=character.sketch,
                voice=voice,
                behaviors=behaviors,
            )
        )
    return characters


def discoverable_items(story: Story, scene: Scene) -> Dict[str, Item]:
    """Items placed in the scene's location (every item when it has none)."""
    if not story.world or not story.world.items:
        return {}
    if not scene.location:
        return dict(story.world.items)
    return {
        item_id: item
        for item_id, item in story.world.items.items()
        if not item.found_in or scene.location in item.found_in or scene.id in item.found_in
    }


def build_director_context(
    story: Story,
    scene: Scene,
    flags: FlagStore,
    interactions: List[Interaction],
    memories: List[str],
    story_complete: bool = False,
) -> DirectorContext:
    location = None
    if story.world and scene.location:
        location = story.world.locations.get(scene.location)

    return DirectorContext(
        story_context=story.context,
        guidance=story.guidance,
        narrative=story.narrative,
        characters=active_characters(story, flags),
        location=location,
        items=discoverable_items(story, scene),
        scene_id=scene.id,
        current_sketch=scene.sketch,
        scene_guidance=scene.guidance,
        recent_interactions=list(interactions),
        memories=memories,
        flag_context=flags.flag_context(),
        story_complete=story_complete,
    )


def _render_character(character: ActiveCharacter) -> str:
    role = "PLAYER CHARACTER" if character.is_player else "NPC"
    text = f"  * {character.name} ({role})"
    if character.sketch:
        text += f" - {character.sketch}"
    if character.voice:
        text += f"\n    * Voice: {character.voice}"
    for behavior in character.behaviors:
        text += f"\n    * Behavior: {behavior}"
    return text


def _render_location(location: Location) -> str:
    text = f"  * {location.name}"
    if location.sketch:
        text += f" - {location.sketch}"
    if location.atmosphere:
        text += f"\n    * Atmosphere: {', '.join(location.atmosphere[:MAX_LISTED_DETAILS])}"
    if location.contains:
        text += f"\n    * Contains: {', '.join(location.contains[:MAX_LISTED_DETAILS])}"
    if location.guidance:
        text += f"\n    * Guidance: {location.guidance}"
    return text


def _render_item(item_id: str, item: Item) -> str:
    text = f"  * {item.name} (id: {item_id})"
    if item.sketch:
        text += f": {item.sketch}"
    if item.reveals:
        text += f"\n    * Reveals: {item.reveals}"
    return text


def render_world(context: DirectorContext) -> str:
    parts = []

    player = [c for c in context.characters if c.is_player]
    npcs = [c for c in context.characters if not c.is_player]
    if player:
        parts.append("**PLAYER CHARACTER:**\n" + "\n".join(_render_character(c) for c in player))
    if npcs:
        parts.append(
            "**NON-PLAYER CHARACTERS (NPCs):**\n"
            + "\n".join(_render_character(c) for c in npcs)
        )
    if context.location:
        parts.append(f"**LOCATIONS:**\n{_render_location(context.location)}")
    if context.items:
        parts.append(
            "**ITEMS:**\n"
            + "\n".join(_render_item(item_id, item) for item_id, item in context.items.items())
        )

    if not parts:
        return ""
    return "**WORLD ELEMENTS:**\n" + "\n\n".join(parts)


def render_recent_dialogue(interactions: List[Interaction], limit: int) -> str:
    if not interactions:
        return ""
    lines = []
    for interaction in interactions[-limit:]:
        lines.append(f"Player: {interaction.player_input}")
        lines.append(f"Response: {interaction.narrative_response}")
    return "\n".join(lines)


def render_preamble(context: DirectorContext) -> str:
    """
    Render the shared context block that precedes every director prompt.

    Story-level content comes first, then the scene, then per-turn state.
    """
    sections = [DIRECTOR_ROLE]

    if context.story_context:
        sections.append(f"**STORY CONTEXT:**\n{context.story_context}")
    if context.guidance:
        sections.append(f"**GLOBAL STORY GUIDANCE:**\n{context.guidance}")

    if context.narrative:
        style = []
        if context.narrative.voice:
            style.append(f"* Voice: {context.narrative.voice}")
        if context.narrative.tone:
            style.append(f"* Tone: {context.narrative.tone}")
        if context.narrative.themes:
            style.append(f"* Themes: {', '.join(context.narrative.themes)}")
        if style:
            sections.append("**NARRATIVE STYLE:**\n" + "\n".join(style))

    world = render_world(context)
    if world:
        sections.append(world)

    if context.current_sketch:
        sections.append(f"**CURRENT SCENE DESCRIPTION:**\n{context.current_sketch}")
    if context.scene_guidance:
        sections.append(f"**CURRENT SCENE DIRECTIVES:**\n{context.scene_guidance}")

    if context.flag_context:
        sections.append(context.flag_context)

    dialogue = render_recent_dialogue(context.recent_interactions, RECENT_DIALOGUE_LIMIT)
    if dialogue:
        sections.append(f"**RECENT DIALOGUE:**\n{dialogue}")
    if context.memories:
        sections.append("**KEY MEMORIES:**\n" + "\n".join(context.memories))

    return "\n\n".join(sections)
