"""
Turn orchestrator - runs one player turn at a time for a loaded story.

This module coordinates the game loop, managing:
- Story loading, restart, save and load
- Director (and, in classifier mode, classifier) calls per turn
- Flag updates and deterministic scene transition / ending checks
- Interaction history and memory tracking
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import TypeAdapter, ValidationError

from impressionist.config import Settings, settings as default_settings
from impressionist.engine.classifier import ActionClassifier, build_classification_context
from impressionist.engine.context import DirectorContext, build_director_context
from impressionist.engine.director import NarrativeDirector
from impressionist.engine.flags import FlagStore
from impressionist.engine.memory import MemoryStore
from impressionist.providers.language_model import LanguageModel, create_language_model
from impressionist.schemas.outcome import (
    ClassificationMode,
    DirectorResponse,
    FlagChanges,
)
from impressionist.schemas.state import (
    EngineResult,
    GameResponse,
    GameState,
    Interaction,
    PlayerAction,
)
from impressionist.schemas.story import Ending, FlagValue, Scene, Story
from impressionist.utils.logger import get_logger
from impressionist.utils.metrics import EngineObserver, TurnMetrics

logger = get_logger(__name__)

DISCOVERY_IMPORTANCE = 7
CLASSIFIER_HISTORY_LIMIT = 3

HIGH_IMPORTANCE_KEYWORDS = [
    "discover", "reveal", "secret", "important", "remember", "promise",
    "love", "hate", "trust", "betray", "kill", "die", "death", "ending",
]
MEDIUM_IMPORTANCE_KEYWORDS = [
    "character", "conversation", "tell", "ask", "explain", "story",
    "take", "give", "use", "open", "examine", "search",
]
LONG_RESPONSE_CHARS = 200

_flag_state_adapter = TypeAdapter(Dict[str, FlagValue])


def estimate_importance(player_input: str, narrative: str) -> int:
    """Keyword heuristic used when the director gives no importance."""
    text = f"{player_input} {narrative}".lower()
    if any(keyword in text for keyword in HIGH_IMPORTANCE_KEYWORDS):
        return 9
    if (
        any(keyword in text for keyword in MEDIUM_IMPORTANCE_KEYWORDS)
        or len(narrative) > LONG_RESPONSE_CHARS
    ):
        return 6
    return 4


class StoryEngine:
    """
    One game session: a loaded story plus its flags, history and memories.

    Turns must not overlap; callers serialize ``process_action`` calls for
    a given engine (the HTTP layer holds a per-session lock).
    """

    def __init__(
        self,
        language_model: Optional[LanguageModel] = None,
        observer: Optional[EngineObserver] = None,
        engine_mode: Optional[str] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self.language_model = language_model or create_language_model(config)
        self.observer = observer or EngineObserver()
        self.engine_mode = engine_mode or config.engine_mode
        if self.engine_mode not in ("flags", "classifier"):
            raise ValueError(f"Unsupported engine mode: {self.engine_mode}")

        self.interaction_limit = config.interaction_history_limit
        self.context_memories_limit = config.context_memories_limit

        self.director = NarrativeDirector(
            self.language_model,
            observer=self.observer,
            temperature=config.narrator_temperature,
            repair_temperature=config.repair_temperature,
        )
        self.classifier = ActionClassifier(
            self.language_model,
            observer=self.observer,
            max_attempts=config.classifier_max_attempts,
            temperature=config.classifier_temperature,
        )
        self.memory = MemoryStore(
            self.language_model,
            observer=self.observer,
            compaction_interval=config.memory_compaction_interval,
            max_memory_count=config.max_memory_count,
            target_ratio=config.compaction_target_ratio,
            min_compacted_memories=config.min_compacted_memories,
            temperature=config.compaction_temperature,
        )

        self.story: Optional[Story] = None
        self.game_state = GameState()
        self.flags = FlagStore()

    # ------------------------------------------------------------------
    # Story lifecycle
    # ------------------------------------------------------------------

    def load_story(self, story: Union[Story, Dict[str, Any]]) -> EngineResult[GameState]:
        """
        Load a story and reset all session state.

        Args:
            story: A validated Story or a mapping to validate

        Returns:
            EngineResult with the fresh game state, or the validation error
        """
        if not isinstance(story, Story):
            try:
                story = Story.model_validate(story)
            except ValidationError as e:
                logger.warning(f"[Engine] Rejected story: {e}")
                return EngineResult(success=False, error=f"Invalid story: {e}")

        self.story = story
        self.flags = FlagStore(story.flags)
        self.memory.reset()
        entry_scene = story.scenes[story.entry_scene_id]
        self.game_state = GameState(current_scene_id=entry_scene.id)
        self._enter_scene(entry_scene)

        logger.info(
            f"[Engine] Loaded story '{story.title}' ({len(story.scenes)} scenes, "
            f"{len(story.endings.variations)} endings, mode={self.engine_mode})"
        )
        return EngineResult(success=True, data=self.get_game_state())

    def restart(self) -> EngineResult[GameState]:
        """Reload the current story from scratch."""
        if self.story is None:
            return EngineResult(success=False, error="No story loaded")
        logger.info(f"[Engine] Restarting '{self.story.title}'")
        return self.load_story(self.story)

    def _enter_scene(self, scene: Scene) -> None:
        self.game_state.current_scene_id = scene.id
        self.flags.apply_initial(scene.initial_flags)
        if scene.location:
            self.flags.set_location(scene.location)

    def current_scene(self) -> Optional[Scene]:
        if self.story is None:
            return None
        return self.story.scenes.get(self.game_state.current_scene_id)

    def get_game_state(self) -> GameState:
        return self.game_state.model_copy(deep=True)

    def get_initial_text(self) -> str:
        """The entry scene's sketch, without any narration."""
        if self.story is None:
            return ""
        return self.story.scenes[self.story.entry_scene_id].sketch

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _director_context(self, scene: Scene) -> DirectorContext:
        assert self.story is not None
        return build_director_context(
            self.story,
            scene,
            self.flags,
            self.game_state.interactions,
            self.memory.get_memories(self.context_memories_limit),
            story_complete=self.game_state.is_ended,
        )

    def _error_response(self, text: str, error: str) -> GameResponse:
        return GameResponse(text=text, game_state=self.get_game_state(), error=error)

    async def establish_opening(self) -> GameResponse:
        """Narrate the entry scene and record it as the first interaction."""
        if self.story is None:
            return self._error_response("No story is currently loaded.", "No story loaded")
        scene = self.current_scene()
        if scene is None:
            return self._error_response(
                "Story state is invalid - no current scene.", "Invalid scene state"
            )

        start_time = time.time()
        response = await self.director.establish_scene(self._director_context(scene))
        self._apply_side_effects(response)
        importance = self._track_interaction("", response)
        self._record_turn("initial", scene.id, [response], start_time)

        return GameResponse(
            text=response.narrative,
            game_state=self.get_game_state(),
            error=response.signals.error,
            metadata={"mode": "initial", "importance": importance},
        )

    async def process_action(self, action: Union[PlayerAction, str]) -> GameResponse:
        """
        Process one player action to completion.

        Args:
            action: Player input

        Returns:
            GameResponse with the final narration and a state snapshot
        """
        player_input = (action.input if isinstance(action, PlayerAction) else action).strip()

        if self.story is None:
            return self._error_response("No story is currently loaded.", "No story loaded")
        scene = self.current_scene()
        if scene is None:
            return self._error_response(
                "Story state is invalid - no current scene.", "Invalid scene state"
            )
        if not player_input:
            return self._error_response("Please enter an action.", "Empty input")

        start_time = time.time()
        logger.info(f"[Engine] Turn in scene '{scene.id}': {player_input!r}")

        if self.game_state.is_ended:
            response = await self.director.process_post_ending(
                player_input, self._director_context(scene)
            )
            importance = self._track_interaction(player_input, response)
            self._record_turn("post_ending", scene.id, [response], start_time)
            return GameResponse(
                text=response.narrative,
                game_state=self.get_game_state(),
                error=response.signals.error,
                metadata={"mode": "post_ending", "importance": importance},
            )

        if self.engine_mode == "classifier":
            mode, responses, applied = await self._classifier_turn(player_input, scene)
        else:
            mode, responses, applied = await self._flag_turn(player_input, scene)

        final = responses[-1]
        narrated = final
        if final.signals.error and len(responses) > 1 and not responses[0].signals.error:
            # The scene change or ending stands; the action narration is what the player sees
            logger.warning(
                f"[Engine] {mode.capitalize()} narration failed, keeping the action narration"
            )
            narrated = responses[0]
        importance = self._track_interaction(
            player_input, narrated, [r for r in responses[:-1] if r is not narrated]
        )
        transitioned_to = final.signals.scene
        ending_id = final.signals.ending

        self._record_turn(
            mode, scene.id, responses, start_time, transitioned_to, ending_id, final.signals.error
        )

        return GameResponse(
            text=narrated.narrative,
            game_state=self.get_game_state(),
            error=final.signals.error,
            ending_triggered=ending_id is not None,
            metadata={
                "mode": mode,
                "importance": importance,
                "flag_changes": applied.model_dump(),
                "transitioned_to": transitioned_to,
                "ending_id": ending_id,
                "llm_calls": sum(r.llm_calls for r in responses),
            },
        )

    async def _flag_turn(
        self, player_input: str, scene: Scene
    ) -> Tuple[str, List[DirectorResponse], FlagChanges]:
        """Narrate the action, apply its flag changes, then check conditions."""
        response = await self.director.process_action(
            player_input, self._director_context(scene)
        )
        applied = self._apply_side_effects(response)
        responses = [response]

        target_id = self._satisfied_transition(scene)
        if target_id is not None:
            transition = await self._transition(target_id, player_input, scene)
            if transition is not None:
                applied = self._merge_changes(applied, self._apply_side_effects(transition))
                responses.append(transition)
                return "transition", responses, applied

        ending = self._satisfied_ending()
        if ending is not None:
            responses.append(await self._end(ending, player_input, scene))
            return "ending", responses, applied

        return "action", responses, applied

    async def _classifier_turn(
        self, player_input: str, scene: Scene
    ) -> Tuple[str, List[DirectorResponse], FlagChanges]:
        """Let the classifier pick the mode, then make exactly one director call."""
        assert self.story is not None
        context = build_classification_context(
            self.story,
            scene,
            player_input,
            self.game_state.interactions[-CLASSIFIER_HISTORY_LIMIT:],
            self.memory.get_memories(self.context_memories_limit),
        )
        classification = await self.classifier.classify(context)

        if (
            classification.mode == ClassificationMode.SCENE_TRANSITION
            and classification.target_id
        ):
            transition = await self._transition(classification.target_id, player_input, scene)
            if transition is not None:
                return "transition", [transition], self._apply_side_effects(transition)

        if classification.mode == ClassificationMode.ENDING and classification.target_id:
            ending = self.story.endings.get(classification.target_id)
            if ending is not None:
                return "ending", [await self._end(ending, player_input, scene)], FlagChanges()
            logger.warning(f"[Engine] Classified ending '{classification.target_id}' does not exist")

        response = await self.director.process_action(
            player_input, self._director_context(scene)
        )
        return "action", [response], self._apply_side_effects(response)

    def _satisfied_transition(self, scene: Scene) -> Optional[str]:
        for target_id, transition in scene.transitions.items():
            if transition.requires is not None and self.flags.evaluate(transition.requires):
                logger.info(f"[Engine] Transition to '{target_id}' is now satisfied")
                return target_id
        return None

    def _satisfied_ending(self) -> Optional[Ending]:
        assert self.story is not None
        endings = self.story.endings
        if not self.flags.evaluate(endings.requires):
            return None
        for ending in endings.variations:
            if ending.requires is not None and self.flags.evaluate(ending.requires):
                logger.info(f"[Engine] Ending '{ending.id}' is now satisfied")
                return ending
        return None

    async def _transition(
        self, target_id: str, player_input: str, scene: Scene
    ) -> Optional[DirectorResponse]:
        assert self.story is not None
        target = self.story.scenes.get(target_id)
        if target is None:
            logger.warning(
                f"[Engine] Transition from '{scene.id}' to unknown scene '{target_id}' ignored"
            )
            return None

        response = await self.director.process_transition(
            target, self._director_context(scene), player_input
        )
        logger.info(f"[Engine] Scene transition: {scene.id} -> {target.id}")
        self._enter_scene(target)
        return response

    async def _end(self, ending: Ending, player_input: str, scene: Scene) -> DirectorResponse:
        response = await self.director.process_ending(
            ending, self._director_context(scene), player_input
        )
        logger.info(f"[Engine] Story ending triggered: {ending.id}")
        self.game_state.is_ended = True
        self.game_state.ending_id = ending.id
        return response

    def _apply_side_effects(self, response: DirectorResponse) -> FlagChanges:
        """Apply a narration's flag changes and item discoveries."""
        applied = FlagChanges()
        if not response.flag_changes.is_empty():
            applied = self.flags.apply_batch(
                response.flag_changes.set, response.flag_changes.clear
            )
        for item_id in response.discoveries:
            self._handle_discovery(item_id)
        return applied

    @staticmethod
    def _merge_changes(first: FlagChanges, second: FlagChanges) -> FlagChanges:
        return FlagChanges(set=first.set + second.set, clear=first.clear + second.clear)

    def _handle_discovery(self, item_id: str) -> None:
        assert self.story is not None
        items = self.story.world.items if self.story.world else {}
        item = items.get(item_id)
        if item is None:
            logger.warning(f"[Engine] Discovery of unknown item '{item_id}' ignored")
            return
        if item.reveals:
            self.memory.add_memory(f"Discovered {item_id}: {item.reveals}", DISCOVERY_IMPORTANCE)
            logger.info(f"[Engine] Item discovered: {item_id}")

    def _track_interaction(
        self,
        player_input: str,
        response: DirectorResponse,
        earlier: Optional[List[DirectorResponse]] = None,
    ) -> int:
        """
        Record the turn in the interaction history and the memory store.

        Returns:
            The importance assigned to the turn
        """
        importance = response.importance or estimate_importance(
            player_input, response.narrative
        )

        self.game_state.interactions.append(
            Interaction(
                player_input=player_input,
                narrative_response=response.narrative,
                scene_id=self.game_state.current_scene_id,
                importance=importance,
            )
        )
        if len(self.game_state.interactions) > self.interaction_limit:
            del self.game_state.interactions[: -self.interaction_limit]

        # Fallback and configuration messages are not worth remembering
        if response.signals.error:
            return importance

        for earlier_response in earlier or []:
            for memory in earlier_response.memories:
                self.memory.add_memory(memory, earlier_response.importance or importance)
        for memory in response.memories:
            self.memory.add_memory(memory, importance)

        if player_input:
            self.memory.add_memory(
                f"Player: {player_input}\nResponse: {response.narrative}", importance
            )
        else:
            self.memory.add_memory(response.narrative, importance)

        logger.debug(
            f"[Engine] Tracked interaction (importance {importance}"
            f"{'' if response.importance else ', heuristic'})"
        )
        return importance

    def _record_turn(
        self,
        mode: str,
        scene_id: str,
        responses: List[DirectorResponse],
        start_time: float,
        transitioned_to: Optional[str] = None,
        ending_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self.observer.record_turn(
            TurnMetrics(
                scene_id=scene_id,
                mode=mode,
                llm_calls=sum(r.llm_calls for r in responses),
                input_tokens=sum(r.usage.input_tokens for r in responses),
                output_tokens=sum(r.usage.output_tokens for r in responses),
                latency_ms=round((time.time() - start_time) * 1000, 2),
                memory_count=len(self.memory.memories),
                transitioned_to=transitioned_to,
                ending_id=ending_id,
                error=error,
            )
        )

    # ------------------------------------------------------------------
    # Save / load
    # ------------------------------------------------------------------

    def save_game(self) -> str:
        """
        Serialize the session to a JSON document.

        Raises:
            ValueError: no story is loaded
        """
        if self.story is None:
            raise ValueError("No story loaded")
        return json.dumps(
            {
                "gameState": self.game_state.model_dump(mode="json"),
                "memoryManagerState": self.memory.export_state(),
                "flagState": self.flags.get_all_flags(),
                "storyTitle": self.story.title,
                "saveTimestamp": datetime.now().isoformat(),
            }
        )

    def load_game(self, save_data: str) -> EngineResult[GameState]:
        """
        Restore a session saved by ``save_game``.

        Everything is validated before anything is applied, so a rejected
        save leaves the live session untouched.
        """
        if self.story is None:
            return EngineResult(
                success=False,
                error="No story loaded. Load a story before attempting to load a saved game.",
            )

        try:
            data = json.loads(save_data)
        except (TypeError, json.JSONDecodeError) as e:
            return EngineResult(success=False, error=f"Failed to load save file: {e}")
        if not isinstance(data, dict):
            return EngineResult(success=False, error="Invalid save file format: not an object")

        if data.get("storyTitle") != self.story.title:
            return EngineResult(
                success=False,
                error=f'Save file is for "{data.get("storyTitle")}" '
                f'but current story is "{self.story.title}"',
            )
        if "gameState" not in data:
            return EngineResult(
                success=False, error="Invalid save file format: missing gameState"
            )

        try:
            game_state = GameState.model_validate(data["gameState"])
        except ValidationError as e:
            return EngineResult(success=False, error=f"Invalid gameState: {e}")
        if game_state.current_scene_id not in self.story.scenes:
            return EngineResult(
                success=False,
                error=f"Save refers to unknown scene '{game_state.current_scene_id}'",
            )

        memory_state = data.get("memoryManagerState")
        if memory_state is not None:
            try:
                MemoryStore.parse_state(memory_state)
            except ValueError as e:
                return EngineResult(success=False, error=f"Invalid memoryManagerState: {e}")

        flag_state = data.get("flagState")
        if flag_state is not None:
            try:
                flag_state = _flag_state_adapter.validate_python(flag_state)
            except ValidationError as e:
                return EngineResult(success=False, error=f"Invalid flagState: {e}")

        # Validated; apply
        game_state.interactions = game_state.interactions[-self.interaction_limit :]
        self.game_state = game_state
        if memory_state is not None:
            self.memory.import_state(memory_state)
        else:
            self.memory.reset()
        if flag_state is not None:
            self.flags.restore(flag_state)
        else:
            self.flags = FlagStore(self.story.flags)
            scene = self.current_scene()
            if scene is not None:
                self._enter_scene(scene)

        logger.info(
            f"[Engine] Loaded save for '{self.story.title}' at scene "
            f"'{self.game_state.current_scene_id}'"
        )
        return EngineResult(success=True, data=self.get_game_state())
