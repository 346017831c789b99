"""
Tests for the turn orchestrator (StoryEngine).

Covers story loading, flag-driven and classifier-driven turns, memory
tracking, and save/load.
"""

import json

import pytest

from impressionist.engine.director import UNCONFIGURED_NARRATIVE
from impressionist.engine.orchestrator import StoryEngine, estimate_importance
from impressionist.providers.base import LanguageModelError
from impressionist.schemas.state import PlayerAction
from impressionist.utils.metrics import MetricsCollector


def open_door(narration, text="You wrench the door open."):
    return narration(text, flag_changes={"set": ["door_open"], "clear": []})


@pytest.fixture
def engine_factory(quiet_settings):
    def build(story, model, **kwargs):
        engine = StoryEngine(language_model=model, config=quiet_settings, **kwargs)
        result = engine.load_story(story)
        assert result.success, result.error
        return engine

    return build


class TestLoadStory:
    """Test story loading and restart"""

    def test_load_resets_state(self, door_story, scripted_model, engine_factory):
        """Test loading applies scene entry effects and empties history"""
        engine = engine_factory(door_story, scripted_model())

        state = engine.get_game_state()
        assert state.current_scene_id == "room"
        assert state.is_ended is False
        assert state.interactions == []
        assert engine.flags.get("at_cell") is True
        assert engine.flags.get("door_open") is False
        assert engine.get_initial_text() == "A bare room with a heavy wooden door."

    @pytest.mark.parametrize(
        "story", [{}, {"title": "", "scenes": {"a": {"sketch": "A"}}}, {"title": "T", "scenes": {}}]
    )
    def test_invalid_story(self, story, scripted_model, quiet_settings):
        """Test missing title or scenes is rejected with a validation error"""
        engine = StoryEngine(language_model=scripted_model(), config=quiet_settings)
        result = engine.load_story(story)
        assert result.success is False
        assert result.error.startswith("Invalid story")
        assert engine.story is None

    def test_start_scene_respected(self, door_story, scripted_model, engine_factory):
        """Test an explicit start_scene overrides declaration order"""
        door_story["start_scene"] = "hallway"
        engine = engine_factory(door_story, scripted_model())
        assert engine.game_state.current_scene_id == "hallway"
        assert engine.flags.get("heard_footsteps") is True

    def test_unsupported_engine_mode(self, scripted_model, quiet_settings):
        """Test that an unknown engine mode is rejected at construction"""
        with pytest.raises(ValueError):
            StoryEngine(language_model=scripted_model(), engine_mode="signals", config=quiet_settings)

    @pytest.mark.asyncio
    async def test_restart(self, door_story, scripted_model, narration, engine_factory):
        """Test restart returns to the entry scene with default flags and no memories"""
        model = scripted_model(DirectorOutput=[open_door(narration), narration("Hallway.")])
        engine = engine_factory(door_story, model)
        await engine.process_action("open the door")
        assert engine.game_state.current_scene_id == "hallway"

        result = engine.restart()
        assert result.success
        assert result.data.current_scene_id == "room"
        assert engine.flags.get("door_open") is False
        assert engine.flags.get("at_corridor") is None
        assert engine.memory.all_memories() == []


class TestFlagTurns:
    """Test the flag-driven turn pipeline"""

    @pytest.mark.asyncio
    async def test_flag_change_triggers_transition(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test opening the door moves the player into the hallway"""
        model = scripted_model(
            DirectorOutput=[
                open_door(narration),
                narration("You step into a long hallway.", importance=6),
            ]
        )
        engine = engine_factory(door_story, model)

        response = await engine.process_action(PlayerAction(input="open the door"))

        assert response.game_state.current_scene_id == "hallway"
        assert response.text == "You step into a long hallway."
        assert response.metadata["mode"] == "transition"
        assert response.metadata["transitioned_to"] == "hallway"
        assert response.metadata["flag_changes"]["set"] == ["door_open"]
        assert response.metadata["llm_calls"] == 2
        assert engine.flags.get("heard_footsteps") is True
        assert engine.flags.get("at_corridor") is True
        assert engine.flags.get("at_cell") is False
        assert "A long hallway lit by flickering bulbs." in model.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_plain_action(self, door_story, scripted_model, narration, engine_factory):
        """Test an action without flag changes stays in the scene"""
        model = scripted_model(DirectorOutput=[narration("The door is solid oak.", importance=3)])
        engine = engine_factory(door_story, model)

        response = await engine.process_action("examine the door")

        assert response.metadata["mode"] == "action"
        assert response.game_state.current_scene_id == "room"
        assert response.ending_triggered is False
        assert response.error is None
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_first_satisfied_transition_wins(self, scripted_model, narration, engine_factory):
        """Test transitions are checked in declaration order"""
        story = {
            "title": "Forks",
            "scenes": {
                "fork": {
                    "sketch": "A fork in the road",
                    "transitions": {"left": {"all_of": ["moved"]}, "right": {"all_of": ["moved"]}},
                },
                "left": {"sketch": "The left path"},
                "right": {"sketch": "The right path"},
            },
        }
        model = scripted_model(
            DirectorOutput=[
                narration("You move.", flag_changes={"set": ["moved"], "clear": []}),
                narration("Left it is."),
            ]
        )
        engine = engine_factory(story, model)
        response = await engine.process_action("walk")
        assert response.game_state.current_scene_id == "left"

    @pytest.mark.asyncio
    async def test_missing_target_scene_completes_as_action(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test a transition to an undeclared scene is ignored"""
        door_story["scenes"]["room"]["transitions"] = {"basement": {"all_of": ["door_open"]}}
        model = scripted_model(DirectorOutput=[open_door(narration)])
        engine = engine_factory(door_story, model)

        response = await engine.process_action("open the door")

        assert response.metadata["mode"] == "action"
        assert response.game_state.current_scene_id == "room"
        assert response.text == "You wrench the door open."
        assert response.error is None

    @pytest.mark.asyncio
    async def test_ending_requires_global_condition(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test opening the door never ends the story while has_key is false"""
        door_story["scenes"]["room"]["transitions"] = {}
        model = scripted_model(DirectorOutput=[open_door(narration) for _ in range(3)])
        engine = engine_factory(door_story, model)

        for _ in range(3):
            response = await engine.process_action("open the door")
            assert response.ending_triggered is False
        assert engine.game_state.is_ended is False
        assert engine.game_state.ending_id is None

    @pytest.mark.asyncio
    async def test_ending_triggered(self, door_story, scripted_model, narration, engine_factory):
        """Test the ending fires once global and local conditions hold"""
        door_story["scenes"]["room"]["transitions"] = {}
        model = scripted_model(
            DirectorOutput=[
                open_door(narration),
                narration("You find a key.", flag_changes={"set": ["has_key"], "clear": []}),
                narration("You walk out into daylight.", importance=4),
            ]
        )
        engine = engine_factory(door_story, model)

        await engine.process_action("open the door")
        response = await engine.process_action("search the floor")

        assert response.ending_triggered is True
        assert response.text == "You walk out into daylight."
        assert response.metadata["ending_id"] == "freedom"
        assert response.game_state.is_ended is True
        assert response.game_state.interactions[-1].importance == 8

    @pytest.mark.asyncio
    async def test_failed_transition_narration_keeps_action(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test a failed transition narration still shows and remembers the action"""
        model = scripted_model(
            DirectorOutput=[
                narration(
                    "You wrench the door open.",
                    flag_changes={"set": ["door_open"], "clear": []},
                    memories=["The door is now open"],
                ),
                LanguageModelError("timeout"),
            ]
        )
        engine = engine_factory(door_story, model)

        response = await engine.process_action("open the door")

        assert response.text == "You wrench the door open."
        assert "timeout" in response.error
        assert response.metadata["transitioned_to"] == "hallway"
        assert response.game_state.current_scene_id == "hallway"
        assert response.game_state.interactions[-1].narrative_response == "You wrench the door open."
        memories = [m.content for m in engine.memory.all_memories()]
        assert "The door is now open" in memories
        assert "Player: open the door\nResponse: You wrench the door open." in memories

    @pytest.mark.asyncio
    async def test_failed_ending_narration_keeps_action(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test the ending still stands when its narration fails"""
        door_story["scenes"]["room"]["transitions"] = {}
        model = scripted_model(
            DirectorOutput=[
                open_door(narration),
                narration("You find a key.", flag_changes={"set": ["has_key"], "clear": []}),
                LanguageModelError("timeout"),
            ]
        )
        engine = engine_factory(door_story, model)

        await engine.process_action("open the door")
        response = await engine.process_action("search the floor")

        assert response.text == "You find a key."
        assert response.ending_triggered is True
        assert response.game_state.is_ended is True
        assert response.error is not None

    @pytest.mark.asyncio
    async def test_gated_flag_rejected(self, door_story, scripted_model, narration, engine_factory):
        """Test narrator writes to a gated flag are dropped until its condition holds"""
        model = scripted_model(
            DirectorOutput=[
                narration("The guard nods.", flag_changes={"set": ["trusts_guard"], "clear": []}),
                narration(
                    "You show the key.",
                    flag_changes={"set": ["has_key", "trusts_guard"], "clear": []},
                ),
                narration("The guard smiles."),
            ]
        )
        engine = engine_factory(door_story, model)

        response = await engine.process_action("talk to the guard")
        assert response.metadata["flag_changes"]["set"] == []
        assert engine.flags.get("trusts_guard") is False

        response = await engine.process_action("show the key")
        assert response.metadata["flag_changes"]["set"] == ["has_key", "trusts_guard"]

        await engine.process_action("ask for help")
        assert "Speaks warmly and offers help" in model.calls[-1]["prompt"]
        assert "Speaks warmly and offers help" not in model.calls[0]["prompt"]


class TestClassifierTurns:
    """Test the classifier-driven turn pipeline"""

    @pytest.mark.asyncio
    async def test_transition_uses_one_director_call(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test a classified transition narrates once and enters the scene"""
        model = scripted_model(
            ClassifierOutput=[{"reasoning": "door opened", "result": "T0"}],
            DirectorOutput=[narration("You slip into the hallway.")],
        )
        engine = engine_factory(door_story, model, engine_mode="classifier")

        response = await engine.process_action("open the door and go through")

        assert response.game_state.current_scene_id == "hallway"
        assert response.metadata["mode"] == "transition"
        assert len(model.calls_for("DirectorOutput")) == 1
        assert model.calls_for("ClassifierOutput")[0]["use_cost_model"] is True

    @pytest.mark.asyncio
    async def test_continue_ignores_flag_transitions(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test flag changes do not trigger transitions in classifier mode"""
        model = scripted_model(
            ClassifierOutput=[{"reasoning": "nothing met", "result": "continue"}],
            DirectorOutput=[open_door(narration)],
        )
        engine = engine_factory(door_story, model, engine_mode="classifier")

        response = await engine.process_action("open the door")

        assert response.metadata["mode"] == "action"
        assert response.game_state.current_scene_id == "room"
        assert engine.flags.get("door_open") is True

    @pytest.mark.asyncio
    async def test_classified_ending(self, door_story, scripted_model, narration, engine_factory):
        """Test a classified ending ends the story"""
        model = scripted_model(
            ClassifierOutput=[{"reasoning": "left", "result": "T1"}],
            DirectorOutput=[narration("The gate swings shut behind you.")],
        )
        engine = engine_factory(door_story, model, engine_mode="classifier")

        response = await engine.process_action("leave through the gate")

        assert response.ending_triggered is True
        assert engine.game_state.ending_id == "freedom"

    @pytest.mark.asyncio
    async def test_classifier_failure_falls_back_to_action(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test exhausted classifier retries still produce an action narration"""
        model = scripted_model(
            ClassifierOutput=[{"reasoning": "?", "result": "T5"} for _ in range(3)],
            DirectorOutput=[narration("Nothing dramatic happens.")],
        )
        engine = engine_factory(door_story, model, engine_mode="classifier")

        response = await engine.process_action("dance")

        assert response.metadata["mode"] == "action"
        assert response.text == "Nothing dramatic happens."
        assert len(model.calls_for("ClassifierOutput")) == 3


class TestSessionBehavior:
    """Test opening, post-ending and error responses"""

    @pytest.mark.asyncio
    async def test_opening(self, door_story, scripted_model, narration, engine_factory):
        """Test the opening narration is recorded as the first interaction"""
        model = scripted_model(DirectorOutput=[narration("You wake on cold stone.")])
        engine = engine_factory(door_story, model)

        response = await engine.establish_opening()

        assert response.text == "You wake on cold stone."
        assert response.metadata == {"mode": "initial", "importance": 7}
        interaction = engine.game_state.interactions[0]
        assert interaction.player_input == ""
        assert interaction.importance == 7
        assert "INITIAL SCENE ESTABLISHMENT" in model.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_post_ending(self, door_story, scripted_model, narration, engine_factory):
        """Test turns after the ending reflect without changing anything"""
        model = scripted_model(
            ClassifierOutput=[{"reasoning": "left", "result": "T1"}],
            DirectorOutput=[
                narration("Daylight."),
                narration("You think back.", flag_changes={"set": ["door_open"], "clear": []}),
            ],
        )
        engine = engine_factory(door_story, model, engine_mode="classifier")
        await engine.process_action("leave")

        response = await engine.process_action("what happened to the guard?")

        assert response.metadata["mode"] == "post_ending"
        assert engine.flags.get("door_open") is False
        assert len(model.calls_for("ClassifierOutput")) == 1

    @pytest.mark.asyncio
    async def test_empty_input(self, door_story, scripted_model, engine_factory):
        """Test blank input is rejected without a model call"""
        model = scripted_model()
        engine = engine_factory(door_story, model)
        response = await engine.process_action("   ")
        assert response.error == "Empty input"
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_no_story(self, scripted_model, quiet_settings):
        """Test turns before a story is loaded report an error"""
        engine = StoryEngine(language_model=scripted_model(), config=quiet_settings)
        response = await engine.process_action("hello")
        assert response.error == "No story loaded"

    @pytest.mark.asyncio
    async def test_unconfigured_backend(self, door_story, scripted_model, engine_factory):
        """Test the instructional message when no model is configured"""
        engine = engine_factory(door_story, scripted_model(configured=False))
        response = await engine.process_action("open the door")

        assert response.text == UNCONFIGURED_NARRATIVE
        assert response.error == "API key not configured"
        assert engine.memory.all_memories() == []


class TestTracking:
    """Test interaction history and memory tracking"""

    @pytest.mark.asyncio
    async def test_memories_recorded(self, door_story, scripted_model, narration, engine_factory):
        """Test director memories and the exchange itself are remembered"""
        model = scripted_model(
            DirectorOutput=[
                narration("The door is locked.", importance=4, memories=["The door is locked"])
            ]
        )
        engine = engine_factory(door_story, model)
        await engine.process_action("try the door")

        memories = engine.memory.all_memories()
        assert [m.content for m in memories] == [
            "The door is locked",
            "Player: try the door\nResponse: The door is locked.",
        ]
        assert all(m.importance == 4 for m in memories)

    @pytest.mark.asyncio
    async def test_discovery_adds_memory(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test discovering an item records what it reveals"""
        model = scripted_model(
            DirectorOutput=[narration("Something glints.", discoveries=["key", "unicorn"])]
        )
        engine = engine_factory(door_story, model)
        await engine.process_action("search")

        discovered = [m for m in engine.memory.all_memories() if m.content.startswith("Discovered")]
        assert len(discovered) == 1
        assert discovered[0].content == "Discovered key: the key fits the front gate"
        assert discovered[0].importance == 7

    @pytest.mark.asyncio
    async def test_interaction_history_trimmed(
        self, door_story, scripted_model, narration, quiet_settings
    ):
        """Test only the most recent interactions are kept"""
        quiet_settings.interaction_history_limit = 2
        model = scripted_model(DirectorOutput=[narration(f"Turn {i}.") for i in range(3)])
        engine = StoryEngine(language_model=model, config=quiet_settings)
        engine.load_story(door_story)

        for i in range(3):
            await engine.process_action(f"action {i}")

        assert [i.player_input for i in engine.game_state.interactions] == ["action 1", "action 2"]

    @pytest.mark.asyncio
    async def test_turn_metrics(self, door_story, scripted_model, narration, quiet_settings):
        """Test each turn is reported to the observer"""
        metrics = MetricsCollector()
        model = scripted_model(DirectorOutput=[open_door(narration), narration("Hallway.")])
        engine = StoryEngine(language_model=model, observer=metrics, config=quiet_settings)
        engine.load_story(door_story)

        await engine.process_action("open the door")

        turn = metrics.turns[-1]
        assert turn.mode == "transition"
        assert turn.llm_calls == 2
        assert turn.transitioned_to == "hallway"
        assert metrics.summary()["llm_calls"]["count"] == 2

    @pytest.mark.parametrize(
        "player_input,narrative,expected",
        [
            ("I reveal the secret", "", 9),
            ("examine the desk", "", 6),
            ("wait", "x" * 250, 6),
            ("wait", "Time passes.", 4),
        ],
    )
    def test_estimate_importance(self, player_input, narrative, expected):
        """Test the keyword importance heuristic"""
        assert estimate_importance(player_input, narrative) == expected


class TestSaveLoad:
    """Test save documents and loading them back"""

    @pytest.mark.asyncio
    async def test_round_trip(self, door_story, scripted_model, narration, engine_factory):
        """Test loading a save restores scene, history, flags and memories"""
        model = scripted_model(
            DirectorOutput=[
                open_door(narration),
                narration("Hallway.", memories=["Footsteps echo"]),
                narration("You walk on."),
            ]
        )
        engine = engine_factory(door_story, model)
        await engine.process_action("open the door")
        save_data = engine.save_game()
        saved_memories = engine.memory.get_memories(10)

        await engine.process_action("walk on")
        engine.restart()

        result = engine.load_game(save_data)

        assert result.success, result.error
        assert engine.game_state.current_scene_id == "hallway"
        assert len(engine.game_state.interactions) == 1
        assert engine.flags.get("door_open") is True
        assert engine.flags.get("at_corridor") is True
        assert engine.memory.get_memories(10) == saved_memories

    def test_save_document_layout(self, door_story, scripted_model, engine_factory):
        """Test the save document carries every section"""
        engine = engine_factory(door_story, scripted_model())
        document = json.loads(engine.save_game())
        assert set(document) == {
            "gameState",
            "memoryManagerState",
            "flagState",
            "storyTitle",
            "saveTimestamp",
        }
        assert document["storyTitle"] == "The Locked Room"

    def test_save_without_story(self, scripted_model, quiet_settings):
        """Test saving before a story is loaded raises"""
        engine = StoryEngine(language_model=scripted_model(), config=quiet_settings)
        with pytest.raises(ValueError):
            engine.save_game()

    @pytest.mark.asyncio
    async def test_title_mismatch_leaves_state_untouched(
        self, door_story, scripted_model, narration, engine_factory
    ):
        """Test a save for another story is rejected and nothing changes"""
        other = dict(door_story, title="Another Story")
        other_engine = engine_factory(other, scripted_model())
        foreign_save = other_engine.save_game()

        model = scripted_model(DirectorOutput=[narration("The door is solid.")])
        engine = engine_factory(door_story, model)
        await engine.process_action("knock")
        before = engine.game_state.model_dump()
        flags_before = engine.flags.get_all_flags()

        result = engine.load_game(foreign_save)

        assert result.success is False
        assert result.error == 'Save file is for "Another Story" but current story is "The Locked Room"'
        assert engine.game_state.model_dump() == before
        assert engine.flags.get_all_flags() == flags_before

    @pytest.mark.parametrize(
        "mutate,message",
        [
            (lambda doc: doc.pop("gameState"), "missing gameState"),
            (lambda doc: doc["gameState"].update(current_scene_id="attic"), "unknown scene"),
            (lambda doc: doc["gameState"].update(interactions="lots"), "Invalid gameState"),
            (lambda doc: doc.update(memoryManagerState={"memories": 3}), "Invalid memoryManagerState"),
            (lambda doc: doc.update(flagState={"door_open": [1, 2]}), "Invalid flagState"),
        ],
    )
    def test_invalid_save_rejected(self, mutate, message, door_story, scripted_model, engine_factory):
        """Test malformed saves fail with a descriptive error"""
        engine = engine_factory(door_story, scripted_model())
        document = json.loads(engine.save_game())
        mutate(document)
        before = engine.game_state.model_dump()

        result = engine.load_game(json.dumps(document))

        assert result.success is False
        assert message in result.error
        assert engine.game_state.model_dump() == before

    def test_not_json(self, door_story, scripted_model, engine_factory):
        """Test a non-JSON save is rejected"""
        engine = engine_factory(door_story, scripted_model())
        result = engine.load_game("not json")
        assert result.success is False
        assert "Failed to load save file" in result.error

    def test_missing_flag_state_resets_flags(self, door_story, scripted_model, engine_factory):
        """Test saves without flagState fall back to defaults plus scene entry effects"""
        engine = engine_factory(door_story, scripted_model())
        document = json.loads(engine.save_game())
        document.pop("flagState")
        engine.flags.set("door_open", True)

        result = engine.load_game(json.dumps(document))

        assert result.success
        assert engine.flags.get("door_open") is False
        assert engine.flags.get("at_cell") is True
