"""
Unit tests for the flag store and condition evaluation.
"""

import pytest

from impressionist.engine.flags import FlagStore, is_location_flag
from impressionist.schemas.story import FlagCondition, FlagDefinition


@pytest.fixture
def store():
    return FlagStore(
        {
            "a": FlagDefinition(default=False),
            "b": FlagDefinition(default=False),
            "mood": FlagDefinition(default="calm", description="the guard's mood"),
            "gated": FlagDefinition(default=False, requires=FlagCondition(all_of=["a"])),
        }
    )


class TestConditionEvaluation:
    """Test the condition laws"""

    def test_empty_conditions(self, store):
        """Test that empty all_of/none_of hold and empty any_of does not"""
        assert store.evaluate({"all_of": []}) is True
        assert store.evaluate({"none_of": []}) is True
        assert store.evaluate({"any_of": []}) is False

    def test_absent_condition_holds(self, store):
        """Test that None and {} both hold"""
        assert store.evaluate(None) is True
        assert store.evaluate({}) is True

    @pytest.mark.parametrize(
        "a,b,expected",
        [(True, False, True), (True, True, False), (False, False, False), (True, "yes", True)],
    )
    def test_negation(self, store, a, b, expected):
        """Test all_of ['a', '!b'] is true iff a is True and b is not True"""
        store.set("a", a)
        store.values["b"] = b
        assert store.evaluate({"all_of": ["a", "!b"]}) is expected

    def test_only_boolean_true_satisfies_bare_name(self, store):
        """Test that string and number flags never satisfy a bare name"""
        store.set("count", 1)
        assert store.evaluate({"all_of": ["mood"]}) is False
        assert store.evaluate({"all_of": ["count"]}) is False

    def test_unknown_flag_is_false(self, store):
        """Test that missing flags are treated as not true"""
        assert store.evaluate({"any_of": ["missing"]}) is False
        assert store.evaluate({"all_of": ["!missing"]}) is True

    def test_combined_clauses(self, store):
        """Test all_of, any_of and none_of together"""
        store.set("a", True)
        condition = {"all_of": ["a"], "any_of": ["b", "a"], "none_of": ["b"]}
        assert store.evaluate(condition) is True
        store.set("b", True)
        assert store.evaluate(condition) is False

    def test_malformed_condition_is_false(self, store):
        """Test that unknown keys or wrong shapes never hold"""
        assert store.evaluate({"every": ["a"]}) is False
        assert store.evaluate({"all_of": "a"}) is False
        assert store.evaluate(["a"]) is False  # type: ignore[arg-type]

    def test_accepts_model_condition(self, store):
        """Test evaluating a FlagCondition instance"""
        store.set("a", True)
        assert store.evaluate(FlagCondition(all_of=["a"])) is True


class TestCacheConsistency:
    """Test that condition results never go stale"""

    def test_set_invalidates(self, store):
        """Test evaluate after set reflects the new value"""
        condition = {"all_of": ["a"]}
        assert store.evaluate(condition) is False
        assert store.evaluate(condition) is False
        store.set("a", True)
        assert store.evaluate(condition) is True

    def test_batch_invalidates(self, store):
        """Test evaluate after apply_batch reflects the batch"""
        condition = {"all_of": ["a", "b"]}
        assert store.evaluate(condition) is False
        store.apply_batch(["a", "b"], [])
        assert store.evaluate(condition) is True
        store.apply_batch([], ["b"])
        assert store.evaluate(condition) is False

    def test_location_and_restore_invalidate(self, store):
        """Test set_location and restore clear cached results"""
        assert store.evaluate({"all_of": ["at_cell"]}) is False
        store.set_location("cell")
        assert store.evaluate({"all_of": ["at_cell"]}) is True
        store.restore({"a": False})
        assert store.evaluate({"all_of": ["at_cell"]}) is False

    def test_cache_hits_are_counted(self, store):
        """Test that repeated evaluation hits the cache"""
        store.evaluate({"all_of": ["a"]})
        store.evaluate({"all_of": ["a"]})
        stats = store.cache_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1


class TestRequiresGate:
    """Test that gated flags only take non-default values when allowed"""

    def test_rejected_until_condition_holds(self, store):
        """Test set on a gated flag fails, then succeeds once its condition holds"""
        assert store.set("gated", True) is False
        assert store.get("gated") is False

        store.set("a", True)
        assert store.set("gated", True) is True
        assert store.get("gated") is True

    def test_default_and_false_always_allowed(self, store):
        """Test resetting a gated flag is never blocked"""
        assert store.set("gated", False) is True

    def test_batch_respects_gate_in_order(self, store):
        """Test a batch may unlock a gate for its own later writes"""
        applied = store.apply_batch(["gated"], [])
        assert applied.set == []
        assert store.get("gated") is False

        applied = store.apply_batch(["a", "gated"], [])
        assert applied.set == ["a", "gated"]
        assert store.get("gated") is True

    def test_clear_restores_non_boolean_default(self, store):
        """Test that clearing a string flag returns it to its default"""
        store.set("mood", "angry")
        store.apply_batch([], ["mood"])
        assert store.get("mood") == "calm"

    def test_numeric_value_is_not_boolean_default(self):
        """Test 1 on a flag defaulting to True still goes through the gate"""
        store = FlagStore(
            {
                "a": FlagDefinition(default=False),
                "lit": FlagDefinition(default=True, requires=FlagCondition(all_of=["a"])),
            }
        )
        assert store.set("lit", 1) is False
        assert store.get("lit") is True
        assert store.set("lit", True) is True

        store.set("a", True)
        assert store.set("lit", 1) is True
        assert store.get("lit") == 1


class TestLocationFlags:
    """Test location exclusivity"""

    def test_exactly_one_location(self, store):
        """Test that only the latest location flag is true"""
        for location in ["cell", "corridor", "yard", "cell"]:
            store.set_location(location)
            true_locations = [
                name
                for name, value in store.get_all_flags().items()
                if name.startswith("at_") and value is True
            ]
            assert true_locations == [f"at_{location}"]
        assert store.current_location() == "cell"

    def test_no_location_initially(self, store):
        """Test that no location flag is set before set_location"""
        assert not any(name.startswith("at_") for name in store.get_all_flags())
        assert store.current_location() is None

    def test_batch_ignores_location_flags(self, store):
        """Test that narrator changes cannot touch location flags"""
        store.set_location("cell")
        applied = store.apply_batch(["at_yard"], ["at_cell", "location"])
        assert applied.is_empty()
        assert store.get("at_cell") is True
        assert store.get("at_yard") is None

    def test_direct_set_rejects_location_flags(self, store):
        """Test set cannot break location exclusivity"""
        store.set_location("cell")
        assert store.set("at_yard", True) is False
        assert store.set("location", "yard") is False
        assert store.get("at_yard") is None
        assert store.current_location() == "cell"

    def test_is_location_flag(self):
        """Test location flag detection"""
        assert is_location_flag("at_cell")
        assert is_location_flag("location")
        assert not is_location_flag("attic_visited")


class TestPromptRendering:
    """Test the flag context shown to the narrator"""

    def test_progression_guidance(self, store):
        """Test declared flags are listed with their descriptions"""
        guidance = store.flag_progression_guidance()
        assert "FLAG PROGRESSION" in guidance
        assert "the guard's mood" in guidance

    def test_state_section_excludes_locations(self, store):
        """Test set/unset flags are listed and location flags hidden"""
        store.set("a", True)
        store.set_location("cell")
        section = store.flag_state_section()
        assert "Set (true): a" in section
        assert "at_cell" not in section

    def test_empty_store_renders_nothing(self):
        """Test a store without flags produces no context"""
        assert FlagStore().flag_context() == ""
