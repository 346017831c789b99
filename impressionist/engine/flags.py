"""
Story flag store and condition evaluation
"""

from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from impressionist.prompts import FLAG_MANAGEMENT_INSTRUCTIONS
from impressionist.schemas.outcome import FlagChanges
from impressionist.schemas.story import (
    CONDITION_KEYS,
    FlagCondition,
    FlagDefinition,
    FlagValue,
)
from impressionist.utils.cache import ConditionCache
from impressionist.utils.logger import get_logger

logger = get_logger(__name__)

LOCATION_PREFIX = "at_"
LOCATION_KEY = "location"

ConditionInput = Union[FlagCondition, Dict[str, Any], None]


def is_location_flag(name: str) -> bool:
    return name.startswith(LOCATION_PREFIX) or name == LOCATION_KEY


class FlagStore:
    """
    Current flag values for one game session.

    Holds the story's declared flags (seeded from their defaults) plus any
    flags introduced by scenes or the narrator. Writes of a non-default value
    to a flag with a ``requires`` condition are rejected while that condition
    does not hold. At most one ``at_*`` location flag is true at a time.
    """

    def __init__(self, definitions: Optional[Dict[str, FlagDefinition]] = None):
        self.definitions: Dict[str, FlagDefinition] = dict(definitions or {})
        self.values: Dict[str, FlagValue] = {
            name: definition.default for name, definition in self.definitions.items()
        }
        self.cache = ConditionCache()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, name: str) -> Optional[FlagValue]:
        return self.values.get(name)

    def get_all_flags(self) -> Dict[str, FlagValue]:
        return dict(self.values)

    def get_story_flags(self) -> Dict[str, bool]:
        """Story flags as booleans, location flags excluded."""
        return {
            name: value is True
            for name, value in self.values.items()
            if not is_location_flag(name)
        }

    def current_location(self) -> Optional[str]:
        location = self.values.get(LOCATION_KEY)
        return location if isinstance(location, str) else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _default_for(self, name: str) -> FlagValue:
        definition = self.definitions.get(name)
        return definition.default if definition is not None else False

    def _cleared_value(self, name: str) -> FlagValue:
        # Non-boolean flags clear back to their declared default
        default = self._default_for(name)
        return default if not isinstance(default, bool) else False

    def _is_default(self, name: str, value: FlagValue) -> bool:
        # 1 is not the same value as True here
        default = self._default_for(name)
        return type(value) is type(default) and value == default

    def _gate_allows(self, name: str, value: FlagValue, use_cache: bool = True) -> bool:
        if value is False or self._is_default(name, value):
            return True
        definition = self.definitions.get(name)
        if definition is None or definition.requires is None:
            return True
        if use_cache:
            allowed = self.evaluate(definition.requires)
        else:
            allowed = self._evaluate_condition(definition.requires)
        if not allowed:
            logger.warning(
                f"[FlagStore] Rejected '{name}' = {value!r}: requires "
                f"{definition.requires.describe()}"
            )
        return allowed

    def set(self, name: str, value: FlagValue) -> bool:
        """
        Set a single flag.

        Args:
            name: Flag name
            value: New value

        Returns:
            True if the write was applied, False if the flag's ``requires``
            condition rejected it or ``name`` is a location flag (use
            ``set_location`` for those)
        """
        if is_location_flag(name):
            logger.warning(f"[FlagStore] Rejected direct write to location flag '{name}'")
            return False
        if not self._gate_allows(name, value):
            return False
        self.values[name] = value
        self.cache.invalidate()
        logger.debug(f"[FlagStore] {name} = {value!r}")
        return True

    def apply_batch(
        self, set_names: Iterable[str], clear_names: Iterable[str]
    ) -> FlagChanges:
        """
        Apply narrator flag changes: listed flags become true, cleared flags
        return to false (or their default).

        Location flags are engine-managed and are skipped. Each write goes
        through the ``requires`` gate against the state as the batch has left
        it so far. The condition cache is invalidated once for the whole batch.

        Returns:
            The changes that were actually applied
        """
        applied = FlagChanges()

        for name in set_names:
            if is_location_flag(name):
                logger.warning(f"[FlagStore] Ignoring narrator change to location flag '{name}'")
                continue
            if self._gate_allows(name, True, use_cache=False):
                self.values[name] = True
                applied.set.append(name)

        for name in clear_names:
            if is_location_flag(name):
                logger.warning(f"[FlagStore] Ignoring narrator change to location flag '{name}'")
                continue
            self.values[name] = self._cleared_value(name)
            applied.clear.append(name)

        self.cache.invalidate()

        if not applied.is_empty():
            logger.info(
                f"[FlagStore] Applied flag changes: set={applied.set} clear={applied.clear}"
            )
        return applied

    def set_location(self, location_id: str) -> None:
        """Make ``location_id`` the only true location flag."""
        for name in self.values:
            if name.startswith(LOCATION_PREFIX):
                self.values[name] = False
        self.values[f"{LOCATION_PREFIX}{location_id}"] = True
        self.values[LOCATION_KEY] = location_id
        self.cache.invalidate()
        logger.debug(f"[FlagStore] Location set to {location_id}")

    def apply_initial(self, initial_flags: Dict[str, FlagValue]) -> None:
        """Apply a scene's initial flags; authored values bypass the gate."""
        if not initial_flags:
            return
        self.values.update(initial_flags)
        self.cache.invalidate()

    def restore(self, values: Dict[str, FlagValue]) -> None:
        """Replace all values, e.g. from a saved game."""
        self.values = dict(values)
        self.cache.invalidate()

    # ------------------------------------------------------------------
    # Condition evaluation
    # ------------------------------------------------------------------

    def evaluate(self, condition: ConditionInput) -> bool:
        """
        Evaluate a flag condition against the current values.

        An absent or empty condition holds. ``all_of`` and ``none_of`` hold
        when empty, ``any_of`` does not. Malformed conditions never hold.
        """
        if condition is None:
            return True
        parsed = self._parse_condition(condition)
        if parsed is None:
            return False
        if parsed.is_empty():
            return True

        key = self.cache.make_key(parsed.model_dump(exclude_none=True))
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        result = self._evaluate_condition(parsed)
        self.cache.set(key, result)
        return result

    @staticmethod
    def _parse_condition(condition: Any) -> Optional[FlagCondition]:
        if isinstance(condition, FlagCondition):
            return condition
        if not isinstance(condition, dict) or not set(condition) <= CONDITION_KEYS:
            logger.warning(f"[FlagStore] Malformed condition treated as false: {condition!r}")
            return None
        try:
            return FlagCondition.model_validate(condition)
        except ValidationError:
            logger.warning(f"[FlagStore] Malformed condition treated as false: {condition!r}")
            return None

    def _evaluate_condition(self, condition: FlagCondition) -> bool:
        if condition.all_of is not None:
            if not all(self._evaluate_token(token) for token in condition.all_of):
                return False
        if condition.any_of is not None:
            if not any(self._evaluate_token(token) for token in condition.any_of):
                return False
        if condition.none_of is not None:
            if any(self._evaluate_token(token) for token in condition.none_of):
                return False
        return True

    def _evaluate_token(self, token: str) -> bool:
        # Only strictly boolean True values satisfy a bare name
        token = token.strip()
        if token.startswith("!"):
            return self.values.get(token[1:].strip()) is not True
        return self.values.get(token) is True

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    # ------------------------------------------------------------------
    # Prompt rendering
    # ------------------------------------------------------------------

    def flag_progression_guidance(self) -> str:
        """Declared flags and when the narrator should set them."""
        if not self.definitions:
            return ""
        lines = ["FLAG PROGRESSION:", "Set these flags as the story develops:"]
        for name, definition in self.definitions.items():
            lines.append(f'- "{name}" → {definition.description}')
        return "\n".join(lines)

    def flag_state_section(self) -> str:
        """Current story flag values, location flags excluded."""
        story_flags = self.get_story_flags()
        if not story_flags:
            return ""

        set_flags = [name for name, value in story_flags.items() if value]
        unset_flags = [name for name, value in story_flags.items() if not value]

        lines: List[str] = ["**CURRENT STORY FLAGS:**"]
        if set_flags:
            lines.append(f"Set (true): {', '.join(set_flags)}")
        if unset_flags:
            lines.append(f"Unset (false): {', '.join(unset_flags)}")
        lines.append("")
        lines.append(f"**AVAILABLE FLAGS:** {', '.join(story_flags)}")
        lines.append("")
        lines.append(
            "**NOTE:** Location flags (at_*) are automatically managed by the engine. "
            "Only manage story flags above."
        )
        return "\n".join(lines)

    def flag_context(self) -> str:
        """Progression guidance plus current state, ready for a prompt."""
        sections = []
        guidance = self.flag_progression_guidance()
        if guidance:
            sections.append(f"**{guidance}**")
        state = self.flag_state_section()
        if state:
            sections.append(state)
        return "\n\n".join(sections)

    @staticmethod
    def flag_management_instructions() -> str:
        return FLAG_MANAGEMENT_INSTRUCTIONS

    def debug_string(self) -> str:
        return ", ".join(f"{name}: {value}" for name, value in self.values.items())
