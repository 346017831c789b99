"""
Narrative director - turns story state into prose plus structured side
effects (memories, importance, flag changes, discoveries).

One structured LLM call per narration. Output that does not match the
schema gets one repair call at a lower temperature; if that fails too the
director returns a minimal safe narration instead of raising.
"""

import json
import re
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from impressionist.config import settings
from impressionist.engine.context import DirectorContext, render_preamble
from impressionist.prompts import (
    CORE_RESPONSE_GUIDELINES,
    ENDING_INSTRUCTIONS,
    FLAG_MANAGEMENT_INSTRUCTIONS,
    FORMATTING_INSTRUCTIONS,
    INITIAL_SCENE_INSTRUCTIONS,
    PLAYER_ACTION,
    POST_ENDING_CONTEXT,
    REPAIR_PROMPT,
    RESPONSE_FORMAT,
    TRANSITION_INSTRUCTIONS,
)
from impressionist.providers.base import LanguageModelError, StructuredOutputError
from impressionist.providers.language_model import LanguageModel, StructuredResult
from impressionist.schemas.outcome import (
    DirectorOutput,
    DirectorResponse,
    DirectorSignals,
    FlagChanges,
    TokenUsage,
)
from impressionist.schemas.story import Ending, Scene
from impressionist.utils.logger import get_logger
from impressionist.utils.metrics import EngineObserver, LLMCallMetrics

logger = get_logger(__name__)

FALLBACK_NARRATIVE = "I need a moment to process what you said."
FALLBACK_IMPORTANCE = 5
UNCONFIGURED_NARRATIVE = (
    "API key required. Please configure your LLM provider (OPENAI_API_KEY) to play."
)
MIN_ENDING_IMPORTANCE = 8

# Quoted segments of a broken JSON array, tolerant of escaped quotes
QUOTED_SEGMENT = re.compile(r'"((?:[^"\\]|\\.)*)"', re.DOTALL)
# What remains of a serialized array once its strings are removed
ARRAY_SYNTAX = re.compile(r"\[[\s,]*\]")


class DirectorMode(str, Enum):
    INITIAL = "initial"
    ACTION = "action"
    TRANSITION = "transition"
    ENDING = "ending"
    POST_ENDING = "post_ending"


DEFAULT_IMPORTANCE = {
    DirectorMode.INITIAL: 7,
    DirectorMode.ACTION: 5,
    DirectorMode.TRANSITION: 6,
    DirectorMode.ENDING: 8,
    DirectorMode.POST_ENDING: 5,
}


def _unescape(segment: str) -> str:
    try:
        return json.loads(f'"{segment}"')
    except json.JSONDecodeError:
        return segment.replace('\\"', '"')


def normalize_narrative_parts(raw: Any) -> Optional[List[str]]:
    """
    Coerce whatever the model put in ``narrative_parts`` into a list of
    paragraphs.

    Handles a native list, a JSON array serialized into a string, a broken
    serialized array (quoted segments are extracted), and a plain string.
    Returns None when nothing usable is present.
    """
    if raw is None:
        return None

    if isinstance(raw, list):
        return [str(part) for part in raw if str(part).strip()]

    if not isinstance(raw, str):
        return [str(raw)]

    text = raw.strip()
    if not text:
        return []

    if text.startswith("[") and text.endswith("]"):
        try:
            parsed = json.loads(text)
            if isinstance(parsed, list):
                logger.debug("[Director] Parsed double-encoded narrative_parts")
                return [str(part) for part in parsed if str(part).strip()]
        except json.JSONDecodeError:
            if not ARRAY_SYNTAX.fullmatch(QUOTED_SEGMENT.sub("", text)):
                # Bracketed prose, not an array
                return [text]
            segments = [_unescape(s) for s in QUOTED_SEGMENT.findall(text)]
            segments = [s for s in segments if s.strip()]
            if segments:
                logger.debug(
                    f"[Director] Extracted {len(segments)} quoted segments from malformed narrative_parts"
                )
                return segments

    return [text]


class NarrativeDirector:
    """
    Produces narration for every director mode.

    Attributes:
        language_model: Two-tier LLM capability (quality tier is used)
        observer: Receives one record per LLM call
    """

    def __init__(
        self,
        language_model: LanguageModel,
        observer: Optional[EngineObserver] = None,
        temperature: Optional[float] = None,
        repair_temperature: Optional[float] = None,
    ):
        self.language_model = language_model
        self.observer = observer or EngineObserver()
        self.temperature = (
            temperature if temperature is not None else settings.narrator_temperature
        )
        self.repair_temperature = (
            repair_temperature
            if repair_temperature is not None
            else settings.repair_temperature
        )

    def is_configured(self) -> bool:
        return self.language_model.is_configured()

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def establish_scene(self, context: DirectorContext) -> DirectorResponse:
        """Narrate the opening of the story's entry scene."""
        prompt = "\n\n".join(
            [
                render_preamble(context),
                INITIAL_SCENE_INSTRUCTIONS.format(
                    scene_id=context.scene_id, sketch=context.current_sketch
                ),
                self._response_instructions(DirectorMode.INITIAL),
            ]
        )
        return await self._narrate(prompt, DirectorMode.INITIAL)

    async def process_action(
        self, player_input: str, context: DirectorContext
    ) -> DirectorResponse:
        """Narrate an ordinary player action within the current scene."""
        prompt = "\n\n".join(
            [
                CORE_RESPONSE_GUIDELINES,
                self._response_instructions(DirectorMode.ACTION),
                render_preamble(context),
                PLAYER_ACTION.format(player_input=player_input),
            ]
        )
        return await self._narrate(prompt, DirectorMode.ACTION)

    async def process_transition(
        self, target: Scene, context: DirectorContext, player_input: str
    ) -> DirectorResponse:
        """Narrate the move into ``target``, carrying the triggering action."""
        prompt = "\n\n".join(
            [
                render_preamble(context),
                TRANSITION_INSTRUCTIONS.format(
                    scene_id=target.id, player_input=player_input, sketch=target.sketch
                ),
                self._response_instructions(DirectorMode.TRANSITION),
            ]
        )
        response = await self._narrate(prompt, DirectorMode.TRANSITION)
        response.signals.scene = target.id
        return response

    async def process_ending(
        self, ending: Ending, context: DirectorContext, player_input: str
    ) -> DirectorResponse:
        """Narrate the story's conclusion."""
        prompt = "\n\n".join(
            [
                render_preamble(context),
                ENDING_INSTRUCTIONS.format(
                    ending_id=ending.id, player_input=player_input, sketch=ending.sketch
                ),
                self._response_instructions(DirectorMode.ENDING),
            ]
        )
        response = await self._narrate(prompt, DirectorMode.ENDING)
        response.signals.ending = ending.id
        return response

    async def process_post_ending(
        self, player_input: str, context: DirectorContext
    ) -> DirectorResponse:
        """Answer reflection and questions after the story has ended."""
        prompt = "\n\n".join(
            [
                POST_ENDING_CONTEXT,
                CORE_RESPONSE_GUIDELINES,
                self._response_instructions(DirectorMode.POST_ENDING),
                render_preamble(context),
                PLAYER_ACTION.format(player_input=player_input),
            ]
        )
        response = await self._narrate(prompt, DirectorMode.POST_ENDING)
        # Nothing may change once the story is over
        response.flag_changes = FlagChanges()
        response.discoveries = []
        return response

    @staticmethod
    def _response_instructions(mode: DirectorMode) -> str:
        sections = [
            FORMATTING_INSTRUCTIONS,
            RESPONSE_FORMAT.format(default_importance=DEFAULT_IMPORTANCE[mode]),
        ]
        if mode != DirectorMode.POST_ENDING:
            sections.append(FLAG_MANAGEMENT_INSTRUCTIONS)
        return "\n\n".join(sections)

    # ------------------------------------------------------------------
    # LLM call, recovery and fallback
    # ------------------------------------------------------------------

    async def _narrate(self, prompt: str, mode: DirectorMode) -> DirectorResponse:
        if not self.is_configured():
            return DirectorResponse(
                narrative=UNCONFIGURED_NARRATIVE,
                narrative_parts=[UNCONFIGURED_NARRATIVE],
                importance=1,
                signals=DirectorSignals(error="API key not configured"),
            )

        start_time = time.time()
        usage = TokenUsage()
        output: Optional[DirectorOutput] = None
        error: Optional[Exception] = None
        raw_text = ""
        logger.debug(f"[Director] {mode.value} prompt:\n{prompt}")

        llm_calls = 1
        try:
            result = await self._call(prompt, self.temperature, f"director:{mode.value}")
            usage = self._add_usage(usage, result.usage)
            raw_text = json.dumps(result.data, default=str)
            output = self.parse_output(result.data, mode)
        except StructuredOutputError as e:
            error = e
            raw_text = e.raw_text
        except ValidationError as e:
            error = e
        except LanguageModelError as e:
            logger.error(f"[Director] {mode.value} call failed: {e}")
            return self._fallback(mode, start_time, llm_calls, usage, prompt, str(e))

        if output is None:
            logger.warning(
                f"[Director] {mode.value} output did not match schema, repairing: {error}"
            )
            repair_prompt = REPAIR_PROMPT.format(error=error, raw_text=raw_text)
            llm_calls += 1
            try:
                result = await self._call(
                    repair_prompt, self.repair_temperature, "director:repair"
                )
                usage = self._add_usage(usage, result.usage)
                output = self.parse_output(result.data, mode)
            except (LanguageModelError, ValidationError) as e:
                logger.error(f"[Director] Repair failed, using fallback narration: {e}")
                return self._fallback(mode, start_time, llm_calls, usage, prompt, str(e))

        importance = output.importance
        if mode == DirectorMode.ENDING:
            importance = max(importance, MIN_ENDING_IMPORTANCE)

        response = DirectorResponse(
            narrative="\n\n".join(output.narrative_parts),
            narrative_parts=output.narrative_parts,
            memories=[m.strip() for m in output.memories if m.strip()],
            importance=importance,
            flag_changes=output.flag_changes or FlagChanges(),
            discoveries=output.discoveries,
            reasoning=output.reasoning,
            usage=usage,
            latency_ms=round((time.time() - start_time) * 1000, 2),
            context_size=len(prompt),
            llm_calls=llm_calls,
        )
        logger.info(
            f"[Director] {mode.value}: {len(response.narrative_parts)} paragraphs, "
            f"importance {importance}, {len(response.memories)} memories"
        )
        return response

    async def _call(
        self, prompt: str, temperature: float, label: str
    ) -> StructuredResult:
        try:
            result = await self.language_model.invoke(
                prompt, DirectorOutput, temperature=temperature
            )
        except LanguageModelError:
            self.observer.record_llm_call(
                LLMCallMetrics(label=label, prompt_chars=len(prompt), success=False)
            )
            raise
        self.observer.record_llm_call(
            LLMCallMetrics(
                label=label,
                model=result.model,
                input_tokens=result.usage.input_tokens,
                output_tokens=result.usage.output_tokens,
                latency_ms=result.latency_ms,
                prompt_chars=len(prompt),
            )
        )
        return result

    @staticmethod
    def parse_output(data: Dict[str, Any], mode: DirectorMode) -> DirectorOutput:
        """
        Validate raw model output, recovering common shape mistakes first.

        Raises:
            ValidationError: the output cannot be recovered
        """
        data = dict(data)

        raw_parts = data.get("narrative_parts")
        if raw_parts is None and isinstance(data.get("narrative"), str):
            raw_parts = data["narrative"]
        data["narrative_parts"] = normalize_narrative_parts(raw_parts)

        importance = data.get("importance")
        if importance is None:
            data["importance"] = DEFAULT_IMPORTANCE[mode]
        elif isinstance(importance, (int, float)) and not isinstance(importance, bool):
            data["importance"] = min(10, max(1, int(round(importance))))

        if data.get("memories") is None:
            data["memories"] = []
        if data.get("discoveries") is None:
            data["discoveries"] = []
        data.setdefault("reasoning", "")

        return DirectorOutput.model_validate(data)

    def _fallback(
        self,
        mode: DirectorMode,
        start_time: float,
        llm_calls: int,
        usage: TokenUsage,
        prompt: str,
        error: str,
    ) -> DirectorResponse:
        return DirectorResponse(
            narrative=FALLBACK_NARRATIVE,
            narrative_parts=[FALLBACK_NARRATIVE],
            importance=FALLBACK_IMPORTANCE,
            signals=DirectorSignals(error=f"Narration failed in {mode.value} mode: {error}"),
            usage=usage,
            latency_ms=round((time.time() - start_time) * 1000, 2),
            context_size=len(prompt),
            llm_calls=llm_calls,
        )

    @staticmethod
    def _add_usage(total: TokenUsage, extra: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=total.input_tokens + extra.input_tokens,
            output_tokens=total.output_tokens + extra.output_tokens,
        )
