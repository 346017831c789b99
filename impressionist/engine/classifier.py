"""
Action classifier - decides whether a player action continues the scene,
moves to another scene, or ends the story.

Uses the cheap model tier before the expensive narration call. Invalid
answers are retried with feedback; when every attempt fails the classifier
falls back to ordinary action mode so the story never gets stuck.
"""

import re
import time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from impressionist.config import settings
from impressionist.prompts import CLASSIFIER_PROMPT, CLASSIFIER_RETRY_NOTES
from impressionist.providers.base import LanguageModelError
from impressionist.providers.language_model import LanguageModel
from impressionist.schemas.outcome import (
    ClassificationMode,
    ClassificationResult,
    ClassifierOutput,
)
from impressionist.schemas.state import Interaction
from impressionist.schemas.story import Scene, Story
from impressionist.utils.logger import get_logger
from impressionist.utils.metrics import (
    ClassificationMetrics,
    EngineObserver,
    LLMCallMetrics,
)

logger = get_logger(__name__)

TOKEN_PATTERN = re.compile(r"^T(\d+)$")
CLASSIFIER_DIALOGUE_LIMIT = 3
FALLBACK_CONFIDENCE = 0.1


class TransitionCandidate(BaseModel):
    """One destination the classifier may choose"""

    id: str
    kind: Literal["scene", "ending"]
    conditions: List[str] = Field(
        default_factory=list, description="Natural-language clauses, all must hold"
    )
    sketch: Optional[str] = None


class ClassificationContext(BaseModel):
    """Everything the classifier looks at for one player action"""

    player_action: str
    scene_sketch: str = "unknown"
    scene_transitions: List[TransitionCandidate] = Field(default_factory=list)
    endings: List[TransitionCandidate] = Field(default_factory=list)
    recent_interactions: List[Interaction] = Field(default_factory=list)
    memories: List[str] = Field(default_factory=list)

    @property
    def candidates(self) -> List[TransitionCandidate]:
        """Scene transitions first, then endings; indexes map to T<k> tokens."""
        return self.scene_transitions + self.endings


def build_classification_context(
    story: Story,
    scene: Scene,
    player_action: str,
    interactions: List[Interaction],
    memories: List[str],
) -> ClassificationContext:
    """
    Collect transition candidates from the scene and story endings.

    Natural-language ``when`` text is preferred; flag conditions without one
    are rendered as text so the classifier can still reason about them.
    """
    scene_transitions = [
        TransitionCandidate(
            id=target,
            kind="scene",
            conditions=[condition],
            sketch=story.scenes[target].sketch if target in story.scenes else None,
        )
        for target, condition in scene.leads_to.items()
    ]
    for target, transition in scene.transitions.items():
        if target in scene.leads_to:
            continue
        if transition.when:
            condition = transition.when
        elif transition.requires is not None:
            condition = transition.requires.describe()
        else:
            continue
        scene_transitions.append(
            TransitionCandidate(
                id=target,
                kind="scene",
                conditions=[condition],
                sketch=story.scenes[target].sketch if target in story.scenes else None,
            )
        )

    global_conditions = story.endings.when_list()
    if not global_conditions and story.endings.requires is not None:
        global_conditions = [story.endings.requires.describe()]

    endings = []
    for ending in story.endings.variations:
        conditions = ending.when_list()
        if not conditions and ending.requires is not None:
            conditions = [ending.requires.describe()]
        endings.append(
            TransitionCandidate(
                id=ending.id,
                kind="ending",
                conditions=global_conditions + conditions,
                sketch=ending.sketch,
            )
        )

    return ClassificationContext(
        player_action=player_action,
        scene_sketch=scene.sketch or "unknown",
        scene_transitions=scene_transitions,
        endings=endings,
        recent_interactions=interactions,
        memories=memories,
    )


class ActionClassifier:
    """Maps free-text player input onto continue / transition / ending"""

    def __init__(
        self,
        language_model: LanguageModel,
        observer: Optional[EngineObserver] = None,
        max_attempts: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        self.language_model = language_model
        self.observer = observer or EngineObserver()
        self.max_attempts = max_attempts or settings.classifier_max_attempts
        self.temperature = (
            temperature if temperature is not None else settings.classifier_temperature
        )

    async def classify(self, context: ClassificationContext) -> ClassificationResult:
        """
        Classify one player action.

        Args:
            context: Candidates, scene and recent history

        Returns:
            A validated ClassificationResult; never raises
        """
        start_time = time.time()

        if not self.language_model.is_configured():
            return self._finish(
                ClassificationResult(
                    mode=ClassificationMode.ACTION,
                    reasoning="ActionClassifier: language model not configured, defaulting to action mode",
                    confidence=FALLBACK_CONFIDENCE,
                ),
                attempts=0,
                start_time=start_time,
                fell_back=True,
            )

        if not context.candidates:
            return self._finish(
                ClassificationResult(
                    mode=ClassificationMode.ACTION,
                    reasoning="No scene transitions or endings available",
                    confidence=0.9,
                ),
                attempts=0,
                start_time=start_time,
            )

        issues: List[str] = []
        for attempt in range(1, self.max_attempts + 1):
            prompt = self.build_prompt(context, issues)
            logger.debug(f"[Classifier] Attempt {attempt} prompt:\n{prompt}")

            try:
                result = await self.language_model.invoke(
                    prompt,
                    ClassifierOutput,
                    temperature=self.temperature,
                    use_cost_model=True,
                )
                output = ClassifierOutput.model_validate(result.data)
            except (LanguageModelError, ValidationError) as e:
                self.observer.record_llm_call(
                    LLMCallMetrics(label="classifier", prompt_chars=len(prompt), success=False)
                )
                issues.append(f"Classification failed: {e}")
                logger.warning(f"[Classifier] Attempt {attempt} failed: {e}")
                continue

            self.observer.record_llm_call(
                LLMCallMetrics(
                    label="classifier",
                    model=result.model,
                    input_tokens=result.usage.input_tokens,
                    output_tokens=result.usage.output_tokens,
                    latency_ms=result.latency_ms,
                    prompt_chars=len(prompt),
                )
            )
            logger.debug(
                f"[Classifier] Raw output: result={output.result!r} reasoning={output.reasoning!r}"
            )

            classification = self.interpret(output, context)
            attempt_issues = self.validate(classification, context)
            if not attempt_issues:
                logger.info(
                    f"[Classifier] {classification.mode.value}"
                    f"{' -> ' + classification.target_id if classification.target_id else ''} "
                    f"(confidence {classification.confidence:.2f}, attempt {attempt})"
                )
                return self._finish(classification, attempt, start_time)

            issues.extend(attempt_issues)
            logger.warning(f"[Classifier] Attempt {attempt} rejected: {'; '.join(attempt_issues)}")

        logger.warning("[Classifier] Max attempts exceeded, falling back to action mode")
        fallback = ClassificationResult(
            mode=ClassificationMode.ACTION,
            reasoning="Fallback to action mode due to validation issues: "
            + "; ".join(dict.fromkeys(issues)),
            confidence=FALLBACK_CONFIDENCE,
        )
        return self._finish(fallback, self.max_attempts, start_time, fell_back=True)

    def _finish(
        self,
        classification: ClassificationResult,
        attempts: int,
        start_time: float,
        fell_back: bool = False,
    ) -> ClassificationResult:
        self.observer.record_classification(
            ClassificationMetrics(
                mode=classification.mode.value,
                target_id=classification.target_id,
                confidence=classification.confidence,
                attempts=attempts,
                fell_back=fell_back,
                latency_ms=round((time.time() - start_time) * 1000, 2),
            )
        )
        return classification

    def build_prompt(self, context: ClassificationContext, issues: List[str]) -> str:
        retry_notes = ""
        if issues:
            retry_notes = CLASSIFIER_RETRY_NOTES.format(
                notes="\n".join(f"- {issue}" for issue in issues)
            )
        return CLASSIFIER_PROMPT.format(
            scene_sketch=context.scene_sketch,
            transitions=self._render_transitions(context),
            memories=self._render_memories(context),
            retry_notes=retry_notes,
            player_input=context.player_action,
        )

    @staticmethod
    def _render_transitions(context: ClassificationContext) -> str:
        sections = []
        for index, candidate in enumerate(context.candidates):
            section = f"**T{index}:**\n* **PREREQUISITES:**"
            for condition in candidate.conditions:
                section += f"\n    * `{condition}`"
            if candidate.sketch:
                section += f"\n* **DESCRIPTION:** {candidate.sketch}"
            sections.append(section)
        return "\n\n".join(sections)

    @staticmethod
    def _render_memories(context: ClassificationContext) -> str:
        sections = []
        if context.recent_interactions:
            dialogue = []
            for interaction in context.recent_interactions[-CLASSIFIER_DIALOGUE_LIMIT:]:
                dialogue.append(f"Player: {interaction.player_input}")
                dialogue.append(f"Response: {interaction.narrative_response}")
            sections.append("**Recent Dialogue:**\n" + "\n".join(dialogue))
        if context.memories:
            sections.append("**Memories:**\n" + "\n".join(f"- {m}" for m in context.memories))
        return "\n\n".join(sections) if sections else "**Memories:**\n- None"

    @staticmethod
    def interpret(
        output: ClassifierOutput, context: ClassificationContext
    ) -> ClassificationResult:
        """Map a raw "continue" / "T<k>" answer back onto a candidate."""
        answer = output.result.strip().strip('"').strip()

        if answer.lower() == "continue":
            return ClassificationResult(
                mode=ClassificationMode.ACTION, reasoning=output.reasoning, confidence=0.9
            )

        match = TOKEN_PATTERN.match(answer.upper())
        if match:
            index = int(match.group(1))
            candidates = context.candidates
            if index < len(candidates):
                candidate = candidates[index]
                mode = (
                    ClassificationMode.SCENE_TRANSITION
                    if candidate.kind == "scene"
                    else ClassificationMode.ENDING
                )
                return ClassificationResult(
                    mode=mode,
                    target_id=candidate.id,
                    reasoning=output.reasoning,
                    confidence=0.95,
                )
            # Out of range: keep a placeholder target so validation rejects it
            return ClassificationResult(
                mode=ClassificationMode.SCENE_TRANSITION,
                target_id=f"invalid_T{index}",
                reasoning=output.reasoning,
                confidence=0.95,
            )

        logger.warning(f"[Classifier] Invalid result format {output.result!r}, using action mode")
        return ClassificationResult(
            mode=ClassificationMode.ACTION,
            reasoning=f'Invalid result format "{output.result}": {output.reasoning}',
            confidence=FALLBACK_CONFIDENCE,
        )

    @staticmethod
    def validate(
        classification: ClassificationResult, context: ClassificationContext
    ) -> List[str]:
        """Return the rule violations of a classification (empty when valid)."""
        mode = classification.mode

        if mode == ClassificationMode.ACTION:
            classification.target_id = None
            return []

        if not classification.target_id:
            return [f'Mode "{mode.value}" requires a target_id but none was provided']

        if mode == ClassificationMode.SCENE_TRANSITION:
            valid_scenes = [c.id for c in context.scene_transitions]
            if classification.target_id not in valid_scenes:
                return [
                    f'Scene "{classification.target_id}" is not available from current scene. '
                    f"Available: {', '.join(valid_scenes) or 'none'}"
                ]

        if mode == ClassificationMode.ENDING:
            valid_endings = [c.id for c in context.endings]
            if classification.target_id not in valid_endings:
                return [
                    f'Ending "{classification.target_id}" is not available in this story. '
                    f"Available: {', '.join(valid_endings) or 'none'}"
                ]

        return []
