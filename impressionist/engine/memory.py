"""
Importance-weighted memory store with background LLM compaction
"""

import asyncio
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from impressionist.config import settings
from impressionist.prompts import COMPACTION_PROMPT
from impressionist.providers.base import LanguageModelError
from impressionist.providers.language_model import LanguageModel
from impressionist.schemas.outcome import CompactionOutput
from impressionist.schemas.state import MemoryEntry
from impressionist.utils.logger import get_logger
from impressionist.utils.metrics import CompactionMetrics, EngineObserver, LLMCallMetrics

logger = get_logger(__name__)

# Weight of importance relative to recency (in days) when ranking memories
IMPORTANCE_WEIGHT = 2.0
SECONDS_PER_DAY = 86400.0
# Fewer memories than this are never worth compacting
MIN_MEMORIES_FOR_COMPACTION = 3
MIN_COMPACTION_INTERVAL = 1
MAX_COMPACTION_INTERVAL = 20


class MemoryStore:
    """
    Rolling memory log for one game session.

    Memories are ranked by importance and recency for retrieval and
    periodically consolidated by the cheap model. Compaction runs as a
    background task; a failed compaction leaves the memories untouched.
    """

    def __init__(
        self,
        language_model: Optional[LanguageModel] = None,
        observer: Optional[EngineObserver] = None,
        compaction_interval: Optional[int] = None,
        max_memory_count: Optional[int] = None,
        target_ratio: Optional[float] = None,
        min_compacted_memories: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        self.language_model = language_model or LanguageModel()
        self.observer = observer or EngineObserver()
        self.compaction_interval = self._clamp_interval(
            compaction_interval or settings.memory_compaction_interval
        )
        self.max_memory_count = max_memory_count or settings.max_memory_count
        self.target_ratio = target_ratio or settings.compaction_target_ratio
        self.min_compacted_memories = (
            min_compacted_memories or settings.min_compacted_memories
        )
        self.temperature = (
            temperature if temperature is not None else settings.compaction_temperature
        )

        self.memories: List[MemoryEntry] = []
        self.memories_since_last_compaction = 0
        self.is_processing = False
        self.last_compaction_time: Optional[datetime] = None
        self._compaction_task: Optional["asyncio.Task[bool]"] = None

    # ------------------------------------------------------------------
    # Adding and retrieving
    # ------------------------------------------------------------------

    def add_memory(self, content: str, importance: int = 5) -> Optional[MemoryEntry]:
        """
        Record a memory and schedule compaction when due.

        Args:
            content: Memory text; blank content is ignored
            importance: 1-10, clamped

        Returns:
            The stored entry, or None if the content was blank
        """
        content = (content or "").strip()
        if not content:
            return None

        entry = MemoryEntry(
            id=f"mem_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}",
            content=content,
            timestamp=datetime.now(),
            importance=min(10, max(1, int(importance))),
        )
        self.memories.append(entry)
        self.memories_since_last_compaction += 1

        if self.should_compact():
            self.trigger_compaction()
        return entry

    @staticmethod
    def _score(memory: MemoryEntry) -> float:
        recency_days = memory.timestamp.timestamp() / SECONDS_PER_DAY
        return memory.importance * IMPORTANCE_WEIGHT + recency_days

    def get_memory_entries(self, limit: int = 10) -> List[MemoryEntry]:
        """Top ``limit`` memories by score, returned oldest first."""
        if limit <= 0:
            return []
        ranked = sorted(self.memories, key=self._score, reverse=True)[:limit]
        return sorted(ranked, key=lambda m: m.timestamp)

    def get_memories(self, limit: int = 10) -> List[str]:
        return [m.content for m in self.get_memory_entries(limit)]

    def all_memories(self) -> List[MemoryEntry]:
        return list(self.memories)

    def cancel_compaction(self) -> None:
        """Cancel the in-flight compaction, if any; memories stay as they are."""
        if self._compaction_task and not self._compaction_task.done():
            self._compaction_task.cancel()
        self._compaction_task = None
        self.is_processing = False

    def reset(self) -> None:
        """Forget everything; an in-flight compaction result is discarded."""
        self.cancel_compaction()
        self.memories = []
        self.memories_since_last_compaction = 0
        self.last_compaction_time = None
        logger.debug("[Memory] Reset")

    @staticmethod
    def _clamp_interval(interval: int) -> int:
        return min(MAX_COMPACTION_INTERVAL, max(MIN_COMPACTION_INTERVAL, int(interval)))

    def set_compaction_interval(self, interval: int) -> None:
        self.compaction_interval = self._clamp_interval(interval)

    def stats(self) -> Dict[str, Any]:
        return {
            "total_memories": len(self.memories),
            "memories_since_last_compaction": self.memories_since_last_compaction,
            "compaction_interval": self.compaction_interval,
            "is_processing": self.is_processing,
            "last_compaction_time": (
                self.last_compaction_time.isoformat() if self.last_compaction_time else None
            ),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> Dict[str, Any]:
        return {
            "memories": [m.model_dump(mode="json") for m in self.memories],
            "memoriesSinceLastCompaction": self.memories_since_last_compaction,
            "lastCompactionTime": (
                self.last_compaction_time.isoformat() if self.last_compaction_time else None
            ),
        }

    @staticmethod
    def parse_state(
        state: Any,
    ) -> Tuple[List[MemoryEntry], int, Optional[datetime]]:
        """
        Validate an exported state without applying it.

        Raises:
            ValueError: the state is not a valid export
        """
        if not isinstance(state, dict) or not isinstance(state.get("memories"), list):
            raise ValueError("memory state must contain a 'memories' list")
        try:
            memories = [MemoryEntry.model_validate(m) for m in state["memories"]]
        except ValidationError as e:
            raise ValueError(f"invalid memory entry: {e}") from e

        since = state.get("memoriesSinceLastCompaction", 0)
        if not isinstance(since, int):
            raise ValueError("memoriesSinceLastCompaction must be an integer")

        last_compaction = state.get("lastCompactionTime")
        try:
            last_time = datetime.fromisoformat(last_compaction) if last_compaction else None
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid lastCompactionTime: {last_compaction!r}") from e

        return memories, since, last_time

    def import_state(self, state: Any) -> None:
        memories, since, last_time = self.parse_state(state)
        self.reset()
        self.memories = memories
        self.memories_since_last_compaction = since
        self.last_compaction_time = last_time
        logger.info(f"[Memory] Imported {len(self.memories)} memories")

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def should_compact(self) -> bool:
        return (
            not self.is_processing
            and self.language_model.is_configured()
            and (
                self.memories_since_last_compaction >= self.compaction_interval
                or len(self.memories) >= self.max_memory_count
            )
        )

    def target_count(self, count: int) -> int:
        return max(self.min_compacted_memories, int(count * self.target_ratio))

    def trigger_compaction(self) -> Optional["asyncio.Task[bool]"]:
        """Start compaction in the background; never blocks the caller."""
        if self.is_processing:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[Memory] No running event loop, compaction deferred")
            return None

        self.is_processing = True
        self.memories_since_last_compaction = 0
        logger.info(f"[Memory] Starting background compaction of {len(self.memories)} memories")
        self._compaction_task = loop.create_task(self._run_compaction())
        self._compaction_task.add_done_callback(self._on_compaction_done)
        return self._compaction_task

    async def _run_compaction(self) -> bool:
        try:
            return await self.compact()
        finally:
            # A reset while compacting has already cleared the bookkeeping
            if self._compaction_task is asyncio.current_task():
                self.is_processing = False
                self.last_compaction_time = datetime.now()

    @staticmethod
    def _on_compaction_done(task: "asyncio.Task[bool]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Memory] Compaction task crashed: {error!r}")

    async def wait_for_compaction(self) -> None:
        """Wait for the in-flight compaction, if any."""
        task = self._compaction_task
        if task is not None and not task.done():
            await task

    def build_compaction_prompt(self, memories: List[MemoryEntry]) -> str:
        return COMPACTION_PROMPT.format(
            count=len(memories),
            target_count=self.target_count(len(memories)),
            memories="\n".join(
                f"{i + 1}. [Importance: {m.importance}] {m.content}"
                for i, m in enumerate(memories)
            ),
        )

    async def compact(self) -> bool:
        """
        Consolidate the current memories with the cheap model.

        The compacted list replaces the memories that were sent; memories
        added while the call was in flight are kept after it.

        Returns:
            True if the memories were replaced
        """
        snapshot = list(self.memories)
        original_count = len(snapshot)
        if original_count < MIN_MEMORIES_FOR_COMPACTION:
            return False

        start_time = time.time()
        prompt = self.build_compaction_prompt(snapshot)

        def record(
            success: bool,
            compacted_count: int,
            error: Optional[str] = None,
            input_tokens: int = 0,
            output_tokens: int = 0,
        ) -> None:
            self.observer.record_compaction(
                CompactionMetrics(
                    original_count=original_count,
                    compacted_count=compacted_count,
                    success=success,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    latency_ms=round((time.time() - start_time) * 1000, 2),
                    error=error,
                )
            )

        try:
            result = await self.language_model.invoke(
                prompt,
                CompactionOutput,
                temperature=self.temperature,
                use_cost_model=True,
            )
            output = CompactionOutput.model_validate(result.data)
        except (LanguageModelError, ValidationError) as e:
            logger.warning(f"[Memory] Compaction failed, keeping {original_count} memories: {e}")
            self.observer.record_llm_call(
                LLMCallMetrics(label="compaction", prompt_chars=len(prompt), success=False)
            )
            record(False, original_count, error=str(e))
            return False

        usage = result.usage
        self.observer.record_llm_call(
            LLMCallMetrics(
                label="compaction",
                model=result.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                latency_ms=result.latency_ms,
                prompt_chars=len(prompt),
            )
        )

        stamp = int(time.time() * 1000)
        compacted = [
            MemoryEntry(
                id=f"compacted_{stamp}_{i}",
                content=m.content.strip(),
                timestamp=datetime.now(),
                importance=m.importance,
            )
            for i, m in enumerate(output.compacted_memories)
            if m.content.strip()
        ]

        lower_bound = min(self.min_compacted_memories, original_count)
        if not lower_bound <= len(compacted) <= original_count:
            error = (
                f"Compaction returned {len(compacted)} memories, "
                f"expected between {lower_bound} and {original_count}"
            )
            logger.warning(f"[Memory] {error}; keeping existing memories")
            record(False, original_count, error, usage.input_tokens, usage.output_tokens)
            return False

        snapshot_ids = {m.id for m in snapshot}
        added_meanwhile = [m for m in self.memories if m.id not in snapshot_ids]
        self.memories = compacted + added_meanwhile
        logger.info(f"[Memory] Compacted {original_count} memories to {len(compacted)}")
        record(True, len(compacted), None, usage.input_tokens, usage.output_tokens)
        return True
