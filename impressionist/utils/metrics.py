"""
Observability hooks for the story engine.

Components receive an ``EngineObserver`` at construction and report what
happened through it. The base class ignores everything; ``MetricsCollector``
keeps the records and aggregates them.

Usage:
    from impressionist.utils.metrics import MetricsCollector

    metrics = MetricsCollector()
    engine = StoryEngine(language_model, observer=metrics)
    ...
    metrics.summary()
"""

import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from impressionist.utils.logger import get_logger

logger = get_logger(__name__)

# Records kept per category before the oldest are dropped
MAX_RECORDS = 100


class LLMCallMetrics(BaseModel):
    """One structured LLM call"""

    label: str
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    prompt_chars: int = 0
    success: bool = True
    timestamp: float = Field(default_factory=time.time)


class ClassificationMetrics(BaseModel):
    """Outcome of one classifier run (all attempts included)"""

    mode: str
    target_id: Optional[str] = None
    confidence: float
    attempts: int
    fell_back: bool = False
    latency_ms: float = 0.0
    timestamp: float = Field(default_factory=time.time)


class CompactionMetrics(BaseModel):
    """Outcome of one memory compaction"""

    original_count: int
    compacted_count: int
    success: bool
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    error: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class TurnMetrics(BaseModel):
    """One processed player turn"""

    scene_id: str
    mode: str
    llm_calls: int
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    memory_count: int = 0
    transitioned_to: Optional[str] = None
    ending_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class EngineObserver:
    """No-op observer. Subclass and override the hooks you care about."""

    def record_llm_call(self, metrics: LLMCallMetrics) -> None:
        pass

    def record_classification(self, metrics: ClassificationMetrics) -> None:
        pass

    def record_compaction(self, metrics: CompactionMetrics) -> None:
        pass

    def record_turn(self, metrics: TurnMetrics) -> None:
        pass


class MetricsCollector(EngineObserver):
    """
    Keep recent engine metrics in memory and aggregate them on demand.

    Only the last ``MAX_RECORDS`` entries of each category are kept.
    """

    def __init__(self):
        self.llm_calls: List[LLMCallMetrics] = []
        self.classifications: List[ClassificationMetrics] = []
        self.compactions: List[CompactionMetrics] = []
        self.turns: List[TurnMetrics] = []
        self.session_start = time.time()

    @staticmethod
    def _append(records: List[Any], entry: Any) -> None:
        records.append(entry)
        if len(records) > MAX_RECORDS:
            del records[: len(records) - MAX_RECORDS]

    def record_llm_call(self, metrics: LLMCallMetrics) -> None:
        self._append(self.llm_calls, metrics)
        logger.debug(
            f"[Metrics] {metrics.label}: {metrics.input_tokens}→{metrics.output_tokens} tokens "
            f"in {metrics.latency_ms:.0f}ms"
        )

    def record_classification(self, metrics: ClassificationMetrics) -> None:
        self._append(self.classifications, metrics)

    def record_compaction(self, metrics: CompactionMetrics) -> None:
        self._append(self.compactions, metrics)
        if not metrics.success:
            logger.info(f"[Metrics] Compaction failure recorded: {metrics.error}")

    def record_turn(self, metrics: TurnMetrics) -> None:
        self._append(self.turns, metrics)

    def summary(self) -> Dict[str, Any]:
        """
        Get summary statistics for everything recorded so far.

        Returns:
            Dictionary with per-category counts, token totals and latencies
        """
        latencies = [c.latency_ms for c in self.llm_calls]
        successful_compactions = sum(1 for c in self.compactions if c.success)

        return {
            "llm_calls": {
                "count": len(self.llm_calls),
                "failed": sum(1 for c in self.llm_calls if not c.success),
                "total_input_tokens": sum(c.input_tokens for c in self.llm_calls),
                "total_output_tokens": sum(c.output_tokens for c in self.llm_calls),
                "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0,
                "fastest_ms": min(latencies) if latencies else 0,
                "slowest_ms": max(latencies) if latencies else 0,
            },
            "classifications": {
                "count": len(self.classifications),
                "fallbacks": sum(1 for c in self.classifications if c.fell_back),
            },
            "compactions": {
                "count": len(self.compactions),
                "successful": successful_compactions,
                "success_rate": (
                    successful_compactions / len(self.compactions)
                    if self.compactions
                    else 0
                ),
            },
            "turns": {
                "count": len(self.turns),
                "transitions": sum(1 for t in self.turns if t.transitioned_to),
                "endings": sum(1 for t in self.turns if t.ending_id),
            },
            "session_seconds": round(time.time() - self.session_start, 1),
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self.llm_calls = []
        self.classifications = []
        self.compactions = []
        self.turns = []
        self.session_start = time.time()
        logger.info("[Metrics] Reset all engine metrics")
