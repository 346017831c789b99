"""
Core engine components for the Impressionist story engine
"""

from .classifier import ActionClassifier, ClassificationContext, TransitionCandidate
from .director import DirectorMode, NarrativeDirector
from .flags import FlagStore
from .memory import MemoryStore
from .orchestrator import StoryEngine

__all__ = [
    "FlagStore",
    "ActionClassifier",
    "ClassificationContext",
    "TransitionCandidate",
    "NarrativeDirector",
    "DirectorMode",
    "MemoryStore",
    "StoryEngine",
]
