"""
Utility modules for the Impressionist story engine
"""

from .cache import ConditionCache
from .logger import get_logger, setup_logging
from .metrics import EngineObserver, MetricsCollector

__all__ = [
    "ConditionCache",
    "get_logger",
    "setup_logging",
    "EngineObserver",
    "MetricsCollector",
]
