"""Translation decision core: scoring, skip policy, adaptive batching, retried execution."""

from .analyzer import HistoricalRun, OptimizationAnalyzer, ResourcePrediction, RunSummary
from .config import DecisionConfig, load_config, setup_logging
from .decision_log import DecisionLog
from .engine import DecisionEngine
from .errors import InvalidTaskSetError, PolicyError, TaskError
from .interfaces import RunOptions
from .models import (
    ErrorClass,
    ResourceType,
    RunResult,
    SkipContext,
    SystemLoadSnapshot,
    Task,
    TaskHistory,
)
from .scheduler import RunHandle, TaskScheduler
from .scoring import ErrorClassifier, classify_error

__all__ = [
    "DecisionConfig",
    "DecisionEngine",
    "DecisionLog",
    "ErrorClass",
    "ErrorClassifier",
    "HistoricalRun",
    "InvalidTaskSetError",
    "OptimizationAnalyzer",
    "PolicyError",
    "ResourcePrediction",
    "ResourceType",
    "RunHandle",
    "RunOptions",
    "RunResult",
    "RunSummary",
    "SkipContext",
    "SystemLoadSnapshot",
    "Task",
    "TaskError",
    "TaskHistory",
    "TaskScheduler",
    "classify_error",
    "load_config",
    "setup_logging",
]
