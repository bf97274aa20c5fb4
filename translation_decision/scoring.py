"""
ScoringPolicy: 纯评分函数
Risk / benefit / system load / resource profile / error classification /
retry success probability. No I/O; history is passed in by the caller.
"""
import math
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from .config import ScoringConfig
from .models import (
    ErrorClass,
    ResourceProfile,
    ResourceType,
    SkipContext,
    SystemLoadSnapshot,
    Task,
    TaskHistory,
)

_DEFAULT = ScoringConfig()


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value is None or math.isnan(value):
        return low
    return max(low, min(high, value))


def type_key(resource_type: Union[ResourceType, str]) -> str:
    return resource_type.value if isinstance(resource_type, ResourceType) else str(resource_type)


def resource_risk(task: Task, history: TaskHistory, config: ScoringConfig = _DEFAULT) -> float:
    """
    风险评分 [0, 1]

    0.6 * historical failure rate + 0.4 * quality penalty. Tasks without history
    get neutral values for both terms.
    """
    failure_rate = history.failure_rate
    if failure_rate is None:
        failure_rate = config.neutral_failure_rate

    if history.has_history and history.average_quality_score is not None:
        quality_penalty = 1.0 - _clamp(history.average_quality_score)
    else:
        quality_penalty = config.neutral_quality_penalty

    risk = failure_rate * config.failure_weight + quality_penalty * config.quality_weight
    return _clamp(risk)


def resource_benefit(task: Task, context: SkipContext, config: ScoringConfig = _DEFAULT) -> float:
    """收益评分 [0, 1]"""
    if context.user_requested:
        return 1.0

    benefit = config.benefit_base
    if context.priority == "high":
        benefit += config.high_priority_bonus

    important = context.important_types or frozenset(config.important_types)
    if type_key(task.resource_type) in {type_key(t) for t in important}:
        benefit += config.important_type_bonus

    return _clamp(benefit)


def system_load_score(snapshot: SystemLoadSnapshot, config: ScoringConfig = _DEFAULT) -> float:
    """Mean of normalized cpu, memory and active job pressure."""
    cpu = _clamp(snapshot.cpu_utilization / 100.0)
    memory = _clamp(snapshot.memory_utilization / 100.0)
    jobs = _clamp(max(0, snapshot.active_job_count) / max(1, config.max_active_jobs))
    return (cpu + memory + jobs) / 3


def assess_complexity(avg_size: float, distinct_types: int) -> str:
    if avg_size > 5000 or distinct_types > 3:
        return "high"
    if avg_size > 2000 or distinct_types > 1:
        return "medium"
    return "low"


def resource_profile(tasks: Sequence[Task]) -> ResourceProfile:
    sizes = [max(0, t.content_size) for t in tasks]
    type_counts: Dict[str, int] = {}
    for t in tasks:
        key = type_key(t.resource_type)
        type_counts[key] = type_counts.get(key, 0) + 1

    total = sum(sizes)
    avg = total / max(1, len(sizes))
    return ResourceProfile(
        count=len(tasks),
        avg_size=avg,
        max_size=max(sizes, default=0),
        min_size=min(sizes, default=0),
        total_size=total,
        type_counts=type_counts,
        complexity=assess_complexity(avg, len(type_counts)),
    )


class ErrorClassifier:
    """
    错误分类器：基于错误信息的子串匹配

    Hosts extend classification by passing extra patterns or a fallback callable;
    the engine only depends on ``__call__``.
    """

    ERROR_PATTERNS: Dict[ErrorClass, List[str]] = {
        ErrorClass.TEMPORARY: [
            "timeout", "timed out", "econnrefused", "connection refused", "connectionrefused",
            "econnreset", "connection reset", "temporarily unavailable",
        ],
        ErrorClass.QUOTA: [
            "quota", "rate limit", "ratelimit", "too many requests", "429",
        ],
        ErrorClass.INVALID: [
            "invalid", "malformed",
        ],
    }

    def __init__(
        self,
        extra_patterns: Optional[Dict[ErrorClass, Iterable[str]]] = None,
        fallback: Optional[Callable[[BaseException], Optional[ErrorClass]]] = None,
    ):
        self.patterns = {k: list(v) for k, v in self.ERROR_PATTERNS.items()}
        for error_class, patterns in (extra_patterns or {}).items():
            self.patterns.setdefault(error_class, []).extend(p.lower() for p in patterns)
        self.fallback = fallback

    def __call__(self, error: BaseException) -> ErrorClass:
        if isinstance(error, (TimeoutError, ConnectionError)):
            return ErrorClass.TEMPORARY

        message = f"{type(error).__name__}: {error}".lower()
        for error_class, patterns in self.patterns.items():
            if any(p in message for p in patterns):
                return error_class

        if self.fallback is not None:
            result = self.fallback(error)
            if result is not None:
                return result
        return ErrorClass.UNKNOWN


_default_classifier = ErrorClassifier()


def classify_error(error: BaseException) -> ErrorClass:
    return _default_classifier(error)


def retry_success_probability(error_class: ErrorClass, attempt_count: int, config: ScoringConfig = _DEFAULT) -> float:
    """Base probability per error class, decayed 0.7 per prior attempt."""
    base = config.retry_base_probability.get(
        error_class.value, config.retry_base_probability.get("unknown", 0.3)
    )
    return _clamp(base * math.pow(config.retry_decay, max(0, attempt_count)))
