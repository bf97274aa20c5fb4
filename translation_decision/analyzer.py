"""
OptimizationAnalyzer: 优化分析器
Post-run metrics, bottlenecks and suggestions, resource requirement prediction,
and the feedback step that turns a summary into the next run's options.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .config import AnalyzerConfig, DecisionConfig, load_config
from .interfaces import RunOptions
from .models import RunResult, Task

logger = logging.getLogger(__name__)


@dataclass
class Bottleneck:
    type: str  # slow_translations | high_retry_rate
    count: int
    details: Dict[str, float] = field(default_factory=dict)


@dataclass
class Suggestion:
    type: str  # quality | performance | reliability
    priority: str
    suggestion: str
    impact: str


@dataclass
class ErrorPattern:
    error_class: str
    count: int
    examples: List[str] = field(default_factory=list)


@dataclass
class RunSummary:
    run_id: str
    success_rate: float
    avg_latency_ms: float
    attempted: int
    batch_size: int
    bottlenecks: List[Bottleneck] = field(default_factory=list)
    suggestions: List[Suggestion] = field(default_factory=list)
    error_patterns: List[ErrorPattern] = field(default_factory=list)

    def has_bottleneck(self, kind: str) -> bool:
        return any(b.type == kind for b in self.bottlenecks)


@dataclass
class HistoricalRun:
    """Per-task duration record used for prediction."""
    time_ms: float


@dataclass
class ResourcePrediction:
    estimated_time_ms: float
    recommended_batch_size: int
    recommended_concurrency: int
    risk_level: str  # low | medium | high


def historical_records(run_result: RunResult) -> List[HistoricalRun]:
    return [HistoricalRun(time_ms=r.latency_ms) for r in run_result.task_results()]


class OptimizationAnalyzer:
    def __init__(self, config: Optional[DecisionConfig] = None):
        self.config: AnalyzerConfig = (config or load_config()).analyzer
        self.metrics: Dict[str, RunSummary] = {}

    def summarize(self, run_result: RunResult) -> RunSummary:
        results = run_result.task_results()
        attempted = len(results)
        succeeded = sum(1 for r in results if r.succeeded)

        summary = RunSummary(
            run_id=run_result.run_id,
            success_rate=succeeded / attempted if attempted else 0.0,
            avg_latency_ms=sum(r.latency_ms for r in results) / attempted if attempted else 0.0,
            attempted=attempted,
            batch_size=run_result.batch_size,
        )
        summary.error_patterns = self.identify_error_patterns(run_result)
        summary.bottlenecks = self.identify_bottlenecks(run_result)
        summary.suggestions = self.generate_suggestions(summary)

        self.metrics[run_result.run_id] = summary
        logger.info(
            "run %s summary: success rate %.2f, avg latency %.0fms, %d bottlenecks",
            run_result.run_id, summary.success_rate, summary.avg_latency_ms, len(summary.bottlenecks),
        )
        return summary

    def identify_error_patterns(self, run_result: RunResult) -> List[ErrorPattern]:
        patterns: Dict[str, ErrorPattern] = {}
        for result in run_result.task_results():
            if result.succeeded:
                continue
            key = result.error_class.value if result.error_class else "unknown"
            pattern = patterns.setdefault(key, ErrorPattern(error_class=key, count=0))
            pattern.count += 1
            if len(pattern.examples) < 3 and result.error:
                pattern.examples.append(result.error)
        return sorted(patterns.values(), key=lambda p: p.count, reverse=True)

    def identify_bottlenecks(self, run_result: RunResult) -> List[Bottleneck]:
        results = run_result.task_results()
        bottlenecks: List[Bottleneck] = []

        slow = [r for r in results if r.latency_ms > self.config.slow_task_ms]
        if slow:
            bottlenecks.append(Bottleneck(
                type="slow_translations",
                count=len(slow),
                details={"avg_time_ms": sum(r.latency_ms for r in slow) / len(slow)},
            ))

        retried = [r for r in results if r.retries > 0]
        if results and len(retried) > len(results) * self.config.high_retry_share:
            bottlenecks.append(Bottleneck(
                type="high_retry_rate",
                count=len(retried),
                details={
                    "percentage": len(retried) / len(results) * 100,
                    "avg_retries": sum(r.retries for r in retried) / len(retried),
                },
            ))

        return bottlenecks

    def generate_suggestions(self, summary: RunSummary) -> List[Suggestion]:
        suggestions: List[Suggestion] = []

        if summary.attempted and summary.success_rate < self.config.min_success_rate:
            suggestions.append(Suggestion(
                type="quality",
                priority="high",
                suggestion="success rate is low, investigate translation quality and API stability",
                impact="high",
            ))

        if summary.avg_latency_ms > self.config.slow_avg_latency_ms:
            suggestions.append(Suggestion(
                type="performance",
                priority="medium",
                suggestion="average translation time is high, reduce batch size or add concurrency",
                impact="medium",
            ))

        if summary.error_patterns:
            dominant = summary.error_patterns[0]
            suggestions.append(Suggestion(
                type="reliability",
                priority="high",
                suggestion=f"frequent {dominant.error_class} errors, add targeted handling for them",
                impact="high",
            ))

        return suggestions

    def predict_resource_requirements(self, tasks: Sequence[Task], history: Sequence[HistoricalRun]) -> ResourcePrediction:
        """
        预测资源需求

        Linear extrapolation from historical per-task duration. Concurrency drops
        to 1 once the task count puts the run at high risk.
        """
        prediction = ResourcePrediction(
            estimated_time_ms=0.0,
            recommended_batch_size=10,
            recommended_concurrency=3,
            risk_level="low",
        )

        if history:
            avg_time = sum(h.time_ms for h in history) / len(history)
            prediction.estimated_time_ms = avg_time * len(tasks)
            if avg_time > 3000:
                prediction.recommended_batch_size = 5
            elif avg_time < 1000:
                prediction.recommended_batch_size = 20

        if len(tasks) > self.config.medium_risk_tasks:
            prediction.risk_level = "medium"
        if len(tasks) > self.config.high_risk_tasks:
            prediction.risk_level = "high"
            prediction.recommended_concurrency = 1

        return prediction

    def tune_options(self, options: Optional[RunOptions], summary: RunSummary) -> RunOptions:
        """Feed a run summary back into the options for the next run."""
        options = options or RunOptions()
        update: Dict[str, Any] = {}

        if summary.attempted and summary.avg_latency_ms > 0:
            update["historical_avg_latency_ms"] = summary.avg_latency_ms

        if summary.avg_latency_ms > self.config.slow_avg_latency_ms or summary.has_bottleneck("slow_translations"):
            current = options.max_batch_size or summary.batch_size
            update["max_batch_size"] = max(1, current // 2)

        return options.model_copy(update=update)
