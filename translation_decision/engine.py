"""
DecisionEngine: 智能决策引擎
Answers three policy questions against a DecisionLog session:
skip-or-translate for one task, batch size under current load, retry strategy
for a failed attempt. Never raises for normal input; internal failures fall back
to the most conservative outcome and are logged with confidence 0.1.
"""
import logging
import math
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Sequence

from .config import DecisionConfig, load_config
from .decision_log import DecisionLog, MIN_CONFIDENCE
from .errors import PolicyError
from .interfaces import FetchTaskHistory, no_history
from .models import (
    BatchContext,
    BatchSizeDecision,
    DecisionKind,
    ErrorClass,
    RetryAction,
    RetryContext,
    RetryDecision,
    SkipContext,
    SkipDecision,
    SkipOutcome,
    SystemLoadSnapshot,
    Task,
    TaskHistory,
)
from .scoring import (
    classify_error as default_classify_error,
    resource_benefit,
    resource_profile,
    resource_risk,
    retry_success_probability,
    system_load_score,
)

logger = logging.getLogger(__name__)


class DecisionEngine:
    """
    One engine per scheduling run. The history cache is owned by the run that
    created the engine and is not shared across runs.
    """

    def __init__(
        self,
        config: Optional[DecisionConfig] = None,
        fetch_task_history: FetchTaskHistory = no_history,
        classify_error: Callable[[BaseException], ErrorClass] = default_classify_error,
        history_cache_size: Optional[int] = None,
    ):
        self.config = config or load_config()
        self.fetch_task_history = fetch_task_history
        self.classify_error = classify_error
        self.history_cache_size = max(1, history_cache_size or self.config.scheduler.history_cache_size)
        self._history_cache: "OrderedDict[str, TaskHistory]" = OrderedDict()
        self.log: Optional[DecisionLog] = None
        self.version = "1.0"

    def start_session(self, context: Optional[Dict[str, Any]] = None) -> DecisionLog:
        self.log = DecisionLog(context)
        self.log.add_thought("decision session started", {"type": "initialization"})
        return self.log

    def _session(self, context: Dict[str, Any]) -> DecisionLog:
        if self.log is None:
            self.start_session(context)
        return self.log

    def _recover(self, operation: str, exc: Exception, subject_id: Optional[str], kind: DecisionKind, outcome: str):
        error = PolicyError(operation, exc)
        logger.warning("policy error recovered with conservative outcome %s: %s", outcome, error)
        return self.log.record_decision(
            outcome,
            f"{error}; falling back to conservative outcome",
            subject_id=subject_id,
            kind=kind,
            confidence=MIN_CONFIDENCE,
        )

    async def get_task_history(self, task: Task) -> TaskHistory:
        key = task.identity
        if key in self._history_cache:
            return self._history_cache[key]

        history = await self.fetch_task_history(key)
        if history is None:
            history = TaskHistory()

        self._history_cache[key] = history
        while len(self._history_cache) > self.history_cache_size:
            self._history_cache.popitem(last=False)
        return history

    def _has_content_changed(self, task: Task, history: TaskHistory, context: SkipContext) -> bool:
        unchanged = context.content_unchanged or (
            task.content_hash is not None and task.content_hash == history.last_content_hash
        )
        if not unchanged:
            return True
        return history.success_count <= 0

    async def should_skip(self, task: Task, context: Optional[SkipContext] = None) -> SkipDecision:
        """
        决定是否跳过翻译

        Rules, first match wins: unchanged content with a prior success -> skip;
        risk above threshold -> defer; benefit below threshold -> skip;
        otherwise translate. Forced tasks always translate.
        """
        context = context or SkipContext()
        log = self._session({"operation": "skip_decision", "task_id": task.id})
        first_step = log.current_step

        if task.forced:
            log.add_thought(f"task {task.id} is forced, bypassing skip policy")
            decision = log.record_decision(
                SkipOutcome.TRANSLATE.value,
                "forced by user request, skip policy bypassed",
                subject_id=task.id,
                kind=DecisionKind.SKIP,
            )
            return SkipDecision(
                decision=SkipOutcome.TRANSLATE,
                reasoning=decision.reasoning,
                confidence=decision.confidence,
                audit_trail=log.entries_since(first_step),
            )

        try:
            log.add_thought(f"check history for {task.identity}")
            history = await self.get_task_history(task)

            log.add_thought("analyze content changes")
            changed = self._has_content_changed(task, history, context)
            reusable = not changed and history.success_count > 0
            if reusable and context.quality_threshold is not None and history.average_quality_score is not None:
                if history.average_quality_score < context.quality_threshold:
                    log.add_thought(
                        f"prior quality {history.average_quality_score:.2f} below threshold "
                        f"{context.quality_threshold:.2f}, prior translation not reusable"
                    )
                    reusable = False

            log.add_thought("score risk and benefit")
            risk = resource_risk(task, history, self.config.scoring)
            benefit = resource_benefit(task, context, self.config.scoring)

            log.add_thought("apply skip rules")
            skip_cfg = self.config.skip
            if reusable:
                outcome = SkipOutcome.SKIP
                reasoning = f"content unchanged, already translated ({history.success_count} successful attempts in history)"
            elif risk > skip_cfg.defer_risk_threshold:
                outcome = SkipOutcome.DEFER
                reasoning = f"risk too high ({risk:.2f} > {skip_cfg.defer_risk_threshold:.2f}), retry later"
            elif benefit < skip_cfg.skip_benefit_threshold:
                outcome = SkipOutcome.SKIP
                reasoning = f"low value: benefit score {benefit:.2f} below {skip_cfg.skip_benefit_threshold:.2f}"
            else:
                outcome = SkipOutcome.TRANSLATE
                reasoning = f"scores within thresholds (r={risk:.2f}, b={benefit:.2f}), translate"

            decision = log.record_decision(outcome.value, reasoning, subject_id=task.id, kind=DecisionKind.SKIP)
        except Exception as e:
            decision = self._recover("should_skip", e, task.id, DecisionKind.SKIP, SkipOutcome.SKIP.value)
            return SkipDecision(
                decision=SkipOutcome.SKIP,
                reasoning=decision.reasoning,
                confidence=decision.confidence,
                audit_trail=log.entries_since(first_step),
            )

        return SkipDecision(
            decision=outcome,
            reasoning=decision.reasoning,
            confidence=decision.confidence,
            audit_trail=log.entries_since(first_step),
            risk=risk,
            benefit=benefit,
        )

    def optimal_batch_size(
        self,
        tasks: Sequence[Task],
        load: SystemLoadSnapshot,
        context: Optional[BatchContext] = None,
    ) -> BatchSizeDecision:
        """
        优化批处理大小 (backpressure)

        Size shrinks as system load or average content size rises and never
        exceeds the number of tasks.
        """
        context = context or BatchContext()
        log = self._session({"operation": "batch_optimization"})
        n = len(tasks)
        cfg = self.config.batch

        try:
            log.add_thought("assess system load")
            load_score = system_load_score(load, self.config.scoring)

            log.add_thought("analyze resource profile")
            profile = resource_profile(tasks)

            log.add_thought("compute optimal batch size")
            if load_score < cfg.low_load_threshold:
                size = min(cfg.low_load_size, n)
            elif load_score > cfg.high_load_threshold:
                size = min(cfg.high_load_size, n)
            else:
                size = min(cfg.base_size, n)

            if profile.avg_size > cfg.heavy_content_avg_size:
                size = max(cfg.heavy_content_floor, math.floor(size * cfg.heavy_content_factor))

            if context.max_batch_size is not None:
                size = min(size, context.max_batch_size)
            size = max(1, min(size, n)) if n else 1

            decision = log.record_decision(
                f"batch size: {size}",
                f"based on system load ({load_score:.2f}) and resource profile data "
                f"(avg size {profile.avg_size:.0f}, {n} tasks)",
                kind=DecisionKind.BATCH_SIZE,
            )
        except Exception as e:
            decision = self._recover("optimal_batch_size", e, None, DecisionKind.BATCH_SIZE, "batch size: 1")
            return BatchSizeDecision(
                batch_size=1,
                reasoning=decision.reasoning,
                confidence=decision.confidence,
                metrics={"total_tasks": n},
            )

        return BatchSizeDecision(
            batch_size=size,
            reasoning=decision.reasoning,
            confidence=decision.confidence,
            metrics={
                "system_load": load_score,
                "avg_task_size": profile.avg_size,
                "total_tasks": n,
                "complexity": profile.complexity,
            },
        )

    def retry_strategy(
        self,
        error: BaseException,
        attempt_count: int,
        task: Optional[Task] = None,
        context: Optional[RetryContext] = None,
    ) -> RetryDecision:
        """
        决定重试策略

        attempt_count is the zero-based index of the attempt that just failed.
        Temporary errors back off exponentially, quota errors wait a fixed window,
        everything else is skipped. max_attempts is a hard ceiling; a RetryContext
        may lower it for one call but never raise it.
        """
        cfg = self.config.retry
        max_attempts = cfg.max_attempts
        if context is not None and context.max_attempts is not None:
            max_attempts = max(1, min(max_attempts, context.max_attempts))
        subject_id = task.id if task is not None else (context.task_id if context is not None else None)
        log = self._session({"operation": "retry_strategy", "error": str(error)})

        try:
            log.add_thought("classify error")
            error_class = self.classify_error(error)

            log.add_thought("estimate retry success probability")
            probability = retry_success_probability(error_class, attempt_count, self.config.scoring)

            delay_ms = 0
            if attempt_count >= max_attempts:
                strategy = RetryAction.SKIP
                reasoning = f"error class {error_class.value}, reached max attempts ({max_attempts}), skipping"
            elif error_class == ErrorClass.TEMPORARY and attempt_count < cfg.temporary_max_attempt:
                strategy = RetryAction.RETRY
                delay_ms = int(math.pow(2, attempt_count) * cfg.backoff_base_ms)
                reasoning = f"temporary error, retry #{attempt_count + 1} after {delay_ms}ms backoff"
            elif error_class == ErrorClass.QUOTA and attempt_count < cfg.quota_max_attempt:
                strategy = RetryAction.DELAY
                delay_ms = cfg.quota_delay_ms
                reasoning = f"quota limited, delaying {delay_ms}ms before retry"
            else:
                strategy = RetryAction.SKIP
                reasoning = f"error class {error_class.value}, attempted {attempt_count + 1} times, skipping"

            decision = log.record_decision(strategy.value, reasoning, subject_id=subject_id, kind=DecisionKind.RETRY)
        except Exception as e:
            decision = self._recover("retry_strategy", e, subject_id, DecisionKind.RETRY, RetryAction.SKIP.value)
            return RetryDecision(
                strategy=RetryAction.SKIP,
                delay_ms=0,
                reasoning=decision.reasoning,
                should_retry=False,
                max_attempts=max_attempts,
                error_class=ErrorClass.UNKNOWN,
                success_probability=0.0,
                confidence=decision.confidence,
            )

        return RetryDecision(
            strategy=strategy,
            delay_ms=delay_ms,
            reasoning=decision.reasoning,
            should_retry=strategy in (RetryAction.RETRY, RetryAction.DELAY),
            max_attempts=max_attempts,
            error_class=error_class,
            success_probability=probability,
            confidence=decision.confidence,
        )
