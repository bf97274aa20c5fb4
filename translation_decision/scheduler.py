"""
TaskScheduler: 智能翻译调度器
Profile -> batch size -> prioritize -> skip filter -> batches -> sequential batch
execution with concurrent, retried tasks inside each batch.

Each run owns its DecisionEngine and DecisionLog; progress is exposed through the
RunHandle returned by start_run instead of a process-wide progress map.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Union

from .config import DecisionConfig, load_config
from .decision_log import MIN_CONFIDENCE
from .engine import DecisionEngine
from .errors import ExhaustedRetries, InvalidTaskSetError, PolicyError, TaskError
from .interfaces import (
    FetchSystemLoad,
    FetchTaskHistory,
    PerformTranslation,
    RunOptions,
    Sleep,
    asyncio_sleep,
    no_history,
)
from .models import (
    TASK_TRANSITIONS,
    Batch,
    BatchContext,
    BatchSizeDecision,
    DecisionKind,
    ErrorClass,
    Job,
    ResourceType,
    RetryAction,
    RunProgress,
    RunResult,
    RunStats,
    SkipContext,
    SkipOutcome,
    SkippedTask,
    SystemLoadSnapshot,
    Task,
    TaskResult,
    TaskState,
)
from .scoring import classify_error as default_classify_error, resource_profile, type_key

logger = logging.getLogger(__name__)

ProgressListener = Callable[[RunProgress], None]


class RunHandle:
    """
    Handle on one scheduling run.

    Await ``result()`` (or the handle itself) for the RunResult; ``snapshot()``
    and ``subscribe()`` expose live progress; ``cancel()`` stops the run before
    the next batch, retry sleep or retry attempt.
    """

    def __init__(self, run_id: str, tasks: Sequence[Task]):
        self.run_id = run_id
        self.phase = "pending"
        self.batches_total = 0
        self.batches_completed = 0
        self._states: Dict[str, TaskState] = {t.id: TaskState.PENDING for t in tasks}
        self._listeners: List[ProgressListener] = []
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True
        self._notify()

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def result(self) -> RunResult:
        return await self._task

    def __await__(self):
        return self.result().__await__()

    def state_of(self, task_id: str) -> TaskState:
        return self._states[task_id]

    def snapshot(self) -> RunProgress:
        counts: Dict[str, int] = {state.value: 0 for state in TaskState}
        for state in self._states.values():
            counts[state.value] += 1
        return RunProgress(
            run_id=self.run_id,
            phase=self.phase,
            states=counts,
            batches_total=self.batches_total,
            batches_completed=self.batches_completed,
            done=self.phase in ("completed", "cancelled"),
        )

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_phase(self, phase: str):
        self.phase = phase
        self._notify()

    def _transition(self, task_id: str, state: TaskState):
        current = self._states.get(task_id)
        if current is None:
            return
        if state not in TASK_TRANSITIONS[current]:
            logger.warning("ignoring transition %s -> %s for task %s", current.value, state.value, task_id)
            return
        self._states[task_id] = state
        self._notify()

    def _notify(self):
        if not self._listeners:
            return
        progress = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception:
                logger.exception("progress listener failed for run %s", self.run_id)


class TaskScheduler:
    """成本感知的翻译任务调度器"""

    def __init__(
        self,
        perform_translation: PerformTranslation,
        fetch_task_history: FetchTaskHistory = no_history,
        fetch_system_load: Optional[FetchSystemLoad] = None,
        sleep: Sleep = asyncio_sleep,
        config: Optional[DecisionConfig] = None,
        classify_error: Callable[[BaseException], ErrorClass] = default_classify_error,
    ):
        self.perform_translation = perform_translation
        self.fetch_task_history = fetch_task_history
        self.fetch_system_load = fetch_system_load or self._synthesized_load
        self.sleep = sleep
        self.config = config or load_config()
        self.classify_error = classify_error
        self._active_batches = 0
        self._queued_tasks = 0

    def new_engine(self) -> DecisionEngine:
        return DecisionEngine(
            config=self.config,
            fetch_task_history=self.fetch_task_history,
            classify_error=self.classify_error,
        )

    async def _synthesized_load(self) -> SystemLoadSnapshot:
        return SystemLoadSnapshot(active_job_count=self._active_batches, queue_depth=self._queued_tasks)

    @staticmethod
    def _validate(tasks) -> List[Task]:
        if not isinstance(tasks, (list, tuple)):
            raise InvalidTaskSetError(f"tasks must be a list, got {type(tasks).__name__}")
        seen = set()
        validated: List[Task] = []
        for task in tasks:
            if not isinstance(task, Task):
                raise InvalidTaskSetError(f"expected Task, got {type(task).__name__}")
            if task.id in seen:
                raise InvalidTaskSetError(f"duplicate task id {task.id}", task_id=task.id)
            seen.add(task.id)
            if not isinstance(task.resource_type, ResourceType):
                try:
                    task = replace(task, resource_type=ResourceType(task.resource_type))
                except ValueError:
                    raise InvalidTaskSetError(
                        f"unknown resource type {task.resource_type!r} for task {task.id}", task_id=task.id,
                    ) from None
            validated.append(task)
        return validated

    def start_run(self, tasks: Sequence[Task], options: Union[RunOptions, dict, None] = None) -> RunHandle:
        """Validate input and start the run on the current event loop."""
        tasks = self._validate(tasks)
        if options is None:
            options = RunOptions()
        elif isinstance(options, dict):
            options = RunOptions(**options)

        handle = RunHandle(f"run_{uuid.uuid4().hex[:12]}", tasks)
        handle._task = asyncio.get_running_loop().create_task(self._run(handle, tasks, options))
        return handle

    async def schedule_run(self, tasks: Sequence[Task], options: Union[RunOptions, dict, None] = None) -> RunResult:
        return await self.start_run(tasks, options).result()

    def prioritize(self, tasks: Sequence[Task], options: RunOptions) -> List[Task]:
        """Stable sort by type weight + size bonus + priority-id bonus, highest first."""
        cfg = self.config.scheduler
        weights = {**cfg.type_weights, **options.type_weights}

        def score(task: Task) -> float:
            value = weights.get(type_key(task.resource_type), cfg.default_type_weight)
            if task.content_size < 500:
                value += 5
            elif task.content_size < 2000:
                value += 3
            else:
                value += 1
            if task.id in options.priority_ids:
                value += cfg.priority_id_bonus
            return value

        return sorted(tasks, key=score, reverse=True)

    @staticmethod
    def create_batches(tasks: Sequence[Task], batch_size: int) -> List[Batch]:
        size = max(1, batch_size)
        return [
            Batch(batch_index=index, tasks=tuple(tasks[start:start + size]))
            for index, start in enumerate(range(0, len(tasks), size))
        ]

    def estimate_completion_time(self, task_count: int, batch_count: int, options: RunOptions) -> int:
        cfg = self.config.scheduler
        avg_latency = options.historical_avg_latency_ms or cfg.avg_task_latency_ms
        concurrency = max(1, options.concurrency or cfg.concurrency)
        return round(task_count * avg_latency / concurrency + batch_count * cfg.batch_overhead_ms)

    def _skip_context(self, task: Task, options: RunOptions) -> SkipContext:
        return SkipContext(
            priority=task.priority_hint or options.priority,
            user_requested=options.user_requested,
            important_types=frozenset(options.important_types or ()),
            content_unchanged=task.id in options.unchanged_ids,
            quality_threshold=options.quality_threshold,
        )

    async def _run(self, handle: RunHandle, tasks: List[Task], options: RunOptions) -> RunResult:
        engine = self.new_engine()
        log = engine.start_session({"operation": "scheduling", "run_id": handle.run_id, "task_count": len(tasks)})
        stats = RunStats(total=len(tasks), started_at=datetime.now())
        logger.info("run %s started with %d tasks", handle.run_id, len(tasks))

        # 1. 分析任务集合
        handle._set_phase("analyzing")
        log.add_thought("analyze task set")
        profile = resource_profile(tasks)

        # 2. 批次大小
        log.add_thought("optimize batch strategy")
        try:
            load = await self.fetch_system_load()
        except Exception as e:
            error = PolicyError("fetch_system_load", e)
            logger.warning("run %s: %s, using batch size 1", handle.run_id, error)
            decision = log.record_decision(
                "batch size: 1",
                f"{error}; falling back to conservative outcome",
                kind=DecisionKind.BATCH_SIZE,
                confidence=MIN_CONFIDENCE,
            )
            batch_decision = BatchSizeDecision(
                batch_size=1,
                reasoning=decision.reasoning,
                confidence=decision.confidence,
                metrics={"total_tasks": len(tasks)},
            )
        else:
            batch_decision = engine.optimal_batch_size(tasks, load, BatchContext(max_batch_size=options.max_batch_size))

        # 3. 优先级排序
        handle._set_phase("prioritizing")
        log.add_thought("prioritize tasks")
        ordered = self.prioritize(tasks, options)

        # 4. 逐个过滤，保证决策日志因果有序
        handle._set_phase("filtering")
        log.add_thought("identify skippable tasks")
        to_translate: List[Task] = []
        skipped: List[SkippedTask] = []
        for task in ordered:
            decision = await engine.should_skip(task, self._skip_context(task, options))
            if decision.decision == SkipOutcome.TRANSLATE:
                to_translate.append(task)
                handle._transition(task.id, TaskState.SCHEDULED)
            else:
                skipped.append(SkippedTask(task=task, reason=decision.reasoning, outcome=decision.decision))
                handle._transition(task.id, TaskState.SKIPPED)

        # 5. 创建批次
        log.add_thought("create batches")
        batches = self.create_batches(to_translate, batch_decision.batch_size)
        handle.batches_total = len(batches)
        estimated = self.estimate_completion_time(len(to_translate), len(batches), options)
        log.record_decision(
            f"schedule {len(to_translate)} tasks in {len(batches)} batches",
            f"skipping {len(skipped)} tasks, estimated {estimated}ms from historical latency data",
            kind=DecisionKind.SCHEDULE,
        )

        # 6. 批次顺序执行
        handle._set_phase("executing")
        jobs: List[Job] = []
        self._queued_tasks += len(to_translate)
        try:
            for batch in batches:
                if handle.cancelled:
                    break
                if jobs and options.batch_delay_ms > 0:
                    await self.sleep(options.batch_delay_ms)
                jobs.append(await self.execute_batch(batch, engine=engine, handle=handle))
                self._queued_tasks -= len(batch)
                handle.batches_completed += 1
        finally:
            self._queued_tasks -= sum(len(b) for b in batches[len(jobs):])

        if handle.cancelled:
            for batch in batches[len(jobs):]:
                for task in batch.tasks:
                    skipped.append(SkippedTask(task=task, reason="run cancelled before batch started", outcome=SkipOutcome.SKIP))
                    handle._transition(task.id, TaskState.SKIPPED)
            log.record_decision("cancelled", f"run cancelled after {len(jobs)} of {len(batches)} batches", kind=DecisionKind.SCHEDULE)

        # 7. 汇总
        results = [r for job in jobs for r in job.per_task_results]
        stats.translated = sum(1 for r in results if r.succeeded)
        stats.failed = len(results) - stats.translated
        stats.skipped_count = sum(1 for s in skipped if s.outcome == SkipOutcome.SKIP)
        stats.deferred_count = sum(1 for s in skipped if s.outcome == SkipOutcome.DEFER)
        stats.ended_at = datetime.now()

        handle._set_phase("cancelled" if handle.cancelled else "completed")
        logger.info(
            "run %s finished: %d translated, %d failed, %d skipped, %d deferred",
            handle.run_id, stats.translated, stats.failed, stats.skipped_count, stats.deferred_count,
        )
        return RunResult(
            run_id=handle.run_id,
            scheduled=to_translate,
            skipped=skipped,
            jobs=jobs,
            stats=stats,
            batch_size=batch_decision.batch_size,
            estimated_time_ms=estimated,
            profile=profile,
            decision_log=log.export(),
            cancelled=handle.cancelled,
        )

    async def execute_batch(
        self,
        batch: Batch,
        engine: Optional[DecisionEngine] = None,
        handle: Optional[RunHandle] = None,
    ) -> Job:
        """
        执行一个批次

        Every task settles (success or exhausted retries) before the Job is
        returned; one failing task never aborts its siblings.
        """
        engine = engine or self.new_engine()
        if engine.log is None:
            engine.start_session({"operation": "execute_batch", "batch_index": batch.batch_index})
        job = Job(
            batch_id=f"batch_{batch.batch_index}_{uuid.uuid4().hex[:8]}",
            batch_index=batch.batch_index,
            started_at=datetime.now(),
        )
        logger.info("batch %s started with %d tasks", job.batch_id, len(batch))
        started = time.perf_counter()
        attempt_counts: Dict[str, int] = {}
        self._active_batches += 1
        try:
            outcomes = await asyncio.gather(
                *(
                    self.translate_with_retry(task, engine, handle, attempt_counts=attempt_counts)
                    for task in batch.tasks
                ),
                return_exceptions=True,
            )
            for task, outcome in zip(batch.tasks, outcomes):
                if isinstance(outcome, BaseException):
                    outcome = TaskResult(
                        task_id=task.id,
                        status="failed",
                        attempts=attempt_counts.get(task.id, 0),
                        error=str(outcome) or type(outcome).__name__,
                        error_class=engine.classify_error(outcome),
                    )
                    if handle is not None:
                        handle._transition(task.id, TaskState.FAILED)
                job.per_task_results.append(outcome)
        except Exception as e:
            logger.error("batch %s failed unexpectedly: %s", job.batch_id, e)
            engine.log.record_decision(
                "batch failed",
                f"unexpected batch error {e!r}; marking all {len(batch)} tasks failed",
                subject_id=job.batch_id,
                kind=DecisionKind.ERROR,
                confidence=MIN_CONFIDENCE,
            )
            job.per_task_results = [
                TaskResult(
                    task_id=task.id,
                    status="failed",
                    attempts=attempt_counts.get(task.id, 0),
                    error=str(e),
                    error_class=ErrorClass.UNKNOWN,
                )
                for task in batch.tasks
            ]
            if handle is not None:
                for task in batch.tasks:
                    if handle.state_of(task.id) == TaskState.SCHEDULED:
                        handle._transition(task.id, TaskState.RUNNING)
                    handle._transition(task.id, TaskState.FAILED)
        finally:
            self._active_batches -= 1

        job.ended_at = datetime.now()
        job.duration_ms = (time.perf_counter() - started) * 1000
        performance = job.performance()
        engine.log.add_thought(
            f"batch {job.batch_id} finished",
            {"type": "batch_performance", **performance},
        )
        logger.info("batch %s finished in %.0fms, success rate %.2f", job.batch_id, job.duration_ms, performance["success_rate"])
        return job

    async def translate_with_retry(
        self,
        task: Task,
        engine: DecisionEngine,
        handle: Optional[RunHandle] = None,
        attempt_counts: Optional[Dict[str, int]] = None,
    ) -> TaskResult:
        """
        带重试的翻译：attempt, classify, ask retry_strategy, sleep, retry.

        ``attempt_counts`` (task id -> attempts started) lets the caller report
        the real attempt count if this coroutine dies unexpectedly.
        """
        attempt = 0
        started = time.perf_counter()

        def _failed(error: BaseException, error_class: Optional[ErrorClass], attempts: int) -> TaskResult:
            if handle is not None:
                handle._transition(task.id, TaskState.FAILED)
            return TaskResult(
                task_id=task.id,
                status="failed",
                attempts=attempts,
                error=str(error) or type(error).__name__,
                error_class=error_class,
                latency_ms=(time.perf_counter() - started) * 1000,
            )

        def _overrule(reasoning: str):
            # the engine's last retry decision will not be carried out
            engine.log.record_decision(
                RetryAction.SKIP.value, reasoning, subject_id=task.id, kind=DecisionKind.RETRY,
            )

        while True:
            if handle is not None:
                handle._transition(task.id, TaskState.RUNNING)
            if attempt_counts is not None:
                attempt_counts[task.id] = attempt + 1
            try:
                output = await self.perform_translation(task)
            except Exception as e:
                retry = engine.retry_strategy(e, attempt, task)
                attempts_made = attempt + 1
                if not retry.should_retry:
                    logger.info("%s", TaskError(task.id, e, retry.error_class, attempt))
                    return _failed(e, retry.error_class, attempts_made)
                if attempts_made >= retry.max_attempts:
                    logger.warning("%s", ExhaustedRetries(task.id, e, retry.error_class, attempt))
                    _overrule(f"retries exhausted after {attempts_made} attempts")
                    return _failed(e, retry.error_class, attempts_made)

                if handle is not None:
                    if handle.cancelled:
                        _overrule(f"run cancelled after {attempts_made} attempts")
                        return _failed(e, retry.error_class, attempts_made)
                    handle._transition(task.id, TaskState.RETRYING)
                logger.info("task %s: %s", task.id, retry.reasoning)
                if retry.delay_ms > 0:
                    await self.sleep(retry.delay_ms)
                if handle is not None and handle.cancelled:
                    _overrule(f"run cancelled after {attempts_made} attempts")
                    return _failed(e, retry.error_class, attempts_made)
                attempt += 1
                continue

            if handle is not None:
                handle._transition(task.id, TaskState.SUCCEEDED)
            return TaskResult(
                task_id=task.id,
                status="success",
                attempts=attempt + 1,
                latency_ms=(time.perf_counter() - started) * 1000,
                output=output,
            )
