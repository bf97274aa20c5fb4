"""
TaskScheduler 测试：调度流程、批次执行、重试、进度与取消
"""
import asyncio

import pytest

from translation_decision.errors import InvalidTaskSetError
from translation_decision.interfaces import RunOptions, static_load
from translation_decision.models import (
    Batch,
    ErrorClass,
    ResourceType,
    SkipOutcome,
    SystemLoadSnapshot,
    Task,
    TaskHistory,
    TaskState,
)
from translation_decision.scheduler import TaskScheduler

from fakes import ScriptedTranslator, history_lookup, make_task

LOW_LOAD = static_load(SystemLoadSnapshot(cpu_utilization=20, memory_utilization=20, active_job_count=4))


def _scheduler(translator, fake_sleep, config, **kwargs) -> TaskScheduler:
    kwargs.setdefault("fetch_system_load", LOW_LOAD)
    return TaskScheduler(perform_translation=translator, sleep=fake_sleep, config=config, **kwargs)


@pytest.mark.asyncio
async def test_small_catalog_under_low_load_runs_in_one_batch(config, fake_sleep):
    """12 个小商品、低负载：单批次全部成功"""
    translator = ScriptedTranslator()
    scheduler = _scheduler(translator, fake_sleep, config)
    tasks = [make_task(f"p{i}") for i in range(12)]

    result = await scheduler.schedule_run(tasks)

    assert result.batch_size == 12
    assert len(result.jobs) == 1
    assert len(result.scheduled) == 12
    assert result.skipped == []
    assert result.stats.translated == 12
    assert result.stats.failed == 0
    assert result.estimated_time_ms == 8500
    assert sorted(translator.calls) == sorted(t.id for t in tasks)
    assert all(r.output == f"translated:{r.task_id}:de" for r in result.task_results())
    assert fake_sleep.calls == []


@pytest.mark.asyncio
async def test_empty_task_set(config, fake_sleep):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)

    result = await scheduler.schedule_run([])

    assert result.jobs == []
    assert result.batch_size == 1
    assert result.estimated_time_ms == 0
    assert result.stats.total == 0


@pytest.mark.parametrize("count,size", [(1, 1), (10, 3), (12, 12), (7, 10), (20, 5), (5, 0)])
def test_create_batches_partitions_in_order(count, size):
    tasks = [make_task(f"t{i}") for i in range(count)]

    batches = TaskScheduler.create_batches(tasks, size)

    flattened = [t for b in batches for t in b.tasks]
    assert flattened == tasks
    assert [b.batch_index for b in batches] == list(range(len(batches)))
    assert all(len(b) <= max(1, size) for b in batches)
    assert all(len(b) > 0 for b in batches)


def test_prioritize_by_type_size_and_priority_ids(config, fake_sleep):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)
    page = make_task("page", ResourceType.PAGE, 3000)       # 6 + 1
    menu = make_task("menu", ResourceType.MENU, 100)        # 3 + 5
    product = make_task("product", ResourceType.PRODUCT)    # 10 + 5
    article = make_task("article", ResourceType.ARTICLE, 1000)  # 5 + 3
    tasks = [page, menu, product, article]

    ordered = scheduler.prioritize(tasks, RunOptions())
    assert [t.id for t in ordered] == ["product", "menu", "article", "page"]

    boosted = scheduler.prioritize(tasks, RunOptions(priority_ids={"page"}))
    assert boosted[0].id == "page"

    reweighted = scheduler.prioritize(tasks, RunOptions(type_weights={"MENU": 50}))
    assert reweighted[0].id == "menu"


def test_prioritize_is_stable_for_equal_scores(config, fake_sleep):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)
    tasks = [make_task(f"t{i}") for i in range(8)]

    assert scheduler.prioritize(tasks, RunOptions()) == tasks


def test_estimate_completion_time(config, fake_sleep):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)

    assert scheduler.estimate_completion_time(12, 1, RunOptions()) == 8500
    tuned = RunOptions(concurrency=6, historical_avg_latency_ms=1000)
    assert scheduler.estimate_completion_time(12, 2, tuned) == 3000


@pytest.mark.asyncio
async def test_temporary_failure_retries_then_succeeds(config, fake_sleep):
    translator = ScriptedTranslator(failures={"p1": ["ECONNREFUSED"]})
    scheduler = _scheduler(translator, fake_sleep, config)

    result = await scheduler.schedule_run([make_task("p1")])

    [task_result] = result.task_results()
    assert task_result.succeeded
    assert task_result.attempts == 2
    assert task_result.retries == 1
    assert fake_sleep.calls == [1000]
    assert translator.calls == ["p1", "p1"]


@pytest.mark.asyncio
async def test_persistent_timeout_exhausts_retries_without_aborting_siblings(config, fake_sleep):
    translator = ScriptedTranslator(always={"p2": "request timeout"})
    scheduler = _scheduler(translator, fake_sleep, config)
    tasks = [make_task(f"p{i}") for i in range(5)]

    result = await scheduler.schedule_run(tasks)

    by_id = {r.task_id: r for r in result.task_results()}
    assert by_id["p2"].status == "failed"
    assert by_id["p2"].attempts == 3
    assert by_id["p2"].error_class == ErrorClass.TEMPORARY
    assert all(by_id[t].succeeded for t in ("p0", "p1", "p3", "p4"))
    assert fake_sleep.calls == [1000, 2000]
    assert result.stats.translated == 4
    assert result.stats.failed == 1

    retry_decisions = [d for d in result.decision_log["decisions"] if d["kind"] == "retry" and d["subject_id"] == "p2"]
    assert [d["outcome"] for d in retry_decisions] == ["retry", "retry", "retry", "skip"]
    assert retry_decisions[-1]["reasoning"] == "retries exhausted after 3 attempts"


@pytest.mark.asyncio
async def test_invalid_error_is_not_retried(config, fake_sleep):
    translator = ScriptedTranslator(always={"p1": "invalid locale"})
    scheduler = _scheduler(translator, fake_sleep, config)

    result = await scheduler.schedule_run([make_task("p1")])

    [task_result] = result.task_results()
    assert task_result.attempts == 1
    assert task_result.error_class == ErrorClass.INVALID
    assert task_result.error == "invalid locale"
    assert fake_sleep.calls == []


@pytest.mark.asyncio
async def test_quota_error_waits_fixed_window(config, fake_sleep):
    translator = ScriptedTranslator(always={"p1": "quota exceeded"})
    scheduler = _scheduler(translator, fake_sleep, config)

    result = await scheduler.schedule_run([make_task("p1")])

    [task_result] = result.task_results()
    assert task_result.attempts == 3
    assert task_result.error_class == ErrorClass.QUOTA
    assert fake_sleep.calls == [60000, 60000]


@pytest.mark.asyncio
async def test_skipped_and_deferred_tasks_are_reported(config, fake_sleep):
    done = make_task("done")
    risky = make_task("risky")
    fresh = make_task("fresh")
    histories = {
        done.identity: TaskHistory(attempt_count=3, success_count=3, average_quality_score=0.9),
        risky.identity: TaskHistory(attempt_count=10, success_count=0, average_quality_score=0.1),
    }
    translator = ScriptedTranslator()
    scheduler = _scheduler(translator, fake_sleep, config, fetch_task_history=history_lookup(histories))

    handle = scheduler.start_run([done, risky, fresh], {"unchanged_ids": {"done"}})
    result = await handle

    outcomes = {s.task.id: s.outcome for s in result.skipped}
    assert outcomes == {"done": SkipOutcome.SKIP, "risky": SkipOutcome.DEFER}
    assert [t.id for t in result.scheduled] == ["fresh"]
    assert translator.calls == ["fresh"]
    assert result.stats.skipped_count == 1
    assert result.stats.deferred_count == 1
    assert handle.state_of("done") == TaskState.SKIPPED
    assert handle.state_of("risky") == TaskState.SKIPPED
    assert handle.state_of("fresh") == TaskState.SUCCEEDED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "bad_input",
    [
        [make_task("a"), make_task("a")],
        [make_task("a"), {"id": "b"}],
        (t for t in [make_task("a")]),
    ],
)
async def test_invalid_task_sets_are_rejected(config, fake_sleep, bad_input):
    translator = ScriptedTranslator()
    scheduler = _scheduler(translator, fake_sleep, config)

    with pytest.raises(InvalidTaskSetError):
        await scheduler.schedule_run(bad_input)
    assert translator.calls == []


@pytest.mark.asyncio
async def test_batches_run_sequentially_with_bounded_concurrency(config, fake_sleep):
    """批次串行，批内并发不超过批次大小"""
    events = []
    counters = {"in_flight": 0, "peak": 0}

    async def translate(task):
        counters["in_flight"] += 1
        counters["peak"] = max(counters["peak"], counters["in_flight"])
        events.append(("start", task.id))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        counters["in_flight"] -= 1
        events.append(("end", task.id))
        return task.id

    scheduler = _scheduler(translate, fake_sleep, config)
    tasks = [make_task(f"p{i}") for i in range(10)]

    result = await scheduler.schedule_run(tasks, RunOptions(max_batch_size=4, batch_delay_ms=250))

    assert result.batch_size == 4
    assert [len(job.per_task_results) for job in result.jobs] == [4, 4, 2]
    assert counters["peak"] == 4
    assert fake_sleep.calls == [250, 250]

    position = {event: index for index, event in enumerate(events)}
    for previous, following in zip(result.jobs, result.jobs[1:]):
        last_end = max(position[("end", r.task_id)] for r in previous.per_task_results)
        first_start = min(position[("start", r.task_id)] for r in following.per_task_results)
        assert last_end < first_start


@pytest.mark.asyncio
async def test_synthesized_load_without_load_lookup(config, fake_sleep):
    scheduler = TaskScheduler(perform_translation=ScriptedTranslator(), sleep=fake_sleep, config=config)
    tasks = [make_task(f"p{i}") for i in range(25)]

    result = await scheduler.schedule_run(tasks)

    assert result.batch_size == 20
    assert [len(job.per_task_results) for job in result.jobs] == [20, 5]


@pytest.mark.asyncio
async def test_handle_progress_snapshot_and_subscription(config, fake_sleep):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)
    tasks = [make_task(f"p{i}") for i in range(3)]
    phases = []
    seen_after_unsubscribe = []

    handle = scheduler.start_run(tasks)
    handle.subscribe(lambda progress: phases.append(progress.phase))
    unsubscribe = handle.subscribe(seen_after_unsubscribe.append)
    unsubscribe()

    def broken_listener(progress):
        raise RuntimeError("listener bug")

    handle.subscribe(broken_listener)
    result = await handle.result()

    snapshot = handle.snapshot()
    assert snapshot.done
    assert snapshot.phase == "completed"
    assert snapshot.states["succeeded"] == 3
    assert snapshot.batches_total == snapshot.batches_completed == 1
    assert handle.done()
    assert result.run_id == handle.run_id
    assert seen_after_unsubscribe == []
    for phase in ("analyzing", "filtering", "executing", "completed"):
        assert phase in phases


@pytest.mark.asyncio
async def test_cancel_stops_remaining_batches_and_retries(config, fake_sleep):
    holder = {}
    calls = []

    async def translate(task):
        calls.append(task.id)
        holder["handle"].cancel()
        raise RuntimeError("timeout")

    scheduler = _scheduler(translate, fake_sleep, config)
    tasks = [make_task(f"p{i}") for i in range(3)]

    holder["handle"] = scheduler.start_run(tasks, RunOptions(max_batch_size=1))
    result = await holder["handle"]

    assert result.cancelled
    assert calls == ["p0"]
    assert fake_sleep.calls == []
    assert len(result.jobs) == 1
    [failed] = result.task_results()
    assert failed.attempts == 1
    assert {s.task.id for s in result.skipped} == {"p1", "p2"}
    assert all(s.reason == "run cancelled before batch started" for s in result.skipped)
    assert holder["handle"].snapshot().phase == "cancelled"


@pytest.mark.asyncio
async def test_batch_level_failure_marks_every_task_failed(config, fake_sleep, monkeypatch):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)

    def exploding(task, engine, handle=None, attempt_counts=None):
        raise RuntimeError("pool exploded")

    monkeypatch.setattr(scheduler, "translate_with_retry", exploding)
    tasks = [make_task(f"p{i}") for i in range(3)]

    handle = scheduler.start_run(tasks)
    result = await handle

    assert result.stats.failed == 3
    assert all(r.error == "pool exploded" and r.attempts == 0 for r in result.task_results())
    assert result.decision_log["summary"]["decisions_by_kind"]["error"] == 1
    assert all(handle.state_of(t.id) == TaskState.FAILED for t in tasks)


@pytest.mark.asyncio
async def test_execute_batch_standalone(config, fake_sleep):
    translator = ScriptedTranslator(always={"b": "malformed payload"})
    scheduler = _scheduler(translator, fake_sleep, config)
    batch = Batch(batch_index=0, tasks=(make_task("a"), make_task("b"), make_task("c")))

    job = await scheduler.execute_batch(batch)

    assert [r.task_id for r in job.per_task_results] == ["a", "b", "c"]
    assert [r.status for r in job.per_task_results] == ["success", "failed", "success"]
    assert job.ended_at is not None
    assert job.performance()["success_rate"] == pytest.approx(2 / 3)


@pytest.mark.asyncio
async def test_skip_decisions_follow_prioritized_order(config, fake_sleep):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)
    tasks = [
        make_task("page", ResourceType.PAGE, 3000),
        make_task("product", ResourceType.PRODUCT),
        make_task("menu", ResourceType.MENU),
    ]

    result = await scheduler.schedule_run(tasks)

    skip_subjects = [d["subject_id"] for d in result.decision_log["decisions"] if d["kind"] == "skip"]
    assert skip_subjects == ["product", "menu", "page"]
    steps = [d["step"] for d in result.decision_log["decisions"]]
    assert steps == sorted(steps)


@pytest.mark.asyncio
async def test_concurrent_runs_keep_separate_logs(config, fake_sleep):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)
    first = [make_task(f"x{i}") for i in range(3)]
    second = [make_task(f"y{i}") for i in range(4)]

    a, b = await asyncio.gather(scheduler.schedule_run(first), scheduler.schedule_run(second))

    assert a.run_id != b.run_id
    assert a.decision_log["context"]["run_id"] == a.run_id
    assert b.decision_log["context"]["run_id"] == b.run_id
    subjects_a = {d["subject_id"] for d in a.decision_log["decisions"] if d["kind"] == "skip"}
    subjects_b = {d["subject_id"] for d in b.decision_log["decisions"] if d["kind"] == "skip"}
    assert subjects_a == {"x0", "x1", "x2"}
    assert subjects_b == {"y0", "y1", "y2", "y3"}


@pytest.mark.asyncio
async def test_failing_load_lookup_falls_back_to_single_task_batches(config, fake_sleep):
    async def broken_load():
        raise ConnectionError("metrics endpoint down")

    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config, fetch_system_load=broken_load)
    tasks = [make_task(f"p{i}") for i in range(3)]

    result = await scheduler.schedule_run(tasks)

    assert result.batch_size == 1
    assert [len(job.per_task_results) for job in result.jobs] == [1, 1, 1]
    assert result.stats.translated == 3
    [batch_decision] = [d for d in result.decision_log["decisions"] if d["kind"] == "batch_size"]
    assert batch_decision["outcome"] == "batch size: 1"
    assert batch_decision["confidence"] == 0.1
    assert "fetch_system_load failed" in batch_decision["reasoning"]


@pytest.mark.asyncio
async def test_string_resource_types_are_coerced(config, fake_sleep):
    translator = ScriptedTranslator()
    scheduler = _scheduler(translator, fake_sleep, config)
    tasks = [
        Task(id="menu", resource_type="MENU", content_size=100, target_locale="de"),
        Task(id="product", resource_type="PRODUCT", content_size=100, target_locale="de"),
    ]

    result = await scheduler.schedule_run(tasks)

    assert [t.id for t in result.scheduled] == ["product", "menu"]
    assert all(isinstance(t.resource_type, ResourceType) for t in result.scheduled)
    assert result.stats.translated == 2


@pytest.mark.asyncio
async def test_unknown_resource_type_is_rejected(config, fake_sleep):
    scheduler = _scheduler(ScriptedTranslator(), fake_sleep, config)
    bad = Task(id="gadget", resource_type="GADGET", content_size=100, target_locale="de")

    with pytest.raises(InvalidTaskSetError) as excinfo:
        await scheduler.schedule_run([make_task("p0"), bad])
    assert excinfo.value.task_id == "gadget"


@pytest.mark.asyncio
async def test_unexpected_retry_failure_reports_real_attempt_count(config):
    class BrokenSleep:
        def __init__(self):
            self.calls = []

        async def __call__(self, ms):
            self.calls.append(ms)
            if len(self.calls) > 1:
                raise RuntimeError("timer wheel broken")

    sleep = BrokenSleep()
    scheduler = _scheduler(ScriptedTranslator(always={"p0": "timeout"}), sleep, config)

    handle = scheduler.start_run([make_task("p0"), make_task("p1")])
    result = await handle

    by_id = {r.task_id: r for r in result.task_results()}
    assert by_id["p0"].status == "failed"
    assert by_id["p0"].attempts == 2
    assert by_id["p0"].error == "timer wheel broken"
    assert by_id["p1"].succeeded
    assert handle.state_of("p0") == TaskState.FAILED
