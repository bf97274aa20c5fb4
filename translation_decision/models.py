"""
Translation Decision 数据模型
Task / History / Load 输入，Decision / Job / RunResult 输出
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ResourceType(str, Enum):
    """可翻译资源类型"""
    PRODUCT = "PRODUCT"
    COLLECTION = "COLLECTION"
    PAGE = "PAGE"
    ARTICLE = "ARTICLE"
    BLOG = "BLOG"
    THEME = "THEME"
    MENU = "MENU"
    FILTER = "FILTER"
    SHOP_POLICY = "SHOP_POLICY"
    METAFIELD = "METAFIELD"
    OTHER = "OTHER"


class SkipOutcome(str, Enum):
    TRANSLATE = "translate"
    SKIP = "skip"
    DEFER = "defer"


class RetryAction(str, Enum):
    RETRY = "retry"
    DELAY = "delay"
    SKIP = "skip"


class ErrorClass(str, Enum):
    """翻译失败分类"""
    TEMPORARY = "temporary"
    QUOTA = "quota"
    INVALID = "invalid"
    UNKNOWN = "unknown"


class DecisionKind(str, Enum):
    SKIP = "skip"
    BATCH_SIZE = "batch_size"
    RETRY = "retry"
    SCHEDULE = "schedule"
    ERROR = "error"
    NOTE = "note"


class TaskState(str, Enum):
    """
    单个任务在一次运行中的状态机:
    Pending -> {Skipped | Scheduled}; Scheduled -> Running -> {Succeeded | Retrying -> Running | Failed}
    """
    PENDING = "pending"
    SKIPPED = "skipped"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SKIPPED, TaskState.SUCCEEDED, TaskState.FAILED)


TASK_TRANSITIONS: Dict[TaskState, Tuple[TaskState, ...]] = {
    TaskState.PENDING: (TaskState.SKIPPED, TaskState.SCHEDULED),
    TaskState.SCHEDULED: (TaskState.RUNNING, TaskState.SKIPPED),
    TaskState.RUNNING: (TaskState.SUCCEEDED, TaskState.RETRYING, TaskState.FAILED),
    TaskState.RETRYING: (TaskState.RUNNING, TaskState.FAILED),
    TaskState.SUCCEEDED: (),
    TaskState.SKIPPED: (),
    TaskState.FAILED: (),
}


@dataclass(frozen=True)
class Task:
    """一个资源 + 目标语言的翻译单元，创建后不可变"""
    id: str
    resource_type: ResourceType
    content_size: int
    target_locale: str
    priority_hint: Optional[str] = None
    forced: bool = False
    resource_id: Optional[str] = None
    content_hash: Optional[str] = None

    @property
    def identity(self) -> str:
        """历史记录键：同一资源同一语言跨运行共享"""
        return f"{self.resource_id or self.id}:{self.target_locale}"


@dataclass(frozen=True)
class TaskHistory:
    attempt_count: int = 0
    success_count: int = 0
    last_outcome_at: Optional[datetime] = None
    average_quality_score: Optional[float] = None
    last_content_hash: Optional[str] = None

    @property
    def has_history(self) -> bool:
        return self.attempt_count > 0

    @property
    def failure_rate(self) -> Optional[float]:
        if self.attempt_count <= 0:
            return None
        success = min(self.success_count, self.attempt_count)
        return 1.0 - success / self.attempt_count


@dataclass(frozen=True)
class SystemLoadSnapshot:
    """系统负载快照，cpu / memory 为百分比 (0-100)"""
    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0
    active_job_count: int = 0
    queue_depth: int = 0


@dataclass(frozen=True)
class ThoughtEntry:
    step: int
    thought: str
    metadata: Dict[str, Any]
    timestamp: datetime
    branch_from: Optional[int] = None
    is_revision: bool = False
    revises: Optional[int] = None


@dataclass(frozen=True)
class Decision:
    subject_id: Optional[str]
    kind: DecisionKind
    outcome: str
    reasoning: str
    confidence: float
    timestamp: datetime
    step: int

    def __post_init__(self):
        if not 0.1 <= self.confidence <= 1.0:
            object.__setattr__(self, "confidence", max(0.1, min(1.0, self.confidence)))


@dataclass(frozen=True)
class SkipContext:
    """shouldSkip 的调用上下文"""
    priority: str = "normal"
    user_requested: bool = False
    important_types: frozenset = frozenset()
    content_unchanged: bool = False
    quality_threshold: Optional[float] = None


@dataclass(frozen=True)
class BatchContext:
    max_batch_size: Optional[int] = None


@dataclass(frozen=True)
class RetryContext:
    """retryStrategy 的调用上下文；max_attempts 只能收紧配置上限"""
    task_id: str
    attempt_count: int
    max_attempts: Optional[int] = None


@dataclass(frozen=True)
class ResourceProfile:
    count: int
    avg_size: float
    max_size: int
    min_size: int
    total_size: int
    type_counts: Dict[str, int] = field(default_factory=dict)
    complexity: str = "low"


@dataclass
class SkipDecision:
    decision: SkipOutcome
    reasoning: str
    confidence: float
    audit_trail: List[ThoughtEntry]
    risk: Optional[float] = None
    benefit: Optional[float] = None


@dataclass
class BatchSizeDecision:
    batch_size: int
    reasoning: str
    confidence: float
    metrics: Dict[str, Any]


@dataclass
class RetryDecision:
    strategy: RetryAction
    delay_ms: int
    reasoning: str
    should_retry: bool
    max_attempts: int
    error_class: ErrorClass
    success_probability: float
    confidence: float


@dataclass(frozen=True)
class Batch:
    batch_index: int
    tasks: Tuple[Task, ...]

    def __len__(self) -> int:
        return len(self.tasks)


@dataclass
class TaskResult:
    task_id: str
    status: str  # success | failed
    attempts: int
    error: Optional[str] = None
    error_class: Optional[ErrorClass] = None
    latency_ms: float = 0.0
    output: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


@dataclass
class Job:
    """一个批次的执行记录"""
    batch_id: str
    batch_index: int
    started_at: datetime
    ended_at: Optional[datetime] = None
    per_task_results: List[TaskResult] = field(default_factory=list)
    duration_ms: float = 0.0

    def performance(self) -> Dict[str, float]:
        total = len(self.per_task_results)
        if total == 0:
            return {"success_rate": 0.0, "failure_rate": 0.0, "avg_time_per_task_ms": 0.0, "total_time_ms": self.duration_ms}
        succeeded = sum(1 for r in self.per_task_results if r.succeeded)
        return {
            "success_rate": succeeded / total,
            "failure_rate": (total - succeeded) / total,
            "avg_time_per_task_ms": self.duration_ms / total,
            "total_time_ms": self.duration_ms,
        }


@dataclass
class SkippedTask:
    task: Task
    reason: str
    outcome: SkipOutcome = SkipOutcome.SKIP


@dataclass
class RunStats:
    total: int = 0
    translated: int = 0
    failed: int = 0
    skipped_count: int = 0
    deferred_count: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass
class RunResult:
    run_id: str
    scheduled: List[Task]
    skipped: List[SkippedTask]
    jobs: List[Job]
    stats: RunStats
    batch_size: int
    estimated_time_ms: int
    profile: Optional[ResourceProfile] = None
    decision_log: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    def task_results(self) -> List[TaskResult]:
        return [result for job in self.jobs for result in job.per_task_results]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunProgress:
    """RunHandle.snapshot() 的返回值"""
    run_id: str
    phase: str
    states: Dict[str, int]
    batches_total: int = 0
    batches_completed: int = 0
    done: bool = False
