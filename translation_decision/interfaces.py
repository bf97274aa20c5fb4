"""
Injected collaborators and the per-run options surface.

The core never touches storage, the system load source, or the translator directly; the
host passes async callables matching the aliases below.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from .models import SystemLoadSnapshot, Task, TaskHistory

FetchTaskHistory = Callable[[str], Awaitable[TaskHistory]]
FetchSystemLoad = Callable[[], Awaitable[SystemLoadSnapshot]]
PerformTranslation = Callable[[Task], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]


class RunOptions(BaseModel):
    """scheduleRun 的配置面，全部可选"""
    model_config = ConfigDict(extra="forbid")

    priority_ids: Set[str] = Field(default_factory=set)
    user_requested: bool = False
    type_weights: Dict[str, float] = Field(default_factory=dict)
    batch_delay_ms: float = 0
    quality_threshold: Optional[float] = None
    important_types: Optional[Set[str]] = None
    priority: str = "normal"
    unchanged_ids: Set[str] = Field(default_factory=set)
    concurrency: Optional[int] = None
    historical_avg_latency_ms: Optional[float] = None
    max_batch_size: Optional[int] = None


async def no_history(identity: str) -> TaskHistory:
    return TaskHistory()


async def asyncio_sleep(ms: float) -> None:
    await asyncio.sleep(ms / 1000.0)


def static_load(snapshot: SystemLoadSnapshot) -> FetchSystemLoad:
    """Wrap a fixed snapshot as a fetch_system_load collaborator."""

    async def _fetch() -> SystemLoadSnapshot:
        return snapshot

    return _fetch
