"""Concurrent per-allocation resource collection.

Each running allocation is handled by its own asyncio task: the blocking
detail and stats queries run in a thread pool, the task turns them into an
``AllocationContribution`` and merges it into the shared result under a
single lock. The metric map and the prefix list are never touched outside
that lock.

``fetch_timeout`` applies to each detail or stats call once it is running
on a worker. A call that times out keeps its fan-out slot until its worker
thread returns, so later allocations are not starved of workers.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Final

from .aggregation import MetricMap
from .client import NomadDataSource
from .errors import (
    AllocationDetailUnavailable,
    AllocationStatsUnavailable,
    NomadMetricsError,
)
from .models import Allocation, AllocationListStub, AllocResourceUsage

TASK_METRICS: Final[tuple[str, ...]] = (
    "cpu_percent",
    "cpu_totalticks",
    "memory_rss_bytes",
    "allocated_memory_megabytes",
)

# Thread pool size when fan-out is unbounded
DEFAULT_POOL_SIZE: Final[int] = 32


def task_prefix(job_id: str, task_group: str, task_name: str) -> str:
    """Task identity prefix ``<job>_<group>_<task>``."""
    return f"{job_id}_{task_group}_{task_name}"


@dataclass(frozen=True, slots=True)
class AllocationContribution:
    """Metrics and task prefixes produced by one allocation."""
    allocation_id: str
    metrics: dict[str, float]
    prefixes: tuple[str, ...]


@dataclass(slots=True)
class CollectionResult:
    """Merged output of one collector run."""
    metrics: MetricMap = field(default_factory=dict)
    prefixes: list[str] = field(default_factory=list)
    failures: list[NomadMetricsError] = field(default_factory=list)
    collected: int = 0


def build_contribution(allocation: Allocation, usage: AllocResourceUsage) -> AllocationContribution:
    """Turn an allocation's detail and stats into its metric entries.

    Tasks listed in the allocation's task states but missing from the stats
    report zero usage.

    Raises:
        AllocationStatsUnavailable: If any reading is not a finite number
    """
    metrics: dict[str, float] = {}
    prefixes: list[str] = []

    for task_name in sorted(allocation.task_states):
        prefix = task_prefix(allocation.job_id, allocation.task_group, task_name)
        unique_key = f"{prefix}.{allocation.short_id}"
        reading = usage.usage_for(task_name)
        values = {
            "cpu_percent": float(reading.cpu_stats.percent),
            "cpu_totalticks": float(reading.cpu_stats.total_ticks),
            "memory_rss_bytes": float(reading.memory_stats.rss),
            "allocated_memory_megabytes": float(allocation.memory_budget_mb(task_name)),
        }
        for name, value in values.items():
            if not math.isfinite(value):
                raise AllocationStatsUnavailable(
                    allocation.id, f"non-finite {name} for task {task_name}"
                )
            metrics[f"{unique_key}.{name}"] = value
        prefixes.append(prefix)

    return AllocationContribution(
        allocation_id=allocation.id,
        metrics=metrics,
        prefixes=tuple(prefixes),
    )


class AllocationCollector:
    """Fans out detail+stats fetches over running allocations and merges the results."""

    def __init__(
        self,
        client: NomadDataSource,
        max_concurrency: int = 16,
        fetch_timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the collector.

        Args:
            client: Nomad data source used for detail and stats queries
            max_concurrency: Allocations fetched at once, 0 for unbounded
            fetch_timeout: Seconds allowed for each detail or stats fetch
            logger: Optional logger, defaults to a class logger
        """
        if max_concurrency < 0:
            raise ValueError("max_concurrency cannot be negative")
        self.client = client
        self.max_concurrency = max_concurrency
        self.fetch_timeout = fetch_timeout
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrency or DEFAULT_POOL_SIZE,
            thread_name_prefix="nomad-alloc",
        )

    async def collect(self, allocations: Iterable[AllocationListStub]) -> CollectionResult:
        """Collect per-task metrics for every allocation.

        Returns only after every per-allocation task has finished. Allocations
        whose detail or stats are unavailable contribute nothing and are
        listed in ``failures``.
        """
        result = CollectionResult()
        lock = asyncio.Lock()
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        tasks = [
            asyncio.create_task(
                self._collect_allocation(allocation, result, lock, semaphore),
                name=f"collect_alloc_{allocation.short_id}",
            )
            for allocation in allocations
        ]
        if not tasks:
            return result

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        unexpected = []
        for outcome in outcomes:
            match outcome:
                case AllocationDetailUnavailable() | AllocationStatsUnavailable():
                    self.logger.warning(f"Skipping allocation: {outcome}")
                    result.failures.append(outcome)
                case BaseException():
                    unexpected.append(outcome)
        if unexpected:
            raise unexpected[0]

        self.logger.debug(
            f"Collected {result.collected}/{len(tasks)} allocations, "
            f"{len(result.metrics)} metrics"
        )
        return result

    async def _collect_allocation(
        self,
        allocation: AllocationListStub,
        result: CollectionResult,
        lock: asyncio.Lock,
        semaphore: asyncio.Semaphore | None,
    ) -> None:
        abandoned: list[asyncio.Future] = []
        if semaphore is not None:
            await semaphore.acquire()
        try:
            contribution = await self._fetch_contribution(allocation, abandoned)
        finally:
            if semaphore is not None:
                _release_when_idle(semaphore, abandoned)
        async with lock:
            self._merge(result, contribution)

    async def _fetch_contribution(
        self,
        allocation: AllocationListStub,
        abandoned: list[asyncio.Future],
    ) -> AllocationContribution:
        try:
            detail = await self._run_blocking(abandoned, self.client.get_allocation_detail, allocation.id)
        except asyncio.TimeoutError as e:
            raise AllocationDetailUnavailable(
                allocation.id, f"timed out after {self.fetch_timeout}s"
            ) from e
        except Exception as e:
            raise AllocationDetailUnavailable(allocation.id, e) from e

        try:
            usage = await self._run_blocking(abandoned, self.client.get_allocation_stats, detail)
        except asyncio.TimeoutError as e:
            raise AllocationStatsUnavailable(
                allocation.id, f"timed out after {self.fetch_timeout}s"
            ) from e
        except Exception as e:
            raise AllocationStatsUnavailable(allocation.id, e) from e

        return build_contribution(detail, usage)

    async def _run_blocking(self, abandoned: list[asyncio.Future], func: Any, *args: Any) -> Any:
        """Run ``func`` on the pool, timing only the call itself.

        A call that times out keeps its worker thread; its future is appended
        to ``abandoned`` so the caller can hold its fan-out slot until the
        thread is free again.
        """
        loop = asyncio.get_running_loop()
        started = asyncio.Event()

        def call() -> Any:
            loop.call_soon_threadsafe(started.set)
            return func(*args)

        future = loop.run_in_executor(self._executor, call)
        # Waiting for a free worker does not count against fetch_timeout
        await started.wait()
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            future.add_done_callback(_consume_outcome)
            abandoned.append(future)
            raise

    def _merge(self, result: CollectionResult, contribution: AllocationContribution) -> None:
        # Caller holds the collection lock
        for name, value in contribution.metrics.items():
            if name in result.metrics:
                self.logger.warning(f"Duplicate metric {name} from allocation {contribution.allocation_id}")
            result.metrics[name] = value
        result.prefixes.extend(contribution.prefixes)
        result.collected += 1

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def _consume_outcome(future: asyncio.Future) -> None:
    # Nobody awaits an abandoned fetch; retrieve its exception so it is not reported as lost
    if not future.cancelled():
        future.exception()


def _release_when_idle(semaphore: asyncio.Semaphore, abandoned: list[asyncio.Future]) -> None:
    """Release a fan-out slot once no fetch of the allocation occupies a worker."""
    pending = [f for f in abandoned if not f.done()]
    if not pending:
        semaphore.release()
        return
    pending[0].add_done_callback(lambda _: semaphore.release())
