"""Cycle orchestration: one poll of Nomad turned into a flat metric map.

A cycle runs the five group fetches one after another, tallies and
flattens them, fans out over running allocations and finally rebuilds the
task registry. The graph definition handed to the sink is built from the
registry, so a task prefix first observed in cycle N is advertised from
cycle N+1 on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from .aggregation import (
    MEMBER_STATUSES,
    NODE_STATUSES,
    MetricMap,
    flatten_deployments,
    flatten_job_summaries,
    tally_statuses,
)
from .client import NomadClient, NomadDataSource
from .collector import AllocationCollector
from .config import AgentConfig
from .errors import (
    CycleInProgress,
    FetchFailed,
    NomadMetricsError,
    RegistryStateError,
    UnrecognizedStatusLabel,
)
from .graphs import GraphDefinition, build_graph_definition
from .registry import TaskRegistry

T = TypeVar("T")


class CycleState(StrEnum):
    IDLE = "idle"
    COLLECTING = "collecting"


@dataclass(slots=True)
class CycleResult:
    """Everything one successful cycle produced."""
    metrics: MetricMap
    prefixes: tuple[str, ...]
    anomalies: list[UnrecognizedStatusLabel] = field(default_factory=list)
    failed_allocations: list[NomadMetricsError] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)
    duration: float = 0.0


class NomadMetricsPlugin:
    """Runs collection cycles against Nomad and owns the task registry."""

    def __init__(
        self,
        client: NomadDataSource,
        registry: TaskRegistry | None = None,
        collector: AllocationCollector | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the plugin.

        Args:
            client: Nomad data source
            registry: Task registry, a fresh in-memory one by default
            collector: Allocation collector, built around ``client`` by default
            logger: Optional logger, defaults to a class logger
        """
        self.client = client
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.registry = registry if registry is not None else TaskRegistry(logger=self.logger)
        self.collector = collector if collector is not None else AllocationCollector(client, logger=self.logger)
        self._state = CycleState.IDLE

    @property
    def state(self) -> CycleState:
        return self._state

    async def run_cycle(self) -> CycleResult:
        """Collect one complete metric map.

        Raises:
            CycleInProgress: If another cycle has not finished yet
            FetchFailed: If any group fetch fails; the registry is left untouched
        """
        if self._state is CycleState.COLLECTING:
            raise CycleInProgress("a collection cycle is already running")

        self._state = CycleState.COLLECTING
        start_time = time.time()
        try:
            jobs = await self._fetch("list_jobs", self.client.list_jobs)
            deployments = await self._fetch("list_deployments", self.client.list_deployments)
            members = await self._fetch("list_agent_members", self.client.list_agent_members)
            nodes = await self._fetch("list_nodes", self.client.list_nodes)
            allocations = await self._fetch(
                "list_running_allocations", self.client.list_running_allocations
            )

            metrics: MetricMap = {}
            member_counts, member_anomalies = tally_statuses(
                (m.status for m in members), MEMBER_STATUSES, "member"
            )
            node_counts, node_anomalies = tally_statuses(
                (n.effective_status for n in nodes), NODE_STATUSES, "node"
            )
            anomalies = member_anomalies + node_anomalies
            for anomaly in anomalies:
                self.logger.warning(f"Ignoring {anomaly}")

            metrics.update(member_counts)
            metrics.update(node_counts)
            metrics.update(flatten_job_summaries(jobs))
            metrics.update(flatten_deployments(deployments))

            collection = await self.collector.collect(allocations)
            metrics.update(collection.metrics)

            self._rebuild_registry(collection.prefixes)

            duration = time.time() - start_time
            self.logger.info(
                f"Cycle collected {len(metrics)} metrics from {len(allocations)} running "
                f"allocations in {duration:.2f}s"
            )
            return CycleResult(
                metrics=metrics,
                prefixes=self.registry.current_prefixes(),
                anomalies=anomalies,
                failed_allocations=collection.failures,
                timestamp=start_time,
                duration=duration,
            )
        finally:
            self._state = CycleState.IDLE

    async def _fetch(self, operation: str, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        self.logger.debug(f"Fetching {operation}")
        try:
            return await loop.run_in_executor(None, func)
        except FetchFailed as e:
            self.logger.error(f"Aborting cycle: {e}")
            raise

    def _rebuild_registry(self, prefixes: list[str]) -> None:
        try:
            self.registry.rebuild(prefixes)
        except RegistryStateError as e:
            # In-memory contents are already replaced; only persistence failed
            self.logger.error(f"{e}: {e.__cause__}")

    def graph_definition(self) -> dict[str, GraphDefinition]:
        """Graph schema for the sink, based on the registry as of the last cycle."""
        return build_graph_definition(self.registry.current_prefixes())

    def fetch_metrics(self) -> MetricMap:
        """Synchronous wrapper running a single cycle."""
        return asyncio.run(self.run_cycle()).metrics

    def close(self) -> None:
        self.collector.close()
        if isinstance(self.client, NomadClient):
            self.client.close()

    def __enter__(self) -> NomadMetricsPlugin:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


def create_plugin(config: AgentConfig, logger: logging.Logger | None = None) -> NomadMetricsPlugin:
    """Wire client, registry and collector from configuration."""
    client = NomadClient.from_config(config, logger=logger)
    registry = TaskRegistry(state_file=config.state_file, logger=logger)
    registry.load()
    collector = AllocationCollector(
        client,
        max_concurrency=config.max_concurrency,
        fetch_timeout=config.fetch_timeout,
        logger=logger,
    )
    return NomadMetricsPlugin(client, registry=registry, collector=collector, logger=logger)
