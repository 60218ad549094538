"""
nomad-metrics: Nomad cluster metrics agent

Polls the Nomad HTTP API, aggregates job, deployment, member, node and
per-task allocation usage into flat metrics and hands them to a sink.
"""

__version__ = "0.1.0"

from .aggregation import flatten_deployments, flatten_job_summaries, tally_statuses
from .client import NomadClient
from .collector import AllocationCollector
from .config import AgentConfig, load_config
from .errors import (
    AllocationDetailUnavailable,
    AllocationStatsUnavailable,
    FetchFailed,
    NomadMetricsError,
    UnrecognizedStatusLabel,
)
from .plugin import CycleResult, CycleState, NomadMetricsPlugin, create_plugin
from .registry import TaskRegistry

__all__ = [
    "__version__",
    "AgentConfig",
    "AllocationCollector",
    "AllocationDetailUnavailable",
    "AllocationStatsUnavailable",
    "CycleResult",
    "CycleState",
    "FetchFailed",
    "NomadClient",
    "NomadMetricsError",
    "NomadMetricsPlugin",
    "TaskRegistry",
    "UnrecognizedStatusLabel",
    "create_plugin",
    "flatten_deployments",
    "flatten_job_summaries",
    "load_config",
    "tally_statuses",
]
