"""Pydantic models for the subset of the Nomad HTTP API the agent reads.

Field aliases follow Nomad's PascalCase JSON. Unknown fields are ignored so
newer Nomad versions keep parsing.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NomadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Nomad encodes empty maps and unset structs as null
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class AllocationClientStatus(StrEnum):
    """Client-observed allocation lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    LOST = "lost"


# Jobs

class TaskGroupSummary(NomadModel):
    queued: int = Field(default=0, alias="Queued")
    complete: int = Field(default=0, alias="Complete")
    failed: int = Field(default=0, alias="Failed")
    running: int = Field(default=0, alias="Running")
    starting: int = Field(default=0, alias="Starting")
    lost: int = Field(default=0, alias="Lost")


class JobSummary(NomadModel):
    job_id: str = Field(alias="JobID")
    summary: Dict[str, TaskGroupSummary] = Field(default_factory=dict, alias="Summary")


class JobListStub(NomadModel):
    """Entry of ``GET /v1/jobs``."""
    id: str = Field(alias="ID")
    name: Optional[str] = Field(default=None, alias="Name")
    type: Optional[str] = Field(default=None, alias="Type")
    status: Optional[str] = Field(default=None, alias="Status")
    job_summary: Optional[JobSummary] = Field(default=None, alias="JobSummary")


# Deployments

class DeploymentState(NomadModel):
    promoted: bool = Field(default=False, alias="Promoted")
    desired_canaries: int = Field(default=0, alias="DesiredCanaries")
    desired_total: int = Field(default=0, alias="DesiredTotal")
    placed_allocs: int = Field(default=0, alias="PlacedAllocs")
    healthy_allocs: int = Field(default=0, alias="HealthyAllocs")
    unhealthy_allocs: int = Field(default=0, alias="UnhealthyAllocs")


class Deployment(NomadModel):
    """Entry of ``GET /v1/deployments``."""
    id: str = Field(alias="ID")
    job_id: str = Field(alias="JobID")
    job_version: Optional[int] = Field(default=None, alias="JobVersion")
    status: Optional[str] = Field(default=None, alias="Status")
    task_groups: Dict[str, DeploymentState] = Field(default_factory=dict, alias="TaskGroups")


# Agent members and nodes

class AgentMember(NomadModel):
    name: str = Field(alias="Name")
    addr: Optional[str] = Field(default=None, alias="Addr")
    status: str = Field(alias="Status")


class AgentMembers(NomadModel):
    """Body of ``GET /v1/agent/members``."""
    server_name: Optional[str] = Field(default=None, alias="ServerName")
    members: List[AgentMember] = Field(default_factory=list, alias="Members")


class NodeListStub(NomadModel):
    """Entry of ``GET /v1/nodes``."""
    id: str = Field(alias="ID")
    name: Optional[str] = Field(default=None, alias="Name")
    status: str = Field(alias="Status")
    drain: bool = Field(default=False, alias="Drain")
    scheduling_eligibility: Optional[str] = Field(default=None, alias="SchedulingEligibility")

    @property
    def effective_status(self) -> str:
        """Status as tallied: a ready node that is draining or ineligible counts as such.

        Draining nodes are also ineligible in Nomad; they count as ``draining``.
        """
        if self.status != "ready":
            return self.status
        if self.drain:
            return "draining"
        if self.scheduling_eligibility == "ineligible":
            return "ineligible"
        return self.status


# Allocations

class AllocationListStub(NomadModel):
    """Entry of ``GET /v1/allocations``."""
    id: str = Field(alias="ID")
    job_id: str = Field(alias="JobID")
    task_group: str = Field(alias="TaskGroup")
    client_status: str = Field(alias="ClientStatus")
    node_id: Optional[str] = Field(default=None, alias="NodeID")

    @property
    def short_id(self) -> str:
        return self.id[:8]


class TaskState(NomadModel):
    state: Optional[str] = Field(default=None, alias="State")
    failed: bool = Field(default=False, alias="Failed")
    restarts: int = Field(default=0, alias="Restarts")


class MemoryResources(NomadModel):
    memory_mb: int = Field(default=0, alias="MemoryMB")


class AllocatedTaskResources(NomadModel):
    memory: MemoryResources = Field(default_factory=MemoryResources, alias="Memory")


class AllocatedResources(NomadModel):
    tasks: Dict[str, AllocatedTaskResources] = Field(default_factory=dict, alias="Tasks")


class LegacyTaskResources(NomadModel):
    memory_mb: int = Field(default=0, alias="MemoryMB")


class Allocation(NomadModel):
    """Body of ``GET /v1/allocation/<id>``."""
    id: str = Field(alias="ID")
    job_id: str = Field(alias="JobID")
    task_group: str = Field(alias="TaskGroup")
    client_status: Optional[str] = Field(default=None, alias="ClientStatus")
    task_states: Dict[str, TaskState] = Field(default_factory=dict, alias="TaskStates")
    allocated_resources: Optional[AllocatedResources] = Field(default=None, alias="AllocatedResources")
    task_resources: Dict[str, LegacyTaskResources] = Field(default_factory=dict, alias="TaskResources")

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def memory_budget_mb(self, task_name: str) -> int:
        """Memory allotted to a task, preferring AllocatedResources over the legacy field."""
        if self.allocated_resources is not None:
            task = self.allocated_resources.tasks.get(task_name)
            if task is not None:
                return task.memory.memory_mb
        legacy = self.task_resources.get(task_name)
        if legacy is not None:
            return legacy.memory_mb
        return 0


class CpuStats(NomadModel):
    percent: float = Field(default=0.0, alias="Percent")
    total_ticks: float = Field(default=0.0, alias="TotalTicks")


class MemoryStats(NomadModel):
    rss: int = Field(default=0, alias="RSS")


class ResourceUsage(NomadModel):
    cpu_stats: CpuStats = Field(default_factory=CpuStats, alias="CpuStats")
    memory_stats: MemoryStats = Field(default_factory=MemoryStats, alias="MemoryStats")


class TaskResourceUsage(NomadModel):
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage, alias="ResourceUsage")


class AllocResourceUsage(NomadModel):
    """Body of ``GET /v1/client/allocation/<id>/stats``."""
    resource_usage: Optional[ResourceUsage] = Field(default=None, alias="ResourceUsage")
    tasks: Dict[str, TaskResourceUsage] = Field(default_factory=dict, alias="Tasks")

    def usage_for(self, task_name: str) -> ResourceUsage:
        """Usage reading for a task; tasks without a reading report zero usage."""
        task = self.tasks.get(task_name)
        if task is None:
            return ResourceUsage()
        return task.resource_usage
