import random
import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from nomad_metrics.errors import FetchFailed
from nomad_metrics.models import (
    AgentMember,
    Allocation,
    AllocationListStub,
    AllocResourceUsage,
    Deployment,
    JobListStub,
    NodeListStub,
)


def job_payload(job_id, summary):
    return {
        "ID": job_id,
        "Name": job_id,
        "Type": "service",
        "Status": "running",
        "JobSummary": {
            "JobID": job_id,
            "Summary": {
                group: {
                    "Queued": counts.get("queued", 0),
                    "Complete": counts.get("complete", 0),
                    "Failed": counts.get("failed", 0),
                    "Running": counts.get("running", 0),
                    "Starting": counts.get("starting", 0),
                    "Lost": counts.get("lost", 0),
                }
                for group, counts in summary.items()
            },
            "Children": {"Pending": 0, "Running": 0, "Dead": 0},
        },
    }


def alloc_stub_payload(alloc_id, job_id, group, client_status="running"):
    return {
        "ID": alloc_id,
        "JobID": job_id,
        "TaskGroup": group,
        "ClientStatus": client_status,
        "NodeID": "node-1",
    }


def allocation_payload(alloc_id, job_id, group, tasks):
    """tasks: mapping of task name -> memory budget in MB."""
    return {
        "ID": alloc_id,
        "JobID": job_id,
        "TaskGroup": group,
        "ClientStatus": "running",
        "TaskStates": {name: {"State": "running", "Failed": False, "Restarts": 0} for name in tasks},
        "AllocatedResources": {
            "Tasks": {name: {"Cpu": {"CpuShares": 100}, "Memory": {"MemoryMB": mb}} for name, mb in tasks.items()}
        },
    }


def stats_payload(tasks):
    """tasks: mapping of task name -> (cpu percent, total ticks, rss bytes)."""
    return {
        "ResourceUsage": {},
        "Tasks": {
            name: {
                "ResourceUsage": {
                    "CpuStats": {"Percent": percent, "TotalTicks": ticks},
                    "MemoryStats": {"RSS": rss},
                },
                "Pids": None,
            }
            for name, (percent, ticks, rss) in tasks.items()
        },
        "Timestamp": 1700000000,
    }


class FakeNomadClient:
    """In-memory Nomad data source with optional random latency."""

    def __init__(self, latency=0.0):
        self.jobs = []
        self.deployments = []
        self.members = []
        self.nodes = []
        self.allocations = []
        self.details = {}
        self.stats = {}
        self.failing_details = set()
        self.failing_stats = set()
        self.failing_group = None
        self.latency = latency
        self.calls = []
        self._lock = threading.Lock()
        self._in_flight = 0
        self.max_in_flight = 0

    def add_allocation(self, alloc_id, job_id, group, tasks, usage=None):
        """Register a running allocation; tasks maps task name -> memory MB."""
        self.allocations.append(AllocationListStub.model_validate(alloc_stub_payload(alloc_id, job_id, group)))
        self.details[alloc_id] = Allocation.model_validate(allocation_payload(alloc_id, job_id, group, tasks))
        if usage is None:
            usage = {name: (12.5, 340.0, 1024 * 1024) for name in tasks}
        self.stats[alloc_id] = AllocResourceUsage.model_validate(stats_payload(usage))

    def _record(self, operation):
        with self._lock:
            self.calls.append(operation)
        if self.failing_group == operation:
            raise FetchFailed(operation, "connection refused")

    def _sleep(self):
        with self._lock:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.latency:
                time.sleep(random.uniform(0, self.latency))
        finally:
            with self._lock:
                self._in_flight -= 1

    def list_jobs(self):
        self._record("list_jobs")
        return list(self.jobs)

    def list_deployments(self):
        self._record("list_deployments")
        return list(self.deployments)

    def list_agent_members(self):
        self._record("list_agent_members")
        return list(self.members)

    def list_nodes(self):
        self._record("list_nodes")
        return list(self.nodes)

    def list_running_allocations(self):
        self._record("list_running_allocations")
        return [a for a in self.allocations if a.client_status == "running"]

    def get_allocation_detail(self, alloc_id):
        self._record("get_allocation_detail")
        self._sleep()
        if alloc_id in self.failing_details or alloc_id not in self.details:
            raise FetchFailed("get_allocation_detail", f"allocation {alloc_id} not found")
        return self.details[alloc_id]

    def get_allocation_stats(self, allocation):
        self._record("get_allocation_stats")
        self._sleep()
        if allocation.id in self.failing_stats:
            raise FetchFailed("get_allocation_stats", "client unreachable")
        return self.stats[allocation.id]


def make_jobs(*specs):
    return [JobListStub.model_validate(job_payload(job_id, summary)) for job_id, summary in specs]


def make_members(*statuses):
    return [
        AgentMember.model_validate({"Name": f"server-{i}", "Addr": f"10.0.0.{i}", "Status": s})
        for i, s in enumerate(statuses)
    ]


def make_nodes(*statuses):
    return [
        NodeListStub.model_validate({"ID": f"node-{i}", "Name": f"node-{i}", "Status": s})
        for i, s in enumerate(statuses)
    ]


def make_deployment(deploy_id, job_id, groups):
    return Deployment.model_validate({
        "ID": deploy_id,
        "JobID": job_id,
        "JobVersion": 3,
        "Status": "running",
        "TaskGroups": {
            group: {
                "Promoted": state.get("promoted", False),
                "DesiredCanaries": state.get("desired_canaries", 0),
                "DesiredTotal": state.get("desired_total", 0),
                "PlacedAllocs": state.get("placed_allocs", 0),
                "HealthyAllocs": state.get("healthy_allocs", 0),
                "UnhealthyAllocs": state.get("unhealthy_allocs", 0),
            }
            for group, state in groups.items()
        },
    })


@pytest.fixture
def fake_client():
    return FakeNomadClient()
