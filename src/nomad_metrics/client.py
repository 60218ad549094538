"""Read-only client for the Nomad HTTP API."""

from __future__ import annotations

import logging
from typing import Any, Protocol, TypeVar

import requests
from pydantic import TypeAdapter, ValidationError

from .config import AgentConfig
from .errors import FetchFailed
from .models import (
    AgentMember,
    AgentMembers,
    AllocationClientStatus,
    Allocation,
    AllocationListStub,
    AllocResourceUsage,
    Deployment,
    JobListStub,
    NodeListStub,
)

T = TypeVar("T")


class NomadDataSource(Protocol):
    """What the collector and cycle need from a Nomad data source."""

    def list_jobs(self) -> list[JobListStub]: ...

    def list_deployments(self) -> list[Deployment]: ...

    def list_agent_members(self) -> list[AgentMember]: ...

    def list_nodes(self) -> list[NodeListStub]: ...

    def list_running_allocations(self) -> list[AllocationListStub]: ...

    def get_allocation_detail(self, alloc_id: str) -> Allocation: ...

    def get_allocation_stats(self, allocation: Allocation) -> AllocResourceUsage: ...


class NomadClient:
    """Wraps the Nomad queries the agent needs behind one error type.

    Every operation either returns parsed models or raises ``FetchFailed``.
    Nothing here retries; the next poll cycle is the retry.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint: Base URL, e.g. ``http://127.0.0.1:4646``
            timeout: Per-request timeout in seconds
            session: Optional pre-configured requests session
            logger: Optional logger, defaults to a module logger
        """
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def __repr__(self) -> str:
        return f"NomadClient(endpoint={self.endpoint!r})"

    @classmethod
    def from_config(cls, config: AgentConfig, logger: logging.Logger | None = None) -> "NomadClient":
        return cls(config.endpoint, timeout=config.request_timeout, logger=logger)

    def _get(self, operation: str, path: str) -> Any:
        url = f"{self.endpoint}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.warning(f"HTTP GET {url} failed: {e}")
            raise FetchFailed(operation, e) from e

        if not 200 <= response.status_code < 300:
            raise FetchFailed(operation, f"HTTP {response.status_code} from {path}")

        try:
            return response.json()
        except ValueError as e:
            self.logger.warning(f"Invalid JSON from {url}: {e}")
            raise FetchFailed(operation, e) from e

    def _parse(self, operation: str, payload: Any, model: type[T]) -> T:
        try:
            return TypeAdapter(model).validate_python(payload)
        except ValidationError as e:
            raise FetchFailed(operation, e) from e

    def list_jobs(self) -> list[JobListStub]:
        payload = self._get("list_jobs", "/v1/jobs")
        return self._parse("list_jobs", payload, list[JobListStub])

    def list_deployments(self) -> list[Deployment]:
        payload = self._get("list_deployments", "/v1/deployments")
        return self._parse("list_deployments", payload, list[Deployment])

    def list_agent_members(self) -> list[AgentMember]:
        payload = self._get("list_agent_members", "/v1/agent/members")
        return self._parse("list_agent_members", payload, AgentMembers).members

    def list_nodes(self) -> list[NodeListStub]:
        payload = self._get("list_nodes", "/v1/nodes")
        return self._parse("list_nodes", payload, list[NodeListStub])

    def list_running_allocations(self) -> list[AllocationListStub]:
        """List allocations whose client status is ``running``."""
        payload = self._get("list_running_allocations", "/v1/allocations")
        allocations = self._parse("list_running_allocations", payload, list[AllocationListStub])
        return [a for a in allocations if a.client_status == AllocationClientStatus.RUNNING]

    def get_allocation_detail(self, alloc_id: str) -> Allocation:
        payload = self._get("get_allocation_detail", f"/v1/allocation/{alloc_id}")
        return self._parse("get_allocation_detail", payload, Allocation)

    def get_allocation_stats(self, allocation: Allocation | AllocationListStub) -> AllocResourceUsage:
        """Fetch live resource usage for an allocation from its client."""
        payload = self._get(
            "get_allocation_stats", f"/v1/client/allocation/{allocation.id}/stats"
        )
        return self._parse("get_allocation_stats", payload, AllocResourceUsage)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "NomadClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
