"""Error taxonomy for the Nomad metrics agent.

Group-level fetch failures are fatal to a cycle, per-allocation failures are
isolated at the allocation boundary and unrecognized status labels are only
recorded as anomalies.
"""

from __future__ import annotations

from dataclasses import dataclass


class NomadMetricsError(Exception):
    """Base class for every error raised by nomad_metrics."""


class FetchFailed(NomadMetricsError):
    """A query against the Nomad HTTP API failed.

    Covers connection errors, timeouts, non-2xx responses and payloads that
    do not parse into the expected shape.
    """

    def __init__(self, operation: str, cause: BaseException | str) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


class AllocationDetailUnavailable(NomadMetricsError):
    """Detail for one running allocation could not be fetched."""

    def __init__(self, allocation_id: str, cause: BaseException | str | None = None) -> None:
        self.allocation_id = allocation_id
        self.cause = cause
        message = f"allocation {allocation_id} detail unavailable"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class AllocationStatsUnavailable(NomadMetricsError):
    """Resource stats for one running allocation could not be fetched or used."""

    def __init__(self, allocation_id: str, cause: BaseException | str | None = None) -> None:
        self.allocation_id = allocation_id
        self.cause = cause
        message = f"allocation {allocation_id} stats unavailable"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class CycleInProgress(NomadMetricsError):
    """A collection cycle was started while another one is still running."""


class RegistryStateError(NomadMetricsError):
    """The persisted task registry could not be read or written."""


class ConfigError(NomadMetricsError):
    """Agent configuration is missing or invalid."""


@dataclass(frozen=True, slots=True)
class UnrecognizedStatusLabel:
    """A member or node status outside the known vocabulary.

    This is an anomaly record, not an exception: it is logged and reported
    but never raised.
    """
    entity_kind: str
    label: str

    def __str__(self) -> str:
        return f"unrecognized {self.entity_kind} status {self.label!r}"
