"""Pure aggregation of Nomad payloads into flat metric entries."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Final, TypeAlias

from .errors import UnrecognizedStatusLabel
from .models import Deployment, JobListStub

MetricMap: TypeAlias = dict[str, float]

MEMBER_STATUSES: Final[tuple[str, ...]] = ("alive", "leaving", "left", "failed")
NODE_STATUSES: Final[tuple[str, ...]] = ("initializing", "ready", "down", "ineligible", "draining")

JOB_FIELDS: Final[tuple[str, ...]] = ("queued", "complete", "failed", "running", "starting", "lost")
DEPLOYMENT_FIELDS: Final[tuple[str, ...]] = (
    "promoted",
    "desired_canaries",
    "desired_total",
    "placed_allocs",
    "healthy_allocs",
    "unhealthy_allocs",
)


def tally_statuses(
    labels: Iterable[str],
    vocabulary: Iterable[str],
    entity_kind: str,
) -> tuple[MetricMap, list[UnrecognizedStatusLabel]]:
    """Count status labels into fixed buckets.

    Every vocabulary label is present in the result, zero when unobserved.
    Labels outside the vocabulary count nowhere and come back as anomalies.

    Args:
        labels: Observed status labels, one per entity
        vocabulary: Expected labels for this entity kind
        entity_kind: ``"member"`` or ``"node"``, used in anomaly records

    Returns:
        Tuple of (label -> count, anomalies)
    """
    counts: MetricMap = {label: 0.0 for label in vocabulary}
    anomalies: list[UnrecognizedStatusLabel] = []
    for label in labels:
        if label in counts:
            counts[label] += 1.0
        else:
            anomalies.append(UnrecognizedStatusLabel(entity_kind=entity_kind, label=label))
    return counts, anomalies


def flatten_job_summaries(jobs: Iterable[JobListStub]) -> MetricMap:
    """Flatten job summaries to ``jobs.<jobID>_<group>.<field>`` entries."""
    result: MetricMap = {}
    for job in jobs:
        if job.job_summary is None:
            continue
        job_id = job.job_summary.job_id
        for group, summary in job.job_summary.summary.items():
            base = f"jobs.{job_id}_{group}"
            for name in JOB_FIELDS:
                result[f"{base}.{name}"] = float(getattr(summary, name))
    return result


def flatten_deployments(deployments: Iterable[Deployment]) -> MetricMap:
    """Flatten deployment task groups to ``deployments.<jobID>_<group>.<field>`` entries.

    ``promoted`` is reported as 1.0 or 0.0.
    """
    result: MetricMap = {}
    for deployment in deployments:
        for group, state in deployment.task_groups.items():
            base = f"deployments.{deployment.job_id}_{group}"
            for name in DEPLOYMENT_FIELDS:
                result[f"{base}.{name}"] = float(getattr(state, name))
    return result
