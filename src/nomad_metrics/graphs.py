"""Graph definitions advertised to the metric sink."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .aggregation import DEPLOYMENT_FIELDS, JOB_FIELDS, MEMBER_STATUSES, NODE_STATUSES
from .collector import TASK_METRICS

GRAPH_UNIT = "integer"


@dataclass(frozen=True, slots=True)
class GraphMetric:
    name: str
    label: str


@dataclass(frozen=True, slots=True)
class GraphDefinition:
    label: str
    unit: str = GRAPH_UNIT
    metrics: tuple[GraphMetric, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "unit": self.unit,
            "metrics": [
                {"name": m.name, "label": m.label, "stacked": False}
                for m in self.metrics
            ],
        }


def _display_label(name: str) -> str:
    # desired_canaries -> DesiredCanaries
    return "".join(part.capitalize() for part in name.split("_"))


def _metrics(names: Iterable[str]) -> tuple[GraphMetric, ...]:
    return tuple(GraphMetric(name=n, label=_display_label(n)) for n in names)


STATIC_GRAPHS: dict[str, GraphDefinition] = {
    "jobs.#": GraphDefinition(label="Nomad job status", metrics=_metrics(JOB_FIELDS)),
    "deployments.#": GraphDefinition(
        label="Nomad deployments status", metrics=_metrics(DEPLOYMENT_FIELDS)
    ),
    "agent.members": GraphDefinition(
        label="Nomad agent members", metrics=_metrics(MEMBER_STATUSES)
    ),
    "nodes": GraphDefinition(label="Nomad nodes", metrics=_metrics(NODE_STATUSES)),
}


def build_graph_definition(prefixes: Iterable[str]) -> dict[str, GraphDefinition]:
    """Static graphs plus one ``<prefix>.#`` graph per task identity prefix."""
    graphs = dict(STATIC_GRAPHS)
    for prefix in prefixes:
        graphs[f"{prefix}.#"] = GraphDefinition(
            label=f"Nomad task {prefix}",
            metrics=_metrics(TASK_METRICS),
        )
    return graphs


def graphs_to_dict(graphs: dict[str, GraphDefinition]) -> dict[str, Any]:
    """Serialise to the plugin meta layout ``{"graphs": {...}}``."""
    return {"graphs": {name: graph.to_dict() for name, graph in graphs.items()}}


# Non-wildcard graphs take bare metric names from the metric map
_QUALIFIED_NAMES: dict[str, str] = {
    metric.name: f"{key}.{metric.name}"
    for key, graph in STATIC_GRAPHS.items()
    if "#" not in key
    for metric in graph.metrics
}


def output_metric_name(name: str) -> str:
    """Name a metric is reported under in the plugin protocol.

    Member and node counts are keyed by their bare status label in the
    metric map (``alive``) and reported under their graph key
    (``agent.members.alive``). Every other name is already fully qualified.
    """
    return _QUALIFIED_NAMES.get(name, name)
