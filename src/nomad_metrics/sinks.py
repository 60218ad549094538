"""Metric sinks: where a cycle's graph definition and values are handed off.

Transmission to a monitoring backend, rate computation and retries belong
to whatever consumes these outputs.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, TextIO

from .aggregation import MetricMap
from .graphs import GraphDefinition, graphs_to_dict, output_metric_name

PLUGIN_META_HEADER = "# mackerel-agent-plugin"
PLUGIN_META_ENV = "MACKEREL_AGENT_PLUGIN_META"


def plugin_meta_requested(environ: dict[str, str] | None = None) -> bool:
    """True when the monitoring agent asks a plugin for its graph definition."""
    environ = os.environ if environ is None else environ
    return environ.get(PLUGIN_META_ENV, "") != ""


def _format_value(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)


class MetricSink(Protocol):
    def publish_graphs(self, graphs: dict[str, GraphDefinition]) -> None: ...

    def publish_metrics(self, metrics: MetricMap, timestamp: float) -> None: ...


class PluginOutputSink:
    """Writes the monitoring-agent plugin stdout protocol.

    Graph definitions go out as a header line followed by JSON; values as
    ``name\\tvalue\\tepoch`` lines, with member and node counts named under
    their graph key.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdout

    def publish_graphs(self, graphs: dict[str, GraphDefinition]) -> None:
        self.stream.write(PLUGIN_META_HEADER + "\n")
        self.stream.write(json.dumps(graphs_to_dict(graphs)) + "\n")
        self.stream.flush()

    def publish_metrics(self, metrics: MetricMap, timestamp: float) -> None:
        epoch = int(timestamp)
        lines = sorted(
            (output_metric_name(name), _format_value(value))
            for name, value in metrics.items()
        )
        for name, value in lines:
            self.stream.write(f"{name}\t{value}\t{epoch}\n")
        self.stream.flush()


@dataclass
class JsonFileSink:
    """Keeps the latest snapshot in a JSON file for another process to pick up.

    Writes are atomic (temp file + rename) so a reader never sees a partial
    document.
    """
    path: Path

    _graphs: dict[str, Any] = field(init=False, default_factory=dict)
    _logger: logging.Logger = field(init=False)

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def publish_graphs(self, graphs: dict[str, GraphDefinition]) -> None:
        self._graphs = graphs_to_dict(graphs)["graphs"]

    def publish_metrics(self, metrics: MetricMap, timestamp: float) -> None:
        snapshot = {
            "timestamp": timestamp,
            "written_at": time.time(),
            "metrics": dict(sorted(metrics.items())),
            "graphs": self._graphs,
        }
        tmp_file = self.path.with_suffix(".tmp")
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2)
            os.replace(tmp_file, self.path)
        except OSError as e:
            self._logger.error(f"Failed to write metrics snapshot {self.path}: {e}")
            raise
