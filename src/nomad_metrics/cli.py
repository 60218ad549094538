"""nomad-metrics CLI.

Runs collection cycles against a Nomad agent and prints the result in the
monitoring-agent plugin format, as a rich summary, or continuously.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import AgentConfig, default_state_file, load_config
from .daemon import MetricsDaemon
from .errors import NomadMetricsError
from .graphs import graphs_to_dict
from .plugin import NomadMetricsPlugin, create_plugin
from .sinks import JsonFileSink, MetricSink, PluginOutputSink, plugin_meta_requested

app = typer.Typer(help="Nomad metrics agent")
console = Console()
error_console = Console(stderr=True, style="bold red")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    """Log to stderr; stdout carries plugin output."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


@app.callback()
def context_callback(
    ctx: typer.Context,
    address: Annotated[Optional[str], typer.Option("--address", "-a", help="Nomad agent address [default: 127.0.0.1]")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Nomad HTTP API port [default: 4646]")] = None,
    config_file: Annotated[Optional[Path], typer.Option("--config", "-c", help="YAML config file")] = None,
    state_file: Annotated[Optional[Path], typer.Option("--state-file", help="Task registry state file")] = None,
    max_concurrency: Annotated[Optional[int], typer.Option("--max-concurrency", help="Concurrent allocation fetches, 0 for unbounded")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
):
    """Resolve configuration shared by all commands."""
    try:
        config = load_config(
            config_file,
            overrides={
                "address": address,
                "port": port,
                "state_file": state_file,
                "max_concurrency": max_concurrency,
                "log_level": "DEBUG" if verbose else None,
            },
        )
    except NomadMetricsError as e:
        error_console.print(f"Failed to load configuration: {e}")
        raise typer.Exit(code=1)

    if config.state_file is None:
        config = config.model_copy(
            update={"state_file": default_state_file(config.address, config.port)}
        )

    configure_logging(config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


def _plugin(ctx: typer.Context) -> NomadMetricsPlugin:
    config: AgentConfig = ctx.obj["config"]
    try:
        return create_plugin(config)
    except NomadMetricsError as e:
        error_console.print(f"Failed to initialize: {e}")
        raise typer.Exit(code=1)


@app.command()
def collect(ctx: typer.Context):
    """Run one cycle and print metrics in plugin format.

    With MACKEREL_AGENT_PLUGIN_META set, print the graph definition instead.
    """
    sink = PluginOutputSink()
    with _plugin(ctx) as plugin:
        if plugin_meta_requested():
            sink.publish_graphs(plugin.graph_definition())
            return

        try:
            result = asyncio.run(plugin.run_cycle())
        except NomadMetricsError as e:
            error_console.print(f"Collection failed: {e}")
            raise typer.Exit(code=1)

    sink.publish_metrics(result.metrics, result.timestamp)


@app.command()
def graphs(ctx: typer.Context):
    """Print the graph definition for the tasks seen in the last cycle."""
    with _plugin(ctx) as plugin:
        typer.echo(json.dumps(graphs_to_dict(plugin.graph_definition()), indent=2))


@app.command()
def status(ctx: typer.Context):
    """Run one cycle and show a summary."""
    with _plugin(ctx) as plugin:
        console.print(f"\n🔍 Nomad at {ctx.obj['config'].endpoint}", style="bold blue")
        try:
            result = asyncio.run(plugin.run_cycle())
        except NomadMetricsError as e:
            error_console.print(f"Collection failed: {e}")
            raise typer.Exit(code=1)

    graph_defs = plugin.graph_definition()
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Graph")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for graph_name in ("agent.members", "nodes"):
        for metric in graph_defs[graph_name].metrics:
            table.add_row(graph_name, metric.name, f"{result.metrics.get(metric.name, 0.0):.0f}")
    console.print(table)

    tasks = Table(show_header=True, header_style="bold magenta")
    tasks.add_column("Task prefix")
    tasks.add_column("Allocations", justify="right")
    for prefix in result.prefixes:
        count = sum(
            1 for name in result.metrics
            if name.startswith(f"{prefix}.") and name.endswith(".cpu_percent")
        )
        tasks.add_row(prefix, str(count))
    console.print(tasks)

    console.print(f"Metrics: {len(result.metrics)} in {result.duration:.2f}s")
    for anomaly in result.anomalies:
        console.print(f"  ! {anomaly}", style="yellow")
    for failure in result.failed_allocations:
        console.print(f"  ❌ {failure}", style="red")


@app.command()
def watch(
    ctx: typer.Context,
    interval: Annotated[Optional[float], typer.Option("--interval", "-i", help="Seconds between cycles")] = None,
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help="Write snapshots to this JSON file instead of stdout")] = None,
    cycles: Annotated[Optional[int], typer.Option("--cycles", help="Stop after this many cycles")] = None,
):
    """Poll Nomad continuously, publishing every cycle."""
    config: AgentConfig = ctx.obj["config"]
    sink: MetricSink = JsonFileSink(output) if output is not None else PluginOutputSink()

    with _plugin(ctx) as plugin:
        daemon = MetricsDaemon(plugin, sink, interval=interval or config.poll_interval)
        try:
            asyncio.run(daemon.run(max_cycles=cycles))
        except KeyboardInterrupt:
            pass


def main():
    app()


if __name__ == "__main__":
    main()
