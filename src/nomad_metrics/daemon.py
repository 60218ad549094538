"""Polling loop for running the agent as a long-lived process."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass

from .errors import NomadMetricsError
from .plugin import NomadMetricsPlugin
from .sinks import MetricSink


@dataclass(slots=True)
class DaemonStats:
    cycles: int = 0
    failed_cycles: int = 0
    last_metric_count: int = 0


class MetricsDaemon:
    """Runs one cycle per interval and publishes each result to a sink.

    A failed cycle publishes nothing; the loop logs it and waits for the
    next interval.
    """

    def __init__(
        self,
        plugin: NomadMetricsPlugin,
        sink: MetricSink,
        interval: float = 60.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.plugin = plugin
        self.sink = sink
        self.interval = interval
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.stats = DaemonStats()
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        self._stop_event.set()

    async def run_once(self) -> bool:
        """Run and publish one cycle. Returns False when the cycle failed."""
        # Graphs reflect the registry before this cycle rebuilds it
        graphs = self.plugin.graph_definition()
        try:
            result = await self.plugin.run_cycle()
        except NomadMetricsError as e:
            self.stats.failed_cycles += 1
            self.logger.error(f"Cycle failed, nothing published: {e}")
            return False
        except Exception as e:
            self.stats.failed_cycles += 1
            self.logger.exception(f"Unexpected error during cycle: {e}")
            return False
        finally:
            self.stats.cycles += 1

        self.sink.publish_graphs(graphs)
        self.sink.publish_metrics(result.metrics, result.timestamp)
        self.stats.last_metric_count = len(result.metrics)
        return True

    async def run(self, max_cycles: int | None = None) -> None:
        """Poll until stopped (SIGINT/SIGTERM) or ``max_cycles`` is reached."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except (NotImplementedError, RuntimeError):
                # Not available off the main thread or on some platforms
                pass

        self.logger.info(f"Polling {self.plugin.client!r} every {self.interval:.1f}s")
        while not self._stop_event.is_set():
            start_time = time.time()
            await self.run_once()

            if max_cycles is not None and self.stats.cycles >= max_cycles:
                break

            sleep_time = max(0.0, self.interval - (time.time() - start_time))
            self.logger.debug(f"Sleeping {sleep_time:.2f}s")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_time)
            except asyncio.TimeoutError:
                pass

        self.logger.info(
            f"Stopped after {self.stats.cycles} cycles ({self.stats.failed_cycles} failed)"
        )
