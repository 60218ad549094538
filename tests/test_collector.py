import asyncio
import math
import time

import pytest

from conftest import FakeNomadClient, allocation_payload, stats_payload

from nomad_metrics.collector import (
    TASK_METRICS,
    AllocationCollector,
    build_contribution,
    task_prefix,
)
from nomad_metrics.errors import AllocationDetailUnavailable, AllocationStatsUnavailable
from nomad_metrics.models import Allocation, AllocResourceUsage


def test_task_prefix():
    assert task_prefix("api", "web", "nginx") == "api_web_nginx"


class TestBuildContribution:

    def test_four_metrics_per_task(self):
        allocation = Allocation.model_validate(
            allocation_payload("0123456789abcdef", "api", "web", {"nginx": 256, "sidecar": 64})
        )
        usage = AllocResourceUsage.model_validate(stats_payload({
            "nginx": (3.5, 120.0, 2048),
            "sidecar": (0.5, 10.0, 512),
        }))

        contribution = build_contribution(allocation, usage)

        assert contribution.prefixes == ("api_web_nginx", "api_web_sidecar")
        assert len(contribution.metrics) == 8
        assert contribution.metrics["api_web_nginx.01234567.cpu_percent"] == 3.5
        assert contribution.metrics["api_web_nginx.01234567.cpu_totalticks"] == 120.0
        assert contribution.metrics["api_web_nginx.01234567.memory_rss_bytes"] == 2048.0
        assert contribution.metrics["api_web_nginx.01234567.allocated_memory_megabytes"] == 256.0
        assert contribution.metrics["api_web_sidecar.01234567.allocated_memory_megabytes"] == 64.0

    def test_legacy_task_resources(self):
        payload = allocation_payload("abcdef0123456789", "api", "web", {"nginx": 0})
        del payload["AllocatedResources"]
        payload["TaskResources"] = {"nginx": {"CPU": 100, "MemoryMB": 300}}
        allocation = Allocation.model_validate(payload)
        usage = AllocResourceUsage.model_validate(stats_payload({"nginx": (1.0, 1.0, 1)}))

        contribution = build_contribution(allocation, usage)
        assert contribution.metrics["api_web_nginx.abcdef01.allocated_memory_megabytes"] == 300.0

    def test_task_without_stats_reports_zero(self):
        allocation = Allocation.model_validate(
            allocation_payload("feedfacecafebeef", "api", "web", {"nginx": 128, "init": 32})
        )
        usage = AllocResourceUsage.model_validate(stats_payload({"nginx": (2.0, 5.0, 100)}))

        contribution = build_contribution(allocation, usage)
        assert contribution.metrics["api_web_init.feedface.cpu_percent"] == 0.0
        assert contribution.metrics["api_web_init.feedface.memory_rss_bytes"] == 0.0
        assert contribution.metrics["api_web_init.feedface.allocated_memory_megabytes"] == 32.0
        assert len(contribution.metrics) == 8

    def test_non_finite_reading_rejects_allocation(self):
        allocation = Allocation.model_validate(
            allocation_payload("deadbeef00000000", "api", "web", {"nginx": 128})
        )
        usage = AllocResourceUsage.model_validate(stats_payload({"nginx": (math.nan, 5.0, 100)}))

        with pytest.raises(AllocationStatsUnavailable, match="non-finite cpu_percent"):
            build_contribution(allocation, usage)


def _populate(client, count, tasks_per_alloc=2):
    expected_keys = set()
    for i in range(count):
        alloc_id = f"{i:08x}-aaaa-bbbb-cccc-dddddddddddd"
        job = f"job{i % 3}"
        tasks = {f"task{t}": 64 * (t + 1) for t in range(tasks_per_alloc)}
        client.add_allocation(alloc_id, job, "group", tasks)
        for task in tasks:
            for metric in TASK_METRICS:
                expected_keys.add(f"{job}_group_{task}.{alloc_id[:8]}.{metric}")
    return expected_keys


class TestAllocationCollector:

    @pytest.mark.asyncio
    async def test_no_allocations(self, fake_client):
        collector = AllocationCollector(fake_client)
        result = await collector.collect([])
        assert result.metrics == {}
        assert result.prefixes == []
        assert result.failures == []
        collector.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_concurrency", [0, 1, 4, 16])
    async def test_exact_keys_under_random_interleaving(self, max_concurrency):
        for _ in range(5):
            client = FakeNomadClient(latency=0.005)
            expected_keys = _populate(client, count=20, tasks_per_alloc=3)
            collector = AllocationCollector(client, max_concurrency=max_concurrency)

            result = await collector.collect(client.allocations)
            collector.close()

            assert set(result.metrics) == expected_keys
            assert len(result.metrics) == 4 * 20 * 3
            assert result.collected == 20
            assert len(result.prefixes) == 20 * 3
            assert all(math.isfinite(v) for v in result.metrics.values())

    @pytest.mark.asyncio
    async def test_fan_out_is_bounded(self):
        client = FakeNomadClient(latency=0.01)
        _populate(client, count=12, tasks_per_alloc=1)
        collector = AllocationCollector(client, max_concurrency=3)

        await collector.collect(client.allocations)
        collector.close()

        assert client.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_detail_failure_is_isolated(self):
        client = FakeNomadClient(latency=0.002)
        _populate(client, count=5, tasks_per_alloc=1)
        broken = client.allocations[2].id
        client.failing_details.add(broken)
        collector = AllocationCollector(client)

        result = await collector.collect(client.allocations)
        collector.close()

        assert result.collected == 4
        assert len(result.metrics) == 4 * 4
        assert not any(broken[:8] in name for name in result.metrics)
        assert len(result.failures) == 1
        assert isinstance(result.failures[0], AllocationDetailUnavailable)
        assert result.failures[0].allocation_id == broken

    @pytest.mark.asyncio
    async def test_stats_failure_is_isolated(self):
        client = FakeNomadClient()
        _populate(client, count=3, tasks_per_alloc=2)
        broken = client.allocations[0].id
        client.failing_stats.add(broken)
        collector = AllocationCollector(client)

        result = await collector.collect(client.allocations)
        collector.close()

        assert len(result.metrics) == 2 * 2 * 4
        assert isinstance(result.failures[0], AllocationStatsUnavailable)
        assert result.failures[0].allocation_id == broken

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out(self):
        client = FakeNomadClient()
        _populate(client, count=2, tasks_per_alloc=1)
        slow = client.allocations[0].id
        original = client.get_allocation_detail

        def slow_detail(alloc_id):
            if alloc_id == slow:
                time.sleep(0.3)
            return original(alloc_id)

        client.get_allocation_detail = slow_detail
        collector = AllocationCollector(client, fetch_timeout=0.05)

        result = await collector.collect(client.allocations)
        collector.close()

        assert result.collected == 1
        assert isinstance(result.failures[0], AllocationDetailUnavailable)
        assert "timed out" in str(result.failures[0])

    @pytest.mark.asyncio
    async def test_hung_fetch_does_not_starve_other_allocations(self):
        client = FakeNomadClient()
        _populate(client, count=4, tasks_per_alloc=1)
        hung = client.allocations[0].id
        original = client.get_allocation_detail

        def hung_detail(alloc_id):
            if alloc_id == hung:
                time.sleep(0.6)
            return original(alloc_id)

        client.get_allocation_detail = hung_detail
        collector = AllocationCollector(client, max_concurrency=1, fetch_timeout=0.1)

        result = await collector.collect(client.allocations)
        collector.close()

        assert result.collected == 3
        assert [f.allocation_id for f in result.failures] == [hung]
        assert not any(hung[:8] in name for name in result.metrics)

    @pytest.mark.asyncio
    async def test_waits_for_every_task(self):
        client = FakeNomadClient(latency=0.02)
        _populate(client, count=8, tasks_per_alloc=1)
        collector = AllocationCollector(client, max_concurrency=2)

        result = await collector.collect(client.allocations)
        collector.close()

        assert client.calls.count("get_allocation_stats") == 8
        assert result.collected == 8
        assert not [t for t in asyncio.all_tasks() if t.get_name().startswith("collect_alloc_")]

    def test_negative_concurrency_rejected(self, fake_client):
        with pytest.raises(ValueError):
            AllocationCollector(fake_client, max_concurrency=-1)
