import asyncio
import time

import pytest

from downpour.config import WorkloadSpec
from downpour.core import CANCEL_SETTLE_S, LoadDriver
from downpour.errors import TargetUnreachableError
from downpour.issuer import RequestIssuer
from downpour.models import OperationKind, RunStatus

from stub_target import StubTarget, closed_port_url, serve


def _run(target, elapsed=None, **options):
    async def scenario():
        async with serve(target) as url:
            spec = WorkloadSpec(base_url=url, **options)
            started = time.perf_counter()
            report = await LoadDriver(spec).run()
            if elapsed is not None:
                elapsed.append(time.perf_counter() - started)
            return report

    return asyncio.run(scenario())


def test_all_writes_succeed_against_healthy_target():
    target = StubTarget()
    report = _run(target, writers=3, iterations_per_worker=10, payload_sizes=(1024,))

    assert report.status is RunStatus.COMPLETED
    assert report.counts[OperationKind.WRITE].success == 30
    assert report.failures == 0
    assert report.dropped == 0
    assert report.dispatched == report.observed == 30
    assert report.workers_spawned == 3
    assert report.workers_faulted == report.workers_abandoned == 0
    assert len([r for r in target.requests if r[0] == "PUT"]) == 30

    write = report.stats_for(OperationKind.WRITE, 1024)
    assert write.count == 30
    assert write.p50 <= write.p95 <= write.p99 <= write.max
    assert report.throughput_bps == pytest.approx(30 * 1024 / report.wall_clock_s)


def test_server_errors_are_recorded_per_operation():
    report = _run(StubTarget(status=500), writers=3, iterations_per_worker=10)

    assert report.status is RunStatus.COMPLETED
    assert report.success == 0
    assert report.counts[OperationKind.WRITE].failure == 30
    assert report.errors == {"500": 30}
    assert report.status_counts == {500: 30}
    write = report.stats_for(OperationKind.WRITE)
    assert not write.has_data and write.p99 is None
    assert report.throughput_bps == 0


def test_hanging_target_is_bounded_by_deadline():
    elapsed = []
    budget, timeout = 0.9, 0.3
    report = _run(
        StubTarget(hang=True),
        elapsed,
        writers=3,
        iterations_per_worker=1000,
        global_budget_s=budget,
        request_timeout_s=timeout,
    )

    assert report.status is RunStatus.DEADLINE_EXCEEDED
    assert elapsed[0] < budget + timeout + 1.0
    assert report.success == 0
    assert 0 < report.failures == report.observed <= report.dispatched
    assert set(report.errors) == {"timeout"}
    assert report.workers_abandoned == 0


def test_stuck_workers_are_abandoned_after_grace(monkeypatch):
    async def never_returns(self, op):
        await asyncio.sleep(3600)

    monkeypatch.setattr(RequestIssuer, "issue", never_returns)
    spec = WorkloadSpec(
        base_url=closed_port_url(),
        writers=3,
        global_budget_s=0.2,
        request_timeout_s=0.1,
        grace_margin_s=0.1,
        health_policy="off",
    )

    started = time.perf_counter()
    report = asyncio.run(LoadDriver(spec).run())
    elapsed = time.perf_counter() - started

    assert report.status is RunStatus.DEADLINE_EXCEEDED
    assert report.workers_abandoned == 3
    assert report.dispatched == 3
    assert report.observed == 0
    assert elapsed < 0.2 + 0.2 + CANCEL_SETTLE_S + 0.5


def test_request_stop_ends_run_early():
    async def scenario():
        async with serve(StubTarget(delay_s=0.02)) as url:
            driver = LoadDriver(WorkloadSpec(base_url=url, writers=2, iterations_per_worker=1000))
            asyncio.get_running_loop().call_later(0.3, driver.request_stop, "test")
            return await driver.run()

    report = asyncio.run(scenario())
    assert report.status is RunStatus.STOPPED
    assert 0 < report.dispatched < 2000
    assert report.observed + report.dropped == report.dispatched


def test_stop_before_start_dispatches_nothing():
    async def scenario():
        async with serve(StubTarget()) as url:
            driver = LoadDriver(WorkloadSpec(base_url=url, writers=2))
            driver.request_stop()
            return await driver.run()

    report = asyncio.run(scenario())
    assert report.status is RunStatus.STOPPED
    assert report.dispatched == report.observed == 0


def test_faulting_worker_is_isolated(monkeypatch):
    build = LoadDriver._build_operation

    def flaky(self, assignment, iteration, read_targets):
        if assignment.worker_id == 0 and iteration == 3:
            raise ValueError("malformed key")
        return build(self, assignment, iteration, read_targets)

    monkeypatch.setattr(LoadDriver, "_build_operation", flaky)
    report = _run(StubTarget(), writers=3, iterations_per_worker=10)

    assert report.status is RunStatus.COMPLETED
    assert report.workers_faulted == 1
    assert report.success == 23
    assert report.dispatched == report.observed == 23


def test_mixed_workload_seeds_reads_and_lists():
    spec_options = dict(iterations_per_worker=5, payload_sizes=(256, 4096))
    target = StubTarget()

    async def scenario():
        async with serve(target) as url:
            spec = WorkloadSpec.from_mix(10, {"read": 80, "write": 10, "list": 10}, base_url=url, **spec_options)
            return await LoadDriver(spec).run()

    report = asyncio.run(scenario())
    assert report.failures == 0
    assert report.counts[OperationKind.READ].success == 40
    assert report.counts[OperationKind.WRITE].success == 5
    assert report.counts[OperationKind.LIST].success == 5
    assert [cs.label for cs in report.classes] == [
        "write 256 B",
        "write 4.0 KB",
        "read 256 B",
        "read 4.0 KB",
        "list",
    ]
    assert report.stats_for(OperationKind.READ, 4096).has_data


def test_rate_limit_spaces_dispatches():
    report = _run(StubTarget(), writers=1, iterations_per_worker=5, rate_limit_per_s=20.0)
    assert report.success == 5
    # five tokens at 20/s need at least four refill intervals
    assert report.wall_clock_s >= 0.15


def test_unreachable_target_is_skipped_by_default():
    spec = WorkloadSpec(base_url=closed_port_url())
    report = asyncio.run(LoadDriver(spec).run())
    assert report.status is RunStatus.SKIPPED
    assert report.dispatched == report.observed == 0


def test_unreachable_target_can_fail_fast():
    spec = WorkloadSpec(base_url=closed_port_url(), health_policy="fail")
    with pytest.raises(TargetUnreachableError):
        asyncio.run(LoadDriver(spec).run())


def test_progress_callback_sees_every_outcome():
    seen = []
    target = StubTarget()

    async def scenario():
        async with serve(target) as url:
            spec = WorkloadSpec(base_url=url, writers=2, iterations_per_worker=4)
            return await LoadDriver(spec, progress_callback=lambda done, total, wid: seen.append((done, total))).run()

    asyncio.run(scenario())
    assert len(seen) == 8
    assert seen[-1] == (8, 8)


def test_overflowing_sink_keeps_counts_and_throughput():
    report = _run(StubTarget(), writers=50, iterations_per_worker=4, sink_capacity=1, payload_sizes=(1024,))

    assert report.status is RunStatus.COMPLETED
    assert report.dispatched == 200
    assert report.dropped > 0
    assert report.observed + report.dropped == report.dispatched
    # every PUT succeeded even though most outcomes were dropped
    assert report.throughput_bps == pytest.approx(200 * 1024 / report.wall_clock_s)
    assert report.requests_per_s == pytest.approx(200 / report.wall_clock_s)
