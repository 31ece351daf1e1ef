import logging
from collections.abc import Iterable, Sequence

from .aggregator import OutcomeTally
from .errors import PerformanceAssertionError
from .models import ClassStats, KindCounts, OperationKind, Report, RunStatus
from .utils import size_class_label

logger = logging.getLogger(__name__)

PERCENTILES = (50, 90, 95, 99)


def nearest_rank(sorted_values: Sequence[float], pct: int) -> float | None:
    """Nearest-rank percentile: the value at 1-indexed rank ceil(pct * n / 100).

    ``pct`` is an integer percent so the rank is computed exactly.
    """
    if not 0 < pct <= 100:
        raise ValueError(f"percentile must be in (0, 100], got {pct}")
    n = len(sorted_values)
    if n == 0:
        return None
    rank = (pct * n + 99) // 100
    return sorted_values[rank - 1]


def summarize_class(
    kind: OperationKind, size_bytes: int, durations: Iterable[float], failures: int = 0
) -> ClassStats:
    sl = tuple(sorted(durations))
    n = len(sl)
    p = {pct: nearest_rank(sl, pct) for pct in PERCENTILES}
    return ClassStats(
        kind=kind,
        size_bytes=size_bytes,
        label=size_class_label(kind, size_bytes),
        durations=sl,
        failures=failures,
        mean=sum(sl) / n if n else None,
        p50=p[50],
        p90=p[90],
        p95=p[95],
        p99=p[99],
        min=sl[0] if n else None,
        max=sl[-1] if n else None,
    )


def build_report(
    tally: OutcomeTally,
    *,
    status: RunStatus,
    wall_clock_s: float,
    dispatched: int,
    dropped: int,
    workers_spawned: int = 0,
    workers_faulted: int = 0,
    workers_abandoned: int = 0,
    expected_classes: Iterable[tuple[OperationKind, int]] = (),
    written_bytes: int | None = None,
) -> Report:
    """Reduce a frozen tally into the run's Report.

    ``written_bytes`` comes from the sink, which also counts writes whose
    outcomes were dropped. Without it only the tally's writes are counted.
    Requests per second likewise include dropped outcomes.
    """
    if not tally.frozen:
        raise RuntimeError("tally must be frozen before summarization")

    logger.debug(
        f"Computing report: observed={tally.observed}, dispatched={dispatched}, dropped={dropped}"
    )

    keys = set(tally.durations) | set(tally.class_failures) | set(expected_classes)
    order = list(OperationKind)
    classes = tuple(
        summarize_class(kind, size, tally.durations.get((kind, size), ()), tally.class_failures.get((kind, size), 0))
        for kind, size in sorted(keys, key=lambda k: (order.index(k[0]), k[1]))
    )

    counts = {
        kind: KindCounts(success=tally.success.get(kind, 0), failure=tally.failure.get(kind, 0))
        for kind in OperationKind
    }

    if written_bytes is None:
        written_bytes = tally.write_bytes
    throughput = written_bytes / wall_clock_s if wall_clock_s > 0 else None
    rps = (tally.observed + dropped) / wall_clock_s if wall_clock_s > 0 else None

    report = Report(
        status=status,
        wall_clock_s=wall_clock_s,
        counts=counts,
        classes=classes,
        dispatched=dispatched,
        observed=tally.observed,
        dropped=dropped,
        errors=dict(tally.errors),
        status_counts=dict(tally.status_counts),
        bytes_sent=tally.bytes_sent,
        bytes_received=tally.bytes_received,
        throughput_bps=throughput,
        requests_per_s=rps,
        workers_spawned=workers_spawned,
        workers_faulted=workers_faulted,
        workers_abandoned=workers_abandoned,
        timeline={wid: tuple(segs) for wid, segs in tally.timeline.items()},
    )

    logger.info(
        f"Report computed: status={status.value}, success={report.success}, "
        f"errors={report.failures}, dropped={dropped}, "
        f"error_rate={report.error_rate * 100:.1f}%"
    )
    return report


def assert_performance(
    report: Report,
    max_p99_s: float | None = None,
    min_rps: float | None = None,
    max_failure_rate: float | None = None,
) -> None:
    """Raise PerformanceAssertionError listing every violated limit.

    ``max_failure_rate`` is a fraction (0.05 == 5%).
    """
    violations = []
    if max_p99_s is not None:
        for cs in report.classes:
            if cs.p99 is not None and cs.p99 > max_p99_s:
                violations.append(f"p99 latency {cs.p99:.4f}s for {cs.label} exceeds maximum {max_p99_s}s")
    if min_rps is not None:
        rps = report.requests_per_s or 0.0
        if rps < min_rps:
            violations.append(f"RPS {rps:.2f} below minimum {min_rps:.2f}")
    if max_failure_rate is not None and report.error_rate > max_failure_rate:
        violations.append(
            f"failure rate {report.error_rate * 100:.2f}% exceeds maximum {max_failure_rate * 100:.2f}%"
        )
    if violations:
        raise PerformanceAssertionError(violations)
