from collections.abc import Mapping, Sequence
from typing import Optional

from .models import OperationKind, Report, StressStep
from .utils import format_bytes


def _ms(value: float | None) -> str:
    return "no data" if value is None else f"{value * 1000:.2f}ms"


def render_report(report: Report) -> str:
    lines = [
        "Load Test Report",
        "================",
        f"Status:       {report.status.value}",
        f"Duration:     {report.wall_clock_s:.3f}s",
        f"Dispatched:   {report.dispatched}",
        f"Observed:     {report.observed}",
        f"Dropped:      {report.dropped}",
        f"Workers:      {report.workers_spawned} spawned, {report.workers_faulted} faulted, "
        f"{report.workers_abandoned} abandoned",
        "",
        "Outcomes:",
    ]
    for kind in OperationKind:
        c = report.counts.get(kind)
        if c is None or c.total == 0:
            continue
        lines.append(f"  {kind.value:<6} {c.success} ok / {c.failure} failed")

    lines.append("")
    lines.append("Latency:")
    for cs in report.classes:
        if not cs.has_data:
            lines.append(f"  {cs.label:<16} no data ({cs.failures} failed)")
            continue
        lines.append(
            f"  {cs.label:<16} n={cs.count:<6} p50={_ms(cs.p50)}  p95={_ms(cs.p95)}  "
            f"p99={_ms(cs.p99)}  max={_ms(cs.max)}"
        )

    lines.append("")
    lines.append("Throughput:")
    if report.throughput_bps is None:
        lines.append("  no data")
    else:
        lines.append(f"  Written:  {format_bytes(report.throughput_bps)}/s")
        lines.append(f"  Requests: {report.requests_per_s:.2f}/s")
    lines.append(f"  Sent {format_bytes(report.bytes_sent)}, received {format_bytes(report.bytes_received)}")

    if report.status_counts:
        lines.append("")
        lines.append("Status Codes:")
        for code in sorted(report.status_counts):
            lines.append(f"  {code}: {report.status_counts[code]}")

    if report.errors:
        lines.append("")
        lines.append("Errors:")
        for detail, count in sorted(report.errors.items(), key=lambda kv: -kv[1]):
            lines.append(f"  {detail}: {count}")

    return "\n".join(lines)


def render_latency_histogram(latencies: Sequence[float], bins: int = 20) -> str:
    if not latencies:
        return "No latency data."
    lo, hi = min(latencies), max(latencies)
    if hi <= lo:
        return f"Histogram: single value {lo:.4f}s"

    width = 40
    counts = [0] * bins
    for x in latencies:
        j = int((x - lo) / (hi - lo) * bins)
        if j == bins:
            j -= 1
        counts[j] += 1

    peak = max(counts)
    lines = []
    for i, c in enumerate(counts):
        left = lo + (hi - lo) * (i / bins)
        right = lo + (hi - lo) * ((i + 1) / bins)
        bar = "#" * max(1, int((c / peak) * width)) if c else ""
        lines.append(f"{left:.4f}s - {right:.4f}s | {bar} ({c})")
    return "Latency Histogram\n" + "\n".join(lines)


def render_timeline(
    timeline: Mapping[int, Sequence[tuple[float, float, str, Optional[int]]]],
    width: int = 80,
) -> str:
    if not timeline:
        return "No timeline data."

    max_t = 0.0
    for segs in timeline.values():
        for _, end_rel, _, _ in segs:
            if end_rel > max_t:
                max_t = end_rel
    if max_t <= 0:
        max_t = 1.0

    lines = ["Request Timeline (relative seconds)"]
    for worker_id in sorted(timeline.keys()):
        buf = [" "] * width
        for start_rel, end_rel, _label, status in timeline[worker_id]:
            a = int(start_rel / max_t * (width - 1))
            b = int(end_rel / max_t * (width - 1))
            a, b = max(0, a), max(a, b)
            mark = "=" if status is not None and 200 <= status < 300 else "x"
            for k in range(a, min(b, width - 1) + 1):
                buf[k] = mark
        lines.append(f"W{worker_id:02d} |{''.join(buf)}|")
    lines.append(f"0s{' ' * (width - 6)}~ {max_t:.2f}s")
    return "\n".join(lines)


def render_stress(steps: Sequence[StressStep]) -> str:
    if not steps:
        return "No stress steps run."
    lines = [
        "Stress Test",
        f"{'workers':>8}  {'ok':>7}  {'failed':>7}  {'req/s':>9}  {'worst p99':>10}",
    ]
    for step in steps:
        r = step.report
        p99s = [cs.p99 for cs in r.classes if cs.p99 is not None]
        rps = f"{r.requests_per_s:.2f}" if r.requests_per_s is not None else "-"
        worst = _ms(max(p99s)) if p99s else "no data"
        mark = "  <- breaking point" if step.breaking_point else ""
        lines.append(f"{step.workers:>8}  {r.success:>7}  {r.failures:>7}  {rps:>9}  {worst:>10}{mark}")
    return "\n".join(lines)
