from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Optional
from collections.abc import Callable, Mapping


class OperationKind(str, Enum):
    WRITE = "write"
    READ = "read"
    LIST = "list"


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    SERVER = "server"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    STOPPED = "stopped"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Operation:
    kind: OperationKind
    bucket: str
    key: str
    payload_size: int
    worker_id: int
    role: str
    iteration: int


@dataclass(frozen=True)
class Outcome:
    operation: Operation
    success: bool
    started_at: float
    duration_s: float | None = None
    status: int | None = None
    error_kind: ErrorKind | None = None
    error_detail: str | None = None
    bytes_sent: int = 0
    bytes_received: int = 0


@dataclass(frozen=True)
class WorkerAssignment:
    worker_id: int
    role: OperationKind
    iterations: int

    @property
    def tag(self) -> str:
        return f"{self.role.value}-{self.worker_id}"


@dataclass(frozen=True)
class KindCounts:
    success: int = 0
    failure: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failure


@dataclass(frozen=True)
class ClassStats:
    """Latency distribution for one size class. Percentiles are None when
    the class has no successful samples."""

    kind: OperationKind
    size_bytes: int
    label: str
    durations: tuple[float, ...]
    failures: int
    mean: float | None
    p50: float | None
    p90: float | None
    p95: float | None
    p99: float | None
    min: float | None
    max: float | None

    @property
    def count(self) -> int:
        return len(self.durations)

    @property
    def has_data(self) -> bool:
        return bool(self.durations)


# Timeline: worker_id -> list of (start, end, label, status)
TimelineType = dict[int, list[tuple[float, float, str, Optional[int]]]]


def _frozen(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class Report:
    status: RunStatus
    wall_clock_s: float
    counts: Mapping[OperationKind, KindCounts]
    classes: tuple[ClassStats, ...]
    dispatched: int = 0
    observed: int = 0
    dropped: int = 0
    errors: Mapping[str, int] = field(default_factory=dict)
    status_counts: Mapping[int, int] = field(default_factory=dict)
    bytes_sent: int = 0
    bytes_received: int = 0
    throughput_bps: float | None = None
    requests_per_s: float | None = None
    workers_spawned: int = 0
    workers_faulted: int = 0
    workers_abandoned: int = 0
    timeline: Mapping[int, tuple] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("counts", "errors", "status_counts", "timeline"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    @property
    def success(self) -> int:
        return sum(c.success for c in self.counts.values())

    @property
    def failures(self) -> int:
        return sum(c.failure for c in self.counts.values())

    @property
    def error_rate(self) -> float:
        total = self.success + self.failures
        return self.failures / total if total else 0.0

    @property
    def deadline_exceeded(self) -> bool:
        return self.status is RunStatus.DEADLINE_EXCEEDED

    def stats_for(self, kind: OperationKind, size_bytes: int | None = None) -> ClassStats | None:
        for cs in self.classes:
            if cs.kind is kind and (size_bytes is None or cs.size_bytes == size_bytes):
                return cs
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "wall_clock_s": self.wall_clock_s,
            "counts": {
                kind.value: {"success": c.success, "failure": c.failure}
                for kind, c in self.counts.items()
            },
            "classes": [
                {
                    "kind": cs.kind.value,
                    "size_bytes": cs.size_bytes,
                    "label": cs.label,
                    "count": cs.count,
                    "failures": cs.failures,
                    "mean": cs.mean,
                    "p50": cs.p50,
                    "p90": cs.p90,
                    "p95": cs.p95,
                    "p99": cs.p99,
                    "min": cs.min,
                    "max": cs.max,
                }
                for cs in self.classes
            ],
            "dispatched": self.dispatched,
            "observed": self.observed,
            "dropped": self.dropped,
            "errors": dict(self.errors),
            "status_counts": {str(k): v for k, v in self.status_counts.items()},
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "throughput_bps": self.throughput_bps,
            "requests_per_s": self.requests_per_s,
            "error_rate": self.error_rate,
            "workers": {
                "spawned": self.workers_spawned,
                "faulted": self.workers_faulted,
                "abandoned": self.workers_abandoned,
            },
        }


@dataclass(frozen=True)
class StressStep:
    """One worker-count step of a stress test."""

    workers: int
    report: Report
    breaking_point: bool = False


# Progress callback: (completed, total, worker_id)
ProgressCallback = Callable[[int, int, int], None]
