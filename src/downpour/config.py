import json
import logging
import math
import os
import tomllib
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .models import OperationKind, WorkerAssignment

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOWNPOUR_"
DEFAULT_PAYLOAD_SIZE = 4 * 1024


class HealthPolicy(str, Enum):
    SKIP = "skip"  # unreachable target -> skipped report
    FAIL = "fail"  # unreachable target -> TargetUnreachableError
    OFF = "off"


class WorkloadSpec(BaseModel):
    """Immutable description of one run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = "http://localhost:8000"
    bucket: str = "downpour"
    key_prefix: str = "load"

    writers: int = Field(default=3, ge=0)
    readers: int = Field(default=0, ge=0)
    listers: int = Field(default=0, ge=0)
    iterations_per_worker: int = Field(default=10, ge=1)
    payload_sizes: tuple[int, ...] = (DEFAULT_PAYLOAD_SIZE,)

    global_budget_s: float = Field(default=60.0, gt=0)
    request_timeout_s: float = Field(default=10.0, gt=0)
    grace_margin_s: float = Field(default=0.5, ge=0)

    sink_capacity: int = Field(default=1024, ge=1)
    rate_limit_per_s: float | None = Field(default=None, gt=0)
    rate_ramp_up_s: float = Field(default=0.0, ge=0)
    health_policy: HealthPolicy = HealthPolicy.SKIP
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v

    @field_validator("payload_sizes")
    @classmethod
    def _check_sizes(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if not v:
            raise ValueError("at least one payload size is required")
        if any(size <= 0 for size in v):
            raise ValueError("payload sizes must be positive")
        return v

    @model_validator(mode="after")
    def _check_workers(self) -> "WorkloadSpec":
        if self.total_workers == 0:
            raise ValueError("at least one writer, reader or lister is required")
        return self

    # ────────────────────────────────
    # Derived values
    # ────────────────────────────────

    @property
    def total_workers(self) -> int:
        return self.writers + self.readers + self.listers

    @property
    def scheduled_operations(self) -> int:
        return self.total_workers * self.iterations_per_worker

    @property
    def grace_period_s(self) -> float:
        return self.request_timeout_s + self.grace_margin_s

    def workers_for(self, kind: OperationKind) -> int:
        return {
            OperationKind.WRITE: self.writers,
            OperationKind.READ: self.readers,
            OperationKind.LIST: self.listers,
        }[kind]

    def assignments(self) -> list[WorkerAssignment]:
        out = []
        for kind in OperationKind:
            for _ in range(self.workers_for(kind)):
                out.append(WorkerAssignment(len(out), kind, self.iterations_per_worker))
        return out

    @classmethod
    def from_mix(
        cls, total_workers: int, mix: Mapping[str | OperationKind, float], **options: Any
    ) -> "WorkloadSpec":
        """Apportion ``total_workers`` across roles by proportion,
        e.g. ``{"read": 0.8, "write": 0.15, "list": 0.05}``."""
        counts = apportion(total_workers, mix)
        return cls(
            writers=counts[OperationKind.WRITE],
            readers=counts[OperationKind.READ],
            listers=counts[OperationKind.LIST],
            **options,
        )


def apportion(total: int, mix: Mapping[str | OperationKind, float]) -> dict[OperationKind, int]:
    """Largest-remainder split of ``total`` workers."""
    if total < 1:
        raise ConfigError("total_workers must be at least 1")
    weights = {kind: 0.0 for kind in OperationKind}
    for key, weight in mix.items():
        try:
            kind = OperationKind(key)
        except ValueError as e:
            raise ConfigError(f"Unknown role in workload mix: {key!r}") from e
        if weight < 0:
            raise ConfigError(f"Negative weight for role {kind.value}")
        weights[kind] += weight
    norm = sum(weights.values())
    if norm <= 0:
        raise ConfigError("Workload mix must have a positive weight")

    quotas = {kind: total * w / norm for kind, w in weights.items()}
    counts = {kind: math.floor(q) for kind, q in quotas.items()}
    leftover = total - sum(counts.values())
    by_remainder = sorted(quotas, key=lambda k: quotas[k] - counts[k], reverse=True)
    for kind in by_remainder[:leftover]:
        counts[kind] += 1
    return counts


# ────────────────────────────────
# Loading
# ────────────────────────────────


def _read_file(path: Path) -> dict[str, Any]:
    try:
        if path.suffix == ".toml":
            with open(path, "rb") as f:
                return tomllib.load(f)
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e


def _read_env() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in WorkloadSpec.model_fields:
        if name == "headers":
            continue
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is None or raw == "":
            continue
        if name == "payload_sizes":
            values[name] = tuple(int(s) for s in raw.split(",") if s.strip())
        else:
            values[name] = raw
    return values


def load_spec(
    path: str | os.PathLike | None = None,
    overrides: Mapping[str, Any] | None = None,
    use_env: bool = True,
) -> WorkloadSpec:
    """Build a WorkloadSpec from defaults < file < DOWNPOUR_* env < overrides."""
    data: dict[str, Any] = {}
    if path is not None:
        data.update(_read_file(Path(path)))
        logger.info(f"Loaded run configuration from {path}")

    if use_env:
        load_dotenv()
        try:
            env_values = _read_env()
        except ValueError as e:
            raise ConfigError(f"Invalid {ENV_PREFIX}PAYLOAD_SIZES: {e}") from e
        if env_values:
            logger.debug(f"Environment overrides: {sorted(env_values)}")
        data.update(env_values)

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        spec = WorkloadSpec(**data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
    return spec
