import json

import pytest
from pydantic import ValidationError

from downpour.config import HealthPolicy, WorkloadSpec, apportion, load_spec
from downpour.errors import ConfigError
from downpour.models import OperationKind


def test_defaults_are_valid():
    spec = WorkloadSpec()
    assert spec.total_workers == 3
    assert spec.scheduled_operations == 30
    assert spec.grace_period_s == pytest.approx(spec.request_timeout_s + spec.grace_margin_s)
    assert spec.health_policy is HealthPolicy.SKIP


def test_spec_is_immutable():
    spec = WorkloadSpec()
    with pytest.raises(ValidationError):
        spec.writers = 10


def test_requires_at_least_one_worker():
    with pytest.raises(ValidationError):
        WorkloadSpec(writers=0, readers=0, listers=0)


@pytest.mark.parametrize(
    "field, value",
    [
        ("base_url", "localhost:8000"),
        ("payload_sizes", ()),
        ("payload_sizes", (1024, 0)),
        ("request_timeout_s", 0),
        ("global_budget_s", -1),
        ("iterations_per_worker", 0),
        ("sink_capacity", 0),
    ],
)
def test_rejects_invalid_values(field, value):
    with pytest.raises(ValidationError):
        WorkloadSpec(**{field: value})


def test_base_url_is_normalized():
    assert WorkloadSpec(base_url=" http://target:9000/ ").base_url == "http://target:9000"


def test_assignments_cover_every_role_in_order():
    spec = WorkloadSpec(writers=2, readers=1, listers=1, iterations_per_worker=7)
    assignments = spec.assignments()
    assert [a.worker_id for a in assignments] == [0, 1, 2, 3]
    assert [a.role for a in assignments] == [
        OperationKind.WRITE,
        OperationKind.WRITE,
        OperationKind.READ,
        OperationKind.LIST,
    ]
    assert all(a.iterations == 7 for a in assignments)
    assert assignments[2].tag == "read-2"


def test_apportion_follows_mix():
    counts = apportion(20, {"read": 80, "write": 15, "list": 5})
    assert counts == {OperationKind.WRITE: 3, OperationKind.READ: 16, OperationKind.LIST: 1}

    counts = apportion(10, {"read": 0.8, "write": 0.15, "list": 0.05})
    assert sum(counts.values()) == 10
    assert counts[OperationKind.READ] == 8


def test_apportion_rejects_bad_mix():
    with pytest.raises(ConfigError):
        apportion(10, {"delete": 1})
    with pytest.raises(ConfigError):
        apportion(10, {"write": 0})
    with pytest.raises(ConfigError):
        apportion(0, {"write": 1})


def test_from_mix_builds_spec():
    spec = WorkloadSpec.from_mix(20, {"read": 80, "write": 15, "list": 5}, iterations_per_worker=2)
    assert (spec.writers, spec.readers, spec.listers) == (3, 16, 1)
    assert spec.scheduled_operations == 40


def test_load_spec_layers_file_then_overrides(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(json.dumps({"base_url": "http://a:1", "writers": 5, "payload_sizes": [10, 20]}))

    spec = load_spec(path, overrides={"writers": 2, "bucket": None}, use_env=False)
    assert spec.base_url == "http://a:1"
    assert spec.writers == 2
    assert spec.bucket == "downpour"
    assert spec.payload_sizes == (10, 20)


def test_load_spec_reads_toml(tmp_path):
    path = tmp_path / "run.toml"
    path.write_text('base_url = "http://b:2"\nlisters = 1\nhealth_policy = "off"\n')
    spec = load_spec(path, use_env=False)
    assert spec.listers == 1
    assert spec.health_policy is HealthPolicy.OFF


def test_load_spec_reads_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DOWNPOUR_BASE_URL", "http://env:3")
    monkeypatch.setenv("DOWNPOUR_WRITERS", "4")
    monkeypatch.setenv("DOWNPOUR_PAYLOAD_SIZES", "1,2,3")
    spec = load_spec(overrides={"writers": 6})
    assert spec.base_url == "http://env:3"
    assert spec.writers == 6
    assert spec.payload_sizes == (1, 2, 3)


def test_load_spec_wraps_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_spec(tmp_path / "missing.json", use_env=False)
    with pytest.raises(ConfigError):
        load_spec(overrides={"writers": -1}, use_env=False)
