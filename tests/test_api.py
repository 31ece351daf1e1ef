import time

from fastapi.testclient import TestClient

from downpour.api.main import app

from stub_target import closed_port_url


def _wait_for(client, run_id, timeout_s=10.0):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        body = client.get(f"/api/runs/{run_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.05)
    raise AssertionError(f"run {run_id} did not finish")


def test_run_against_unreachable_target_is_skipped():
    with TestClient(app) as client:
        resp = client.post("/api/runs", json={"base_url": closed_port_url(), "writers": 2})
        assert resp.status_code == 200
        run_id = resp.json()["run_id"]

        body = _wait_for(client, run_id)
        assert body["status"] == "completed"
        assert body["report"]["status"] == "skipped"
        assert body["scheduled_operations"] == 20
        assert any(r["id"] == run_id for r in client.get("/api/runs").json())

        assert client.post(f"/api/runs/{run_id}/stop").json() == {"status": "not running"}
        assert client.delete(f"/api/runs/{run_id}").json() == {"status": "deleted"}
        assert client.get(f"/api/runs/{run_id}").status_code == 404


def test_unreachable_target_with_fail_policy_marks_run_failed():
    with TestClient(app) as client:
        spec = {"base_url": closed_port_url(), "health_policy": "fail"}
        run_id = client.post("/api/runs", json=spec).json()["run_id"]

        body = _wait_for(client, run_id)
        assert body["status"] == "failed"
        assert "unreachable" in body["error"]


def test_unknown_run_returns_404():
    with TestClient(app) as client:
        assert client.get("/api/runs/nope").status_code == 404
        assert client.post("/api/runs/nope/stop").status_code == 404
        assert client.delete("/api/runs/nope").status_code == 404


def test_invalid_spec_is_rejected():
    with TestClient(app) as client:
        assert client.post("/api/runs", json={"writers": 0}).status_code == 422
        assert client.post("/api/runs", json={"base_url": "ftp://x"}).status_code == 422
        assert client.post("/api/runs", json={"bogus": 1}).status_code == 422
