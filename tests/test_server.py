"""Tests for the local FastAPI service."""

from __future__ import annotations

import logging
import time

import pytest
from fastapi.testclient import TestClient

from devclean.common import get_logger
from devclean.scanner import ScanRootError
from devclean.server import JobManager, app, resolve_quarantine_dir


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def wait_for_job(client: TestClient, job_id: str, timeout: float = 30.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/api/v1/jobs/{job_id}/result").json()["data"]
        if data["status"] in {"completed", "failed"}:
            return data
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


def test_healthz(client):
    body = client.get("/healthz").json()
    assert body["status"] == "ok"
    assert body["data"]["healthy"] is True


def test_scan_job_completes(client, make_project, workspace):
    make_project("alpha", git=True)
    resp = client.post("/api/v1/scans/start", json={"root": str(workspace), "ai_enabled": False})
    assert resp.status_code == 200
    job_id = resp.json()["data"]["job_id"]

    data = wait_for_job(client, job_id)

    assert data["status"] == "completed"
    projects = data["result"]["projects"]
    assert [p["name"] for p in projects] == ["alpha"]
    assert projects[0]["risk"]["source"] == "heuristic"

    status = client.get(f"/api/v1/jobs/{job_id}").json()["data"]
    assert status["progress"]["phase"] == "completed"


def test_scan_job_with_bad_root_fails_cleanly(client, workspace):
    job_id = client.post(
        "/api/v1/scans/start", json={"root": str(workspace / "missing"), "ai_enabled": False}
    ).json()["data"]["job_id"]
    data = wait_for_job(client, job_id)
    assert data["status"] == "failed"
    assert data["error"]["code"] == "SCAN_ROOT_UNAVAILABLE"


def test_unknown_job_is_404(client):
    assert client.get("/api/v1/jobs/nope").status_code == 404


def test_plan_is_read_only(client, make_project):
    project = make_project("web", node_modules=True)
    body = client.post(
        "/api/v1/delete/plan",
        json={"entries": [{"path": str(project)}], "deps_only": True, "dry_run": False},
    ).json()

    items = body["data"]["items"]
    assert [i["path"] for i in items] == [str(project / "node_modules")]
    assert items[0]["status"] == "planned"
    assert body["data"]["planned_bytes"] > 0
    assert (project / "node_modules").exists()


def test_execute_requires_confirmation(client, make_project):
    project = make_project("web")
    resp = client.post(
        "/api/v1/delete/execute",
        json={"entries": [{"path": str(project)}], "dry_run": False},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "CONFIRMATION_REQUIRED"
    assert project.exists()


def test_execute_and_restore(client, make_project):
    project = make_project("old-site")
    job_id = client.post(
        "/api/v1/delete/execute",
        json={"entries": [{"path": str(project)}], "dry_run": False, "confirm": True},
    ).json()["data"]["job_id"]

    result = wait_for_job(client, job_id)["result"]
    (item,) = result["items"]
    assert item["status"] == "moved"
    assert not project.exists()

    job_id = client.post(
        "/api/v1/quarantine/restore",
        json={"items": [{"path": item["path"], "destination": item["destination"]}]},
    ).json()["data"]["job_id"]
    restored = wait_for_job(client, job_id)["result"]
    assert restored["restored"] == 1
    assert (project / "package.json").exists()


def test_websocket_reports_finished_job(client, make_project, workspace):
    make_project("alpha")
    job_id = client.post(
        "/api/v1/scans/start", json={"root": str(workspace), "ai_enabled": False}
    ).json()["data"]["job_id"]
    wait_for_job(client, job_id)

    with client.websocket_connect(f"/api/v1/ws/jobs/{job_id}") as ws:
        assert ws.receive_json() == {"event": "connected", "job_id": job_id}
        snapshot = ws.receive_json()
        assert snapshot["event"] == "snapshot"
        assert snapshot["job"]["status"] == "completed"


def test_ai_key_endpoints(client):
    assert client.get("/api/v1/ai/status").json()["data"]["has_key"] is False

    body = client.post("/api/v1/ai/key", json={"key": "abc"}).json()
    assert body["data"]["source"] == "local"

    body = client.delete("/api/v1/ai/key").json()
    assert body["data"]["removed"] is True
    assert body["data"]["has_key"] is False

    resp = client.post("/api/v1/ai/key", json={"key": "  "})
    assert resp.status_code == 400


def test_restore_rejects_source_outside_quarantine(client, workspace):
    outsider = workspace / "notes.txt"
    outsider.write_text("keep me")
    target = workspace / "copied.txt"

    resp = client.post(
        "/api/v1/quarantine/restore",
        json={"items": [{"path": str(target), "destination": str(outsider)}]},
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "INVALID_RESTORE_SOURCE"
    assert body["error"]["details"]["rejected"] == [str(outsider)]
    assert outsider.read_text() == "keep me"
    assert not target.exists()


def test_restore_rejects_parent_traversal(client, workspace):
    escape = str(resolve_quarantine_dir() / ".." / "elsewhere")
    resp = client.post(
        "/api/v1/quarantine/restore",
        json={"items": [{"path": str(workspace / "x"), "destination": escape}]},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_RESTORE_SOURCE"


def test_logging_is_configured_on_startup(monkeypatch, isolated_env):
    logger = get_logger()
    monkeypatch.setattr(logger, "handlers", [])

    with TestClient(app):
        files = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert files
        assert files[0].baseFilename.startswith(str(isolated_env))

    for handler in logger.handlers:
        handler.close()


def wait_for_status(jobs: JobManager, job_id: str, timeout: float = 10.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        snap = jobs.snapshot(job_id)
        if snap["status"] in {"completed", "failed"}:
            return snap
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish")


def test_job_manager_tracks_progress_and_result():
    jobs = JobManager(max_workers=1)
    job = jobs.create_job("scan")

    def work(report):
        report({"phase": "walking", "found_count": 3})
        return {"projects": []}

    jobs.submit(job, work)
    snap = wait_for_status(jobs, job.job_id)

    assert snap["status"] == "completed"
    assert snap["progress"] == {"phase": "walking", "found_count": 3}
    assert snap["result"] == {"projects": []}
    assert snap["error"] is None
    jobs.executor.shutdown(wait=True)


def test_job_manager_maps_failures_to_codes():
    jobs = JobManager(max_workers=1)
    missing = jobs.create_job("scan")
    broken = jobs.create_job("delete")

    def no_root(_report):
        raise ScanRootError("root is gone")

    def crash(_report):
        raise RuntimeError("boom")

    jobs.submit(missing, no_root)
    jobs.submit(broken, crash)

    first = wait_for_status(jobs, missing.job_id)
    second = wait_for_status(jobs, broken.job_id)
    assert first["error"]["code"] == "SCAN_ROOT_UNAVAILABLE"
    assert first["error"]["message"] == "root is gone"
    assert second["error"]["code"] == "JOB_EXECUTION_ERROR"
    assert "RuntimeError" in second["error"]["traceback"]
    jobs.executor.shutdown(wait=True)
