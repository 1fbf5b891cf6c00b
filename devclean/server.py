#!/usr/bin/env python3
"""Local devclean service (FastAPI).

- REST endpoints for scanning, delete planning/execution and restore
- background worker jobs with WebSocket progress updates
- dry-run by default; destructive execution requires ``confirm=true``

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import threading
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from devclean import classifier as ai
from devclean.cleanup import DeleteItem, DeleteOptions, DeleteTarget
from devclean.common import (
    default_max_workers,
    default_quarantine_dir,
    get_logger,
    human_bytes,
    now_utc_iso,
    resolve_writable_path,
    setup_logger,
)
from devclean.engine import Engine
from devclean.scanner import ScanOptions, ScanProgress, ScanRootError

# Handlers are attached on startup, once the environment is final.
LOGGER = get_logger()
APP_LOOP: asyncio.AbstractEventLoop | None = None


# ---------------------------- API Models ------------------------------------ #


class ScanRequest(BaseModel):
    root: str = Field(default_factory=lambda: str(Path.cwd()))
    scan_all: bool = False
    include_cache_dirs: bool = False
    ai_enabled: bool = True


class DeleteEntry(BaseModel):
    path: str
    is_cache_dir: bool = False


class DeleteRequest(BaseModel):
    entries: list[DeleteEntry] = Field(default_factory=list)
    deps_only: bool = False
    dry_run: bool = True
    quarantine: bool = True
    confirm: bool = False


class RestoreEntry(BaseModel):
    path: str
    destination: str


class RestoreRequest(BaseModel):
    items: list[RestoreEntry] = Field(default_factory=list)


class ApiKeyRequest(BaseModel):
    key: str


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, meta: dict[str, Any] | None = None) -> JSONResponse:
    return JSONResponse({
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": [],
        "data": data,
    })


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    return JSONResponse(
        {
            "status": "error",
            "timestamp": now_utc_iso(),
            "error": {"code": code, "message": message, "details": details or {}},
        },
        status_code=status_code,
    )


# ------------------------------- Job Manager -------------------------------- #

TERMINAL_STATUSES = {"completed", "failed"}

ProgressCallback = Callable[[dict[str, Any]], None]


@dataclass
class JobState:
    job_id: str
    job_type: str
    status: str = "queued"
    created_at: str = field(default_factory=now_utc_iso)
    progress: dict[str, Any] = field(default_factory=lambda: {"phase": "queued"})
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class JobManager:
    """Runs scan/delete/restore jobs on a pool and fans events out to WebSocket queues."""

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self._jobs: dict[str, JobState] = {}
        self._subs: dict[str, set[asyncio.Queue]] = {}
        self._lock = threading.Lock()

    def create_job(self, job_type: str) -> JobState:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type)
        with self._lock:
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> JobState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def snapshot(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return asdict(job) if job else None

    def subscribe(self, job_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        with self._lock:
            self._subs.setdefault(job_id, set()).add(q)
        return q

    def unsubscribe(self, job_id: str, q: asyncio.Queue) -> None:
        with self._lock:
            self._subs.get(job_id, set()).discard(q)

    def _publish(self, job_id: str, event: str, payload: dict[str, Any], **changes: Any) -> None:
        """Apply ``changes`` to the job, then push ``event`` to every subscriber."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            for name, value in changes.items():
                setattr(job, name, value)
            queues = list(self._subs.get(job_id, ()))

        message = {"event": event, "job_id": job_id} | payload
        for q in queues:
            if APP_LOOP and APP_LOOP.is_running():
                APP_LOOP.call_soon_threadsafe(_offer, q, message)
            else:
                _offer(q, message)

    def submit(self, job: JobState, func: Callable[[ProgressCallback], dict[str, Any]]) -> None:
        job_id = job.job_id
        self._publish(job_id, "status", {"status": "running"}, status="running")

        def report(progress: dict[str, Any]) -> None:
            self._publish(job_id, "progress", {"progress": progress}, progress=progress)

        def fail(code: str, exc: Exception, tb: str = "") -> None:
            LOGGER.warning("job_failed job=%s code=%s err=%s", job_id, code, exc)
            error = {"code": code, "message": str(exc)}
            self._publish(job_id, "failed", {"error": error}, status="failed", error=error | {"traceback": tb})

        def runner() -> None:
            try:
                result = func(report)
            except ScanRootError as exc:
                fail("SCAN_ROOT_UNAVAILABLE", exc)
            except Exception as exc:  # pylint: disable=broad-except
                fail("JOB_EXECUTION_ERROR", exc, traceback.format_exc())
            else:
                self._publish(job_id, "completed", {"result": result}, status="completed", result=result)

        self.executor.submit(runner)


def _offer(q: asyncio.Queue, message: dict[str, Any]) -> None:
    """Enqueue without blocking; a full queue drops its oldest event."""
    if q.full():
        with contextlib.suppress(asyncio.QueueEmpty):
            q.get_nowait()
    with contextlib.suppress(asyncio.QueueFull):
        q.put_nowait(message)


JOBS = JobManager(max_workers=max(2, default_max_workers() // 2))

# ---------------------------- Engine Session -------------------------------- #


def resolve_quarantine_dir() -> Path:
    return resolve_writable_path(default_quarantine_dir() / ".keep", "quarantine/.keep").parent


@contextmanager
def engine_session(ai_enabled: bool = False):
    engine = Engine(ai_enabled=ai_enabled, quarantine_dir=resolve_quarantine_dir(), logger=LOGGER)
    try:
        yield engine
    finally:
        engine.close()


def is_within(path: str, directory: str) -> bool:
    """True when ``path`` sits strictly below ``directory``. Only the parent is resolved."""
    absolute = os.path.abspath(os.path.expanduser(path))
    resolved = os.path.join(os.path.realpath(os.path.dirname(absolute)), os.path.basename(absolute))
    return resolved != directory and os.path.commonpath([resolved, directory]) == directory


def delete_targets(req: DeleteRequest) -> list[DeleteTarget]:
    return [DeleteTarget(path=e.path, is_cache_dir=e.is_cache_dir) for e in req.entries]


def delete_options(req: DeleteRequest, dry_run: bool) -> DeleteOptions:
    return DeleteOptions(deps_only=req.deps_only, dry_run=dry_run, quarantine=req.quarantine)


# ------------------------------- App Setup ---------------------------------- #

app = FastAPI(
    title="devclean",
    version="0.1.0",
    description="Local JavaScript project scanner and guarded cleanup API (dry-run first).",
)


@app.on_event("startup")
async def _on_startup():
    global APP_LOOP
    APP_LOOP = asyncio.get_running_loop()
    setup_logger(stream=True)


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    LOGGER.exception("Unhandled server error: %s", exc)
    return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)


# ---------------------------- Job Endpoints --------------------------------- #


@app.get("/api/v1/jobs/{job_id}", summary="Get job status/progress")
async def get_job(job_id: str):
    snap = JOBS.snapshot(job_id)
    if snap is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return api_ok(snap)


@app.get("/api/v1/jobs/{job_id}/result", summary="Get job result")
async def get_job_result(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status not in TERMINAL_STATUSES:
        return api_ok({"job_id": job_id, "status": job.status, "progress": job.progress})
    return api_ok({"job_id": job_id, "status": job.status, "result": job.result, "error": job.error})


@app.websocket("/api/v1/ws/jobs/{job_id}")
async def ws_job_progress(websocket: WebSocket, job_id: str):
    await websocket.accept()
    if JOBS.get(job_id) is None:
        await websocket.send_json({"status": "error", "message": "job not found"})
        await websocket.close()
        return

    # Subscribe before the snapshot so a job finishing in between is not missed.
    q = JOBS.subscribe(job_id)
    try:
        snap = JOBS.snapshot(job_id)
        await websocket.send_json({"event": "connected", "job_id": job_id})
        await websocket.send_json({"event": "snapshot", "job": snap})
        if snap and snap["status"] in TERMINAL_STATUSES:
            return

        while True:
            payload = await q.get()
            await websocket.send_json(payload)
            if payload.get("event") in TERMINAL_STATUSES:
                break
    except WebSocketDisconnect:
        pass
    finally:
        JOBS.unsubscribe(job_id, q)
        with contextlib.suppress(Exception):
            await websocket.close()


# ------------------------------- Scan API ----------------------------------- #


@app.post("/api/v1/scans/start", summary="Start a project scan", response_description="Job ID for tracking")
async def start_scan(req: ScanRequest):
    job = JOBS.create_job("scan")

    def runner(progress_cb: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        def on_progress(event: ScanProgress) -> None:
            progress_cb({"phase": "walking"} | event.to_dict())

        with engine_session(ai_enabled=req.ai_enabled) as eng:
            options = ScanOptions(
                scan_all=req.scan_all,
                include_cache_dirs=req.include_cache_dirs,
                max_workers=eng.max_workers,
            )
            report = eng.scan(req.root, options, on_progress)
            progress_cb({"phase": "completed", "found_count": len(report.projects)})
            LOGGER.info("scan_job_complete job=%s projects=%s", job.job_id, len(report.projects))
            return report.to_dict()

    JOBS.submit(job, runner)
    return api_ok({"job_id": job.job_id, "status": "running"}, meta={"type": "scan"})


# ------------------------------ Delete APIs --------------------------------- #


@app.post("/api/v1/delete/plan", summary="Preview what a delete request would remove")
async def delete_plan(req: DeleteRequest):
    targets = delete_targets(req)

    def build() -> list[DeleteItem]:
        with engine_session() as eng:
            return eng.build_plan(targets, delete_options(req, dry_run=True))

    items = await asyncio.to_thread(build)
    total = sum(i.size_bytes for i in items)
    return api_ok(
        {
            "items": [i.to_dict() for i in items],
            "planned_bytes": total,
            "planned_human": human_bytes(total),
        },
        meta={"type": "plan", "deps_only": req.deps_only},
    )


@app.post("/api/v1/delete/execute", summary="Delete or quarantine targets (dry-run default)")
async def delete_execute(req: DeleteRequest):
    if not req.dry_run and not req.confirm:
        return api_error(
            "CONFIRMATION_REQUIRED",
            "Destructive cleanup requires confirm=true.",
            status_code=400,
        )
    targets = delete_targets(req)
    job = JOBS.create_job("delete")

    def runner(progress_cb: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        with engine_session() as eng:
            options = delete_options(req, dry_run=req.dry_run)
            progress_cb({"phase": "planning"})
            plan = eng.build_plan(targets, options)
            progress_cb({"phase": "executing", "item_count": len(plan)})
            result = eng.execute(plan, options).to_dict()
            progress_cb({"phase": "completed"})
            return result

    JOBS.submit(job, runner)
    return api_ok({"job_id": job.job_id}, meta={"type": "delete", "dry_run": req.dry_run})


@app.post("/api/v1/quarantine/restore", summary="Move quarantined items back")
async def quarantine_restore(req: RestoreRequest):
    quarantine = os.path.realpath(resolve_quarantine_dir())
    outside = [i.destination for i in req.items if not is_within(i.destination, quarantine)]
    if outside:
        return api_error(
            "INVALID_RESTORE_SOURCE",
            "Restore sources must live inside the quarantine directory.",
            status_code=400,
            details={"quarantine_dir": quarantine, "rejected": outside},
        )
    items = [i.model_dump() for i in req.items]
    job = JOBS.create_job("restore")

    def runner(progress_cb: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        with engine_session() as eng:
            progress_cb({"phase": "restore"})
            out = eng.restore(items)
            progress_cb({"phase": "completed"})
            return out

    JOBS.submit(job, runner)
    return api_ok({"job_id": job.job_id}, meta={"type": "restore"})


# -------------------------------- AI Key ------------------------------------ #


@app.get("/api/v1/ai/status", summary="Whether an AI key is configured")
async def ai_status():
    return api_ok(ai.ai_status())


@app.post("/api/v1/ai/key", summary="Store an AI key locally")
async def ai_key_set(req: ApiKeyRequest):
    try:
        ai.save_api_key(req.key)
    except ValueError as exc:
        return api_error("INVALID_KEY", str(exc), status_code=400)
    return api_ok(ai.ai_status())


@app.delete("/api/v1/ai/key", summary="Remove the locally stored AI key")
async def ai_key_clear():
    removed = ai.clear_api_key()
    return api_ok(ai.ai_status() | {"removed": removed})


@app.get("/healthz", summary="Liveness endpoint")
async def healthz():
    return api_ok({"service": "devclean-server", "healthy": True})


# --------------------------------- Runner ---------------------------------- #


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the devclean FastAPI server")
    parser.add_argument("--host", default=os.getenv("DEVCLEAN_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("DEVCLEAN_PORT", "8017")))
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args()


def main() -> None:
    import uvicorn

    args = parse_args()
    setup_logger(stream=True)
    LOGGER.info("server_start host=%s port=%s", args.host, args.port)
    uvicorn.run(
        "devclean.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
