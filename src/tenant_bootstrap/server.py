"""Tenant bootstrap MCP server using FastMCP.

Bootstraps are long-running, so each one runs as a background job; callers
poll `bootstrap_job_status` and may cancel with `bootstrap_cancel_job`.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from fastmcp import FastMCP

from .bootstrapper import Bootstrapper, EventName
from .config import BootstrapOptions, BootstrapSettings, setup_logging
from .models import BootstrapperError

logger = logging.getLogger(__name__)

# Most recent error events kept per job
MAX_JOB_EVENTS = 200

_settings: BootstrapSettings | None = None

# In-memory job registry for bootstrap runs
_jobs: dict[str, dict[str, Any]] = {}
_job_counter: int = 0
_job_lock: asyncio.Lock = asyncio.Lock()


def get_settings() -> BootstrapSettings:
    global _settings
    if _settings is None:
        _settings = BootstrapSettings()
    return _settings


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(_app: FastMCP):  # type: ignore[no-untyped-def]
    """Manage server lifecycle."""
    global _settings

    logger.info("Starting tenant bootstrap MCP server")
    _settings = BootstrapSettings()
    logger.info(f"PIM API: {_settings.api_url}, tenant: {_settings.tenant_identifier or '(per call)'}")

    yield

    logger.info("Shutting down tenant bootstrap MCP server")
    for job in _jobs.values():
        task = job.get("_task")
        if task is not None and not task.done():
            task.cancel()


mcp = FastMCP(
    "Tenant Bootstrap MCP Server",
    version="0.1.0",
    instructions="Bootstrap a PIM tenant (shapes, topics, grids, items, ...) from a JSON spec",
    lifespan=lifespan,
)


async def _start_background_job(
    kind: str,
    payload: dict[str, Any],
    coro_factory: Callable[[str], Awaitable[dict]],
) -> dict:
    # Start a background job and return a lightweight handle.
    global _job_counter

    async with _job_lock:
        _job_counter += 1
        job_id = f"{kind}-{_job_counter}"

    _jobs[job_id] = {
        "job_id": job_id,
        "kind": kind,
        "status": "pending",  # pending | running | completed | failed | cancelling
        "payload": payload,
        "result": None,
        "error": None,
        "events": [],
        "progress": {},
        "started_at": _now(),
        "finished_at": None,
        "_task": None,  # internal field, not exposed in status
    }

    async def runner() -> None:
        try:
            _jobs[job_id]["status"] = "running"
            result = await coro_factory(job_id)
            _jobs[job_id]["result"] = result
            _jobs[job_id]["status"] = "completed" if result.get("success", True) else "failed"
        except asyncio.CancelledError:
            _jobs[job_id]["error"] = "CancelledError: Job was cancelled by user request"
            _jobs[job_id]["status"] = "failed"
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Job {job_id} failed")
            _jobs[job_id]["error"] = f"{type(e).__name__}: {e}"
            _jobs[job_id]["status"] = "failed"
        finally:
            _jobs[job_id]["finished_at"] = _now()

    task = asyncio.create_task(runner())
    _jobs[job_id]["_task"] = task

    return {"success": True, "job_id": job_id, "status": "started", "kind": kind}


def _load_spec(spec: dict[str, Any] | None, spec_file: str | None) -> dict[str, Any]:
    if spec is not None:
        return spec
    if spec_file:
        return json.loads(Path(spec_file).read_text(encoding="utf-8"))
    raise ValueError("Either spec or spec_file is required")


async def run_bootstrap(
    job_id: str,
    spec: dict[str, Any],
    settings: BootstrapSettings,
    options: BootstrapOptions,
    client: Any = None,
) -> dict:
    """Run one bootstrap, mirroring its events into the job record."""
    job = _jobs.setdefault(job_id, {"events": [], "progress": {}})
    bootstrapper = Bootstrapper(spec, settings, options, client=client)

    def on_error(error: BootstrapperError) -> None:
        events = job.setdefault("events", [])
        events.append({"type": error.type, "code": error.code, "error": error.error, "will_retry": error.will_retry})
        del events[:-MAX_JOB_EVENTS]

    def on_status(_status: Any) -> None:
        job["progress"] = {area: s.progress for area, s in bootstrapper.status.items()}

    bootstrapper.on(EventName.ERROR, on_error)
    bootstrapper.on(EventName.STATUS_UPDATE, on_status)

    duration = await bootstrapper.start()
    snapshot = bootstrapper.status_snapshot()
    return {
        "success": True,
        "tenant_identifier": settings.tenant_identifier,
        "duration": round(duration, 3),
        "errors": sum(len(s["errors"]) for s in snapshot.values()),
        "warnings": sum(len(s["warnings"]) for s in snapshot.values()),
        "status": snapshot,
    }


@mcp.tool(
    name="bootstrap_tenant",
    description="Bootstrap a tenant from a JSON spec (inline or from a file). Runs as a background job.",
)
async def bootstrap_tenant(
    spec: dict[str, Any] | None = None,
    spec_file: str | None = None,
    tenant_identifier: str | None = None,
    language: str | None = None,
    item_topics: Literal["amend", "replace"] = "replace",
    item_publish: Literal["auto", "publish"] = "auto",
    log_level: Literal["silent", "verbose"] = "silent",
) -> dict:
    try:
        loaded = _load_spec(spec, spec_file)
    except (OSError, ValueError) as e:
        return {"success": False, "error": f"{type(e).__name__}: {e}"}

    settings = get_settings()
    if tenant_identifier:
        settings = settings.model_copy(update={"tenant_identifier": tenant_identifier})
    if not settings.tenant_identifier:
        return {"success": False, "error": "tenant_identifier is required (or set BOOTSTRAP_TENANT_IDENTIFIER)"}

    options = BootstrapOptions(
        language=language, item_topics=item_topics, item_publish=item_publish, log_level=log_level
    )
    payload = {"tenant_identifier": settings.tenant_identifier, "spec_file": spec_file, **options.model_dump()}

    return await _start_background_job(
        "bootstrap",
        payload,
        lambda job_id: run_bootstrap(job_id, loaded, settings, options),
    )


@mcp.tool(
    name="bootstrap_job_status",
    description="Get status, progress and result of bootstrap jobs (all jobs when job_id is omitted).",
)
async def bootstrap_job_status(job_id: str | None = None) -> dict:
    if job_id is None:
        jobs = [
            {
                "job_id": job.get("job_id"),
                "kind": job.get("kind"),
                "status": job.get("status"),
                "started_at": job.get("started_at"),
                "finished_at": job.get("finished_at"),
            }
            for job in _jobs.values()
        ]
        return {"success": True, "jobs": jobs}

    job = _jobs.get(job_id)
    if not job:
        return {"success": False, "error": f"Unknown job_id: {job_id}"}

    view = {k: v for k, v in job.items() if k not in ("payload", "_task")}
    return {"success": True, **view}


@mcp.tool(
    name="bootstrap_cancel_job",
    description="Cancel a running bootstrap job. Its request scheduler is stopped.",
)
async def bootstrap_cancel_job(job_id: str) -> dict:
    job = _jobs.get(job_id)
    if not job:
        return {"success": False, "error": f"Unknown job_id: {job_id}"}

    task = job.get("_task")
    if task is None:
        return {"success": False, "error": "Job has no associated task (cannot cancel)."}
    if task.done():
        return {"success": False, "error": "Job already completed."}

    job["status"] = "cancelling"
    task.cancel()
    return {"success": True, "job_id": job_id, "status": "cancelling"}


def main() -> None:
    setup_logging(get_settings().log_level)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
