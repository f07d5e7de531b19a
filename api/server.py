"""
Publication Approvals — API Server

FastAPI application serving:
  POST /v1/records                 — create a DRAFT status record
  PUT  /v1/records/{id}/approve    — approve a DRAFT record
  GET  /v1/records/{id}            — status record + workflow instances
  POST /v1/approval-requests       — start the approval workflow (async)
  POST /v1/events                  — inbound events routed from other services
  GET  /v1/instances/{id}          — workflow instance status
  GET  /v1/dead-letters            — operator view of dead letters
  GET  /v1/stats                   — store / orchestrator / feed statistics
  GET  /health                     — liveness
  GET  /ready                      — readiness

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Development (no Redis)
    PA_WORKER__MODE=inline uvicorn api.server:app --reload
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.models import (
    AcceptedResponse,
    ApprovalRequestSubmission,
    EventSubmission,
    InstanceStatusResponse,
    RecordSubmission,
)
from api.worker import WorkerBackend, create_backend, job_to_dict
from approvals.events import EventEnvelope
from approvals import __version__
from approvals.runtime import ApprovalRuntime
from approvals.schemas import ApprovalRequested, unmarshal_event
from approvals.types import RejectReason
from infra.config import ApprovalsConfig, load_config
from infra.logging import configure_logging

logger = logging.getLogger("publication_approvals.api")

_REJECT_STATUS = {
    RejectReason.ALREADY_ACTIVE.value: 409,
    RejectReason.NOT_IN_DRAFT.value: 409,
    RejectReason.NOT_FOUND.value: 404,
}


def create_app(
    config: ApprovalsConfig | None = None,
    runtime: ApprovalRuntime | None = None,
    backend: WorkerBackend | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The runtime and worker backend are built on first use, so importing
    this module never opens the database. Tests pass their own.
    """
    app = FastAPI(
        title="Publication Approvals API",
        version="0.1.0",
        description="Asynchronous publication approval workflow",
    )

    # ── State ────────────────────────────────────────────────

    _runtime: ApprovalRuntime | None = runtime
    _backend: WorkerBackend | None = backend

    def get_runtime() -> ApprovalRuntime:
        nonlocal _runtime
        if _runtime is None:
            cfg = config or ApprovalsConfig.from_dict(
                load_config(os.environ.get("PA_CONFIG", "config/approvals.yaml"))
            )
            configure_logging(level=cfg.log_level, namespace=cfg.service_namespace, version=__version__)
            _runtime = ApprovalRuntime(cfg, dispatch_triggers=False)
        return _runtime

    def get_backend() -> WorkerBackend:
        nonlocal _backend
        if _backend is None:
            _backend = create_backend(get_runtime())
            _backend.start()
        return _backend

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if _backend:
            _backend.shutdown()

    def _write_response(resp, ok_status: int = 200) -> JSONResponse:
        if resp.accepted:
            get_backend().after_write()
            return JSONResponse(status_code=ok_status, content=resp.to_dict())
        return JSONResponse(
            status_code=_REJECT_STATUS.get(resp.reason, 409),
            content=resp.to_dict(),
        )

    async def _json_object(request: Request) -> dict[str, Any] | JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=422, content={"errors": ["Request body is not valid JSON"]})
        if not isinstance(body, dict):
            return JSONResponse(status_code=422, content={"errors": ["Request body must be a JSON object"]})
        return body

    # ── Status Records ────────────────────────────────────────

    @app.post("/v1/records", response_model=None)
    async def create_record(request: Request):
        body = await _json_object(request)
        if isinstance(body, JSONResponse):
            return body
        submission = RecordSubmission(
            entity_id=body.get("entity_id", ""),
            attributes=body.get("attributes", {}),
        )
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        resp = get_runtime().ingest.handle("POST", {
            "entity_id": submission.entity_id,
            "attributes": submission.attributes,
        })
        return _write_response(resp, ok_status=201)

    @app.put("/v1/records/{entity_id}/approve", response_model=None)
    async def approve_record(entity_id: str):
        resp = get_runtime().ingest.handle("PUT", {"entity_id": entity_id})
        return _write_response(resp)

    @app.get("/v1/records/{entity_id}")
    async def get_record(entity_id: str):
        rt = get_runtime()
        record = rt.store.get_record(entity_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Record not found")
        instances = rt.instances.list_instances(entity_id=entity_id)
        return JSONResponse(content={
            "record": record.to_image(),
            "instances": [InstanceStatusResponse.from_instance(i).to_dict() for i in instances],
        })

    # ── Workflow Triggers ─────────────────────────────────────

    def _accept_trigger(envelope: EventEnvelope) -> JSONResponse:
        job_id = get_backend().submit_trigger(envelope)
        response = AcceptedResponse(
            event_id=envelope.event_id,
            job_id=job_id,
            status="accepted",
            message=f"Approval request enqueued (job: {job_id})",
        )
        return JSONResponse(status_code=202, content=response.to_dict())

    @app.post("/v1/approval-requests", response_model=None)
    async def request_approval(request: Request):
        body = await _json_object(request)
        if isinstance(body, JSONResponse):
            return body
        submission = ApprovalRequestSubmission(
            entity_id=body.get("entity_id", ""),
            payload=body.get("payload", {}),
        )
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        rt = get_runtime()
        envelope = EventEnvelope.wrap(
            ApprovalRequested(entity_id=submission.entity_id, payload=submission.payload),
            source=rt.config.service_namespace,
        )
        rt.bus.publish(envelope)
        return _accept_trigger(envelope)

    @app.post("/v1/events", response_model=None)
    async def receive_event(request: Request):
        body = await _json_object(request)
        if isinstance(body, JSONResponse):
            return body
        submission = EventSubmission(
            detail_type=body.get("detail_type", ""),
            detail=body.get("detail", {}),
            source=body.get("source", ""),
            event_id=body.get("event_id", ""),
            time=body.get("time"),
        )
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        try:
            event = unmarshal_event(submission.detail_type, submission.detail)
        except ValidationError as e:
            return JSONResponse(status_code=422, content={"errors": [str(e)]})

        rt = get_runtime()
        envelope = EventEnvelope.wrap(event, source=submission.source, event_id=submission.event_id)
        if submission.time is not None:
            envelope.time = float(submission.time)
        rt.bus.publish(envelope)

        if isinstance(event, ApprovalRequested):
            return _accept_trigger(envelope)
        return JSONResponse(status_code=202, content={
            "event_id": envelope.event_id,
            "status": "accepted",
        })

    @app.get("/v1/jobs/{job_id}")
    async def get_job(job_id: str):
        job = get_backend().get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return JSONResponse(content=job_to_dict(job))

    # ── Instances ─────────────────────────────────────────────

    @app.get("/v1/instances/{instance_id}")
    async def get_instance(instance_id: str):
        inst = get_runtime().orchestrator.get_instance(instance_id)
        if inst is None:
            raise HTTPException(status_code=404, detail="Instance not found")
        return JSONResponse(content=InstanceStatusResponse.from_instance(inst).to_dict())

    # ── Operations ────────────────────────────────────────────

    @app.get("/v1/dead-letters")
    async def list_dead_letters(source: str | None = None, reason: str | None = None):
        letters = get_runtime().dead_letters.list(source=source, reason=reason)
        return JSONResponse(content={
            "count": len(letters),
            "dead_letters": [dl.to_dict() for dl in letters[-100:]],
        })

    @app.get("/v1/stats")
    async def get_stats():
        stats: dict[str, Any] = get_runtime().stats()
        stats["worker"] = get_backend().tracker.stats
        return JSONResponse(content=stats)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        try:
            get_runtime().store.stats()
            return JSONResponse(content={"status": "ok"})
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app()
