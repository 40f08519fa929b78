"""FastAPI application wiring for the code generation service.

Beginner terms used in this file:
- Lifespan: startup/shutdown hook; here it starts and stops the ledger sweep.
- Polling: clients submit work, receive a task id immediately, then call
  GET /tasks/{task_id} until ``completed`` is true.
- app.state: shared runtime objects (settings, ledger, orchestrator).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import ValidationError

from .app.ledger import TaskLedger
from .app.llm import CompletionGateway, build_gateway_from_settings
from .app.models import (
    PollResponse,
    SubmitTaskRequest,
    SubmitTaskResponse,
    TaskKind,
    TaskStatus,
)
from .app.orchestrator import GenerationOrchestrator
from .config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings_override: Settings | None = None,
    gateway: CompletionGateway | None = None,
    ledger: TaskLedger | None = None,
) -> FastAPI:
    """Application factory. Tests pass a fake gateway and/or a prepared ledger."""
    settings = settings_override or get_settings()
    task_ledger = ledger or TaskLedger(
        task_timeout_s=settings.task_timeout_s,
        retention_s=settings.task_retention_s,
        sweep_interval_s=settings.sweep_interval_s,
    )
    completion_gateway = gateway or build_gateway_from_settings(settings)
    if completion_gateway is None:
        logger.warning(
            "app event=gateway_missing provider=%s action=fallback_only",
            settings.llm_provider,
        )
    orchestrator = GenerationOrchestrator(
        ledger=task_ledger,
        settings=settings,
        gateway=completion_gateway,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await task_ledger.start()
        try:
            yield
        finally:
            await task_ledger.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.ledger = task_ledger
    app.state.orchestrator = orchestrator

    def _orchestrator(request: Request) -> GenerationOrchestrator:
        return request.app.state.orchestrator

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": settings.app_name,
            "gateway_configured": orchestrator.engine is not None,
        }

    # Submitting schedules an asyncio task, so this handler must run on the event loop.
    @app.post("/tasks", response_model=SubmitTaskResponse)
    async def submit_task(payload: SubmitTaskRequest, request: Request) -> SubmitTaskResponse:
        try:
            task_id = _orchestrator(request).submit(payload.kind, payload.payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400,
                detail=[{"loc": err["loc"], "msg": err["msg"]} for err in exc.errors()],
            ) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return SubmitTaskResponse(task_id=task_id)

    @app.get("/tasks")
    def list_tasks(
        request: Request,
        kind: TaskKind | None = Query(default=None),
        status: TaskStatus | None = Query(default=None),
    ) -> dict[str, list[PollResponse]]:
        tasks = request.app.state.ledger.list_tasks(kind=kind, status=status)
        return {"tasks": [PollResponse.from_task(task) for task in tasks]}

    # Registered before /tasks/{task_id} so "stats" is not read as an id.
    @app.get("/tasks/stats")
    def task_stats(request: Request) -> dict[str, int]:
        stats = dict(request.app.state.ledger.stats())
        stats["running"] = _orchestrator(request).running
        return stats

    @app.get("/tasks/{task_id}", response_model=PollResponse)
    def poll_task(task_id: str, request: Request) -> PollResponse:
        response = _orchestrator(request).poll(task_id)
        if response is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return response

    @app.delete("/tasks/{task_id}")
    def delete_task(task_id: str, request: Request) -> dict[str, Any]:
        if not _orchestrator(request).cancel(task_id):
            raise HTTPException(status_code=404, detail="Task not found")
        return {"task_id": task_id, "deleted": True}

    return app


# Module-level app for `uvicorn codegen_api.main:app`.
app = create_app()
