from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from codegen_api.config.settings import Settings

from .continuation import ContinuationEngine
from .ledger import TaskLedger
from .llm import CompletionGateway
from .models import GenerateRequest, ModifyRequest, PollResponse, TaskKind
from .workflow import PROGRESS_STARTED, PipelineState, build_pipeline, initial_state

logger = logging.getLogger(__name__)


class GenerationOrchestrator:
    """Accept generation work, run it in the background, and record outcomes in the ledger.

    A task always ends ``completed`` unless the fallback path itself raises; a
    gateway failure or unusable model output still delivers a project with
    ``provenance == "fallback"``.
    """

    def __init__(
        self,
        *,
        ledger: TaskLedger,
        settings: Settings,
        gateway: CompletionGateway | None = None,
    ) -> None:
        self.ledger = ledger
        self.settings = settings
        self.engine: ContinuationEngine | None = None
        if gateway is not None:
            self.engine = ContinuationEngine(
                gateway=gateway,
                model=settings.llm_model,
                max_tokens=settings.llm_max_tokens,
                temperature=settings.llm_temperature,
                max_loops=settings.max_loops,
                round_delay_s=settings.round_delay_s,
            )
        self.pipeline = build_pipeline(
            engine=self.engine,
            report_progress=self._report_progress,
            use_continuation=settings.use_continuation,
            accept_partial_results=settings.accept_partial_results,
            modify_temperature=settings.modify_temperature,
        )
        self._running: dict[str, asyncio.Task[None]] = {}

    def submit(self, kind: TaskKind, payload: dict[str, Any]) -> str:
        """Create a task and schedule it on the running loop; returns the id immediately."""
        if kind == "export":
            raise ValueError("export tasks are not produced by the generation pipeline")
        if kind == "generate":
            request: GenerateRequest | ModifyRequest = GenerateRequest.model_validate(payload)
            description = request.description
            metadata: dict[str, Any] = {"components": request.components, "style": request.style}
        else:
            request = ModifyRequest.model_validate(payload)
            description = request.instruction
            metadata = {"source_files": len(request.files)}

        task_id = self.ledger.create(kind, description, metadata=metadata)
        runner = asyncio.create_task(self.run(task_id, kind, request.model_dump()))
        self._running[task_id] = runner
        runner.add_done_callback(lambda _: self._running.pop(task_id, None))
        logger.info("orchestrator event=submitted task_id=%s kind=%s", task_id, kind)
        return task_id

    def poll(self, task_id: str) -> PollResponse | None:
        task = self.ledger.get(task_id)
        if task is None:
            return None
        return PollResponse.from_task(task)

    def cancel(self, task_id: str) -> bool:
        """Forget the task. In-flight work keeps running; its late updates are ignored."""
        return self.ledger.delete(task_id)

    async def run(self, task_id: str, kind: TaskKind, payload: dict[str, Any]) -> None:
        started = time.monotonic()
        self.ledger.update(
            task_id,
            "processing",
            progress=PROGRESS_STARTED,
            message="generation started",
        )
        try:
            state: PipelineState = await self.pipeline.ainvoke(initial_state(task_id, kind, payload))
        except Exception as exc:  # noqa: BLE001
            logger.exception("orchestrator event=run_failed task_id=%s kind=%s", task_id, kind)
            self.ledger.update(
                task_id,
                "failed",
                message="generation failed",
                error=str(exc) or exc.__class__.__name__,
                metadata={"elapsed_s": round(time.monotonic() - started, 3)},
            )
            return

        result = state.get("result")
        self.ledger.update(
            task_id,
            "completed",
            message=state.get("message") or "generation completed",
            result=result,
            metadata=_run_metadata(state, elapsed_s=time.monotonic() - started),
        )
        logger.info(
            "orchestrator event=completed task_id=%s provenance=%s rounds=%s",
            task_id,
            result.provenance if result else None,
            state.get("rounds"),
        )

    async def drain(self) -> None:
        """Wait for every in-flight task to finish."""
        pending = list(self._running.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def running(self) -> int:
        return len(self._running)

    def _report_progress(self, task_id: str, progress: int, message: str) -> None:
        self.ledger.update(task_id, progress=progress, message=message)


def _run_metadata(state: PipelineState, *, elapsed_s: float) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "rounds": state.get("rounds", 0),
        "finish_reason": state.get("finish_reason"),
        "stopped_by": state.get("stopped_by"),
        "raw_chars": len(state.get("raw_output", "")),
        "elapsed_s": round(elapsed_s, 3),
    }
    if state.get("fallback_reason"):
        metadata["fallback_reason"] = state["fallback_reason"]
    if state.get("validation_error"):
        metadata["validation_error"] = state["validation_error"]
    return metadata
