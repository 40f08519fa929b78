"""LangGraph pipeline for one generation task.

generate -> validate -> (finalize | fallback) -> END

Gateway failures and unrepairable output never escape the graph; they route to
the fallback node, which always yields a complete project. Only an exception
raised inside the fallback node itself reaches the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypedDict

from langgraph.graph import END, StateGraph

from .continuation import ContinuationEngine
from .fallback import fallback_for_modification, fill_missing_artifacts, synthesize_fallback_project
from .llm import GatewayError
from .models import GenerateRequest, GenerationResult, ModifyRequest, TaskKind
from .prompts import SYSTEM_PROMPT, build_generation_prompt, build_modification_prompt
from .repair import extract_json_payload, parse_file_map, validate_generated_code

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_GENERATION_CEILING = 80
PROGRESS_VALIDATING = 90
PROGRESS_PER_ROUND = 10
GATEWAY_NOT_CONFIGURED = "completion gateway is not configured"

ProgressReporter = Callable[[str, int, str], None]


class PipelineState(TypedDict, total=False):
    task_id: str
    kind: TaskKind
    # Generation description, or the instruction for a modification.
    description: str
    system_prompt: str
    user_prompt: str
    source_files: dict[str, str]
    raw_output: str
    rounds: int
    finish_reason: str | None
    stopped_by: str | None
    gateway_error: str | None
    validation_error: str | None
    result: GenerationResult | None
    fallback_reason: str | None
    partial_fill: bool
    message: str


def initial_state(task_id: str, kind: TaskKind, payload: dict[str, Any]) -> PipelineState:
    """Validate the payload for ``kind`` and render its prompts."""
    if kind == "generate":
        request = GenerateRequest.model_validate(payload)
        description = request.description
        user_prompt = build_generation_prompt(request.description, request.components, request.style)
        source_files: dict[str, str] = {}
    elif kind == "modify":
        modify = ModifyRequest.model_validate(payload)
        description = modify.instruction
        user_prompt = build_modification_prompt(modify.files, modify.instruction)
        source_files = dict(modify.files)
    else:
        raise ValueError(f"unsupported task kind: {kind}")

    return {
        "task_id": task_id,
        "kind": kind,
        "description": description,
        "system_prompt": SYSTEM_PROMPT,
        "user_prompt": user_prompt,
        "source_files": source_files,
        "raw_output": "",
        "rounds": 0,
        "finish_reason": None,
        "stopped_by": None,
        "gateway_error": None,
        "validation_error": None,
        "result": None,
        "fallback_reason": None,
        "partial_fill": False,
        "message": "",
    }


def round_progress(rounds: int) -> int:
    return min(PROGRESS_GENERATION_CEILING, PROGRESS_STARTED + rounds * PROGRESS_PER_ROUND)


def build_pipeline(
    *,
    engine: ContinuationEngine | None,
    report_progress: ProgressReporter,
    use_continuation: bool = True,
    accept_partial_results: bool = True,
    modify_temperature: float | None = None,
):
    """Compile the pipeline graph. ``engine`` None means no gateway: every task falls back."""

    async def generate(state: PipelineState) -> PipelineState:
        task_id = state["task_id"]
        if engine is None:
            logger.warning("pipeline event=gateway_missing task_id=%s", task_id)
            return {"gateway_error": GATEWAY_NOT_CONFIGURED}

        temperature = modify_temperature if state["kind"] == "modify" else None

        def on_round(rounds: int, chunk: str) -> None:
            report_progress(
                task_id,
                round_progress(rounds),
                f"round {rounds} received {len(chunk)} chars",
            )

        try:
            if use_continuation:
                outcome = await engine.run(
                    state["system_prompt"],
                    state["user_prompt"],
                    temperature=temperature,
                    on_round=on_round,
                )
            else:
                outcome = await engine.complete_once(
                    state["system_prompt"],
                    state["user_prompt"],
                    temperature=temperature,
                )
        except GatewayError as exc:
            logger.warning(
                "pipeline event=gateway_failed task_id=%s status_code=%s error=%s",
                task_id,
                exc.status_code,
                exc,
            )
            return {"gateway_error": str(exc)}
        except Exception as exc:  # noqa: BLE001
            logger.exception("pipeline event=gateway_crashed task_id=%s error=%s", task_id, exc)
            return {"gateway_error": f"{type(exc).__name__}: {exc}"}

        return {
            "raw_output": outcome.text,
            "rounds": outcome.rounds,
            "finish_reason": outcome.finish_reason,
            "stopped_by": outcome.stopped_by,
        }

    async def validate(state: PipelineState) -> PipelineState:
        if state.get("gateway_error"):
            return {"fallback_reason": f"gateway error: {state['gateway_error']}"}

        raw_output = state.get("raw_output", "")
        if not raw_output.strip():
            return {"fallback_reason": "empty model output"}

        report_progress(state["task_id"], PROGRESS_VALIDATING, "validating generated files")
        validation = validate_generated_code(raw_output)
        if validation.valid and validation.parsed_code is not None:
            provenance = "repaired" if validation.repaired else "model"
            return {"result": GenerationResult(files=validation.parsed_code, provenance=provenance)}

        if accept_partial_results:
            partial = parse_file_map(validation.cleaned_code or extract_json_payload(raw_output))
            if partial:
                logger.info(
                    "pipeline event=partial_fill task_id=%s files=%d reason=%s",
                    state["task_id"],
                    len(partial),
                    validation.error,
                )
                files = fill_missing_artifacts(partial, state["description"])
                return {
                    "result": GenerationResult(files=files, provenance="repaired"),
                    "validation_error": validation.error,
                    "partial_fill": True,
                }

        return {
            "validation_error": validation.error,
            "fallback_reason": f"validation failed: {validation.error}",
        }

    def finalize(state: PipelineState) -> PipelineState:
        result = state["result"]
        logger.info(
            "pipeline event=finalized task_id=%s provenance=%s files=%d rounds=%d",
            state["task_id"],
            result.provenance if result else None,
            len(result.files) if result else 0,
            state.get("rounds", 0),
        )
        if state.get("partial_fill"):
            return {"message": "generation completed with template files for missing artifacts"}
        return {"message": "generation completed"}

    def fallback(state: PipelineState) -> PipelineState:
        if state["kind"] == "modify":
            result = fallback_for_modification(state.get("source_files", {}), state["description"])
        else:
            result = synthesize_fallback_project(state["description"])
        logger.warning(
            "pipeline event=fallback task_id=%s reason=%s",
            state["task_id"],
            state.get("fallback_reason"),
        )
        return {"result": result, "message": "generation completed with fallback project"}

    def _route_after_validate(state: PipelineState) -> str:
        return "finalize" if state.get("result") is not None else "fallback"

    graph = StateGraph(PipelineState)

    graph.add_node("generate", generate)
    graph.add_node("validate", validate)
    graph.add_node("finalize", finalize)
    graph.add_node("fallback", fallback)

    graph.set_entry_point("generate")
    graph.add_edge("generate", "validate")
    graph.add_conditional_edges(
        "validate",
        _route_after_validate,
        {"finalize": "finalize", "fallback": "fallback"},
    )
    graph.add_edge("finalize", END)
    graph.add_edge("fallback", END)

    return graph.compile()
