"""In-memory task ledger with per-task watchdogs and a periodic expiry sweep.

Beginner terms:
- Watchdog: a timer started at task creation; if the task is not terminal when
  it fires, the task is reported as ``timeout``.
- Sweep: a background loop that times out stuck tasks and deletes terminal
  tasks once their retention window has passed.
- Terminal: ``completed``, ``failed``, or ``timeout``. Terminal tasks are never
  mutated again, only read or deleted.

The ledger never raises from its public API for unknown ids or late updates.
Failures of the tracked work are expressed through task state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .models import TERMINAL_STATUSES, GenerationResult, Task, TaskKind, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT_S = 600.0
DEFAULT_RETENTION_S = 3600.0
DEFAULT_SWEEP_INTERVAL_S = 60.0
TIMEOUT_ERROR = "task execution timed out"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class TaskLedger:
    """Addressable, pollable store of generation tasks. Single writer per task id."""

    def __init__(
        self,
        *,
        task_timeout_s: float = DEFAULT_TASK_TIMEOUT_S,
        retention_s: float = DEFAULT_RETENTION_S,
        sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.task_timeout_s = task_timeout_s
        self.retention_s = retention_s
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._watchdogs: dict[str, asyncio.TimerHandle] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def create(
        self,
        kind: TaskKind,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        now = self._clock()
        task = Task(
            task_id=str(uuid4()),
            kind=kind,
            description=description,
            status="pending",
            progress=0,
            message="task created",
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._tasks[task.task_id] = task
        self._schedule_watchdog(task.task_id)
        logger.info("ledger event=created task_id=%s kind=%s", task.task_id, kind)
        return task.task_id

    def update(
        self,
        task_id: str,
        status: TaskStatus | None = None,
        *,
        progress: int | None = None,
        message: str | None = None,
        result: GenerationResult | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task | None:
        """Merge the given fields into the task; returns the updated copy or None."""
        current = self._tasks.get(task_id)
        if current is None:
            logger.warning("ledger event=update_unknown task_id=%s", task_id)
            return None
        if current.completed:
            logger.warning(
                "ledger event=update_ignored task_id=%s status=%s requested=%s",
                task_id,
                current.status,
                status,
            )
            return current.model_copy(deep=True)

        changes: dict[str, Any] = {"updated_at": self._clock()}
        if status is not None:
            changes["status"] = status
        if progress is not None:
            changes["progress"] = min(100, max(0, int(progress)))
        if message is not None:
            changes["message"] = message
        if result is not None:
            changes["result"] = result
        if error is not None:
            changes["error"] = error
        if metadata:
            changes["metadata"] = {**current.metadata, **metadata}
        if status == "completed":
            changes["progress"] = 100

        updated = current.model_copy(update=changes)
        self._tasks[task_id] = updated
        if updated.completed:
            self._cancel_watchdog(task_id)
        logger.info(
            "ledger event=updated task_id=%s status=%s progress=%d message=%s",
            task_id,
            updated.status,
            updated.progress,
            updated.message,
        )
        return updated.model_copy(deep=True)

    def mark_timeout(self, task_id: str) -> None:
        """Watchdog action: force a still-running task into ``timeout``."""
        self._watchdogs.pop(task_id, None)
        task = self._tasks.get(task_id)
        if task is None or task.completed:
            return
        self._tasks[task_id] = task.model_copy(
            update={
                "status": "timeout",
                "error": TIMEOUT_ERROR,
                "message": TIMEOUT_ERROR,
                "updated_at": self._clock(),
            }
        )
        logger.warning("ledger event=timeout task_id=%s kind=%s", task_id, task.kind)

    def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def delete(self, task_id: str) -> bool:
        self._cancel_watchdog(task_id)
        deleted = self._tasks.pop(task_id, None) is not None
        if deleted:
            logger.info("ledger event=deleted task_id=%s", task_id)
        return deleted

    def list_tasks(
        self,
        kind: TaskKind | None = None,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        """Return tasks filtered by kind and/or status, newest first."""
        # Reversed insertion order keeps ties on created_at newest first after the stable sort.
        tasks = list(reversed(self._tasks.values()))
        if kind is not None:
            tasks = [task for task in tasks if task.kind == kind]
        if status is not None:
            tasks = [task for task in tasks if task.status == status]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return [task.model_copy(deep=True) for task in tasks]

    def stats(self) -> dict[str, int]:
        counts = {"total": len(self._tasks)}
        for status in ("pending", "processing", "completed", "failed", "timeout"):
            counts[status] = 0
        for task in self._tasks.values():
            counts[task.status] += 1
        return counts

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Time out stuck tasks and delete expired terminal ones; returns deleted ids."""
        current_time = now or self._clock()
        expired: list[str] = []
        for task_id, task in list(self._tasks.items()):
            if task.status in TERMINAL_STATUSES:
                age_s = (current_time - task.updated_at).total_seconds()
                if age_s > self.retention_s:
                    expired.append(task_id)
            else:
                age_s = (current_time - task.created_at).total_seconds()
                if age_s > self.task_timeout_s:
                    self.mark_timeout(task_id)

        for task_id in expired:
            self.delete(task_id)
        if expired:
            logger.info("ledger event=sweep deleted=%d remaining=%d", len(expired), len(self._tasks))
        return expired

    async def start(self) -> None:
        """Start the periodic sweep loop on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("ledger event=sweep_started interval_s=%s", self.sweep_interval_s)

    async def stop(self) -> None:
        """Cancel the sweep loop and every pending watchdog."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for handle in self._watchdogs.values():
            handle.cancel()
        self._watchdogs.clear()
        logger.info("ledger event=sweep_stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            self.sweep()

    def _schedule_watchdog(self, task_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Created outside an event loop (sync callers, tests); the sweep still times it out.
            logger.debug("ledger event=watchdog_skipped task_id=%s reason=no_event_loop", task_id)
            return
        self._watchdogs[task_id] = loop.call_later(self.task_timeout_s, self.mark_timeout, task_id)

    def _cancel_watchdog(self, task_id: str) -> None:
        handle = self._watchdogs.pop(task_id, None)
        if handle is not None:
            handle.cancel()
