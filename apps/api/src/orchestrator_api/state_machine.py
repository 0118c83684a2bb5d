from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from orchestrator_api.events import TASK_FINISHED, MessageBus
from orchestrator_api.gateway import BroadcastGateway
from orchestrator_api.schemas import TERMINAL_TASK_STATUSES, AgentLog, TaskRead, TaskStatus, TaskStatusUpdate
from orchestrator_api.store import BadRequestError, ConflictError, InMemoryStore

logger = logging.getLogger(__name__)

SYSTEM_AGENT_ID = "system"
SYSTEM_AGENT_NAME = "System"


class ExecutionStateMachine:
    """Owns every status change the orchestrator makes to a task.

    PENDING -> IN_PROGRESS -> COMPLETED | FAILED. Each transition is a
    compare-and-set under ``lock`` and is announced to the project room
    while the lock is held, so observers see transitions in order.
    """

    def __init__(self, store: InMemoryStore, gateway: BroadcastGateway, bus: MessageBus) -> None:
        self._store = store
        self._gateway = gateway
        self._bus = bus
        self.lock = threading.RLock()

    def begin(
        self,
        task_id: str,
        *,
        agent_id: str,
        agent_name: str,
        expected_assignees: tuple[str, ...] | None = None,
    ) -> TaskRead:
        with self.lock:
            swapped, previous = self._store.swap_task_status(
                task_id,
                expected=(TaskStatus.PENDING,),
                new=TaskStatus.IN_PROGRESS,
                expected_assignees=expected_assignees,
            )
            if not swapped:
                raise _refusal(task_id, previous)
            task = self._announce(task_id, TaskStatus.IN_PROGRESS, agent_id, agent_name)
        logger.info("task %s is now IN_PROGRESS", task_id)
        return task

    def finish(
        self,
        task_id: str,
        outcome: TaskStatus,
        *,
        agent_id: str,
        agent_name: str,
        execution_id: str | None = None,
    ) -> bool:
        """Move a running task to ``outcome``.

        Returns False when the task was not IN_PROGRESS; a task leaves a
        terminal state only through ``reset``.
        """
        if outcome not in TERMINAL_TASK_STATUSES:
            raise ValueError(f"{outcome.value} is not a terminal status")
        with self.lock:
            swapped, previous = self._store.swap_task_status(
                task_id,
                expected=(TaskStatus.IN_PROGRESS,),
                new=outcome,
            )
            if not swapped:
                logger.warning(
                    "ignored %s for task %s: status is %s",
                    outcome.value,
                    task_id,
                    previous.value,
                )
                return False
            task = self._announce(task_id, outcome, agent_id, agent_name)
        logger.info("task %s finished with %s", task_id, outcome.value)
        self._bus.publish(
            TASK_FINISHED,
            {
                "task_id": task_id,
                "project_id": task.project_id,
                "status": outcome.value,
                "execution_id": execution_id,
            },
        )
        return True

    def force_fail(self, task_id: str, *, execution_id: str | None = None) -> bool:
        return self.finish(
            task_id,
            TaskStatus.FAILED,
            agent_id=SYSTEM_AGENT_ID,
            agent_name=SYSTEM_AGENT_NAME,
            execution_id=execution_id,
        )

    def reset(self, task_id: str) -> TaskRead:
        with self.lock:
            swapped, previous = self._store.swap_task_status(
                task_id,
                expected=TERMINAL_TASK_STATUSES,
                new=TaskStatus.PENDING,
            )
            if not swapped:
                if previous == TaskStatus.IN_PROGRESS:
                    raise ConflictError(f"task {task_id} is running and cannot be reset")
                return self._store.get_task(task_id)
            task = self._announce(task_id, TaskStatus.PENDING, SYSTEM_AGENT_ID, SYSTEM_AGENT_NAME)
        logger.info("task %s reset from %s", task_id, previous.value)
        return task

    def _announce(self, task_id: str, status: TaskStatus, agent_id: str, agent_name: str) -> TaskRead:
        task = self._store.get_task(task_id)
        self._gateway.emit_model(
            task.project_id,
            "taskStatusUpdate",
            TaskStatusUpdate(task_id=task_id, new_status=status, agent_id=agent_id, agent_name=agent_name),
        )
        self._gateway.emit_model(
            task.project_id,
            "agentLog",
            AgentLog(
                message=f"[Status] Task status changed to {status.value}",
                agent_id=agent_id,
                agent_name=agent_name,
                timestamp=datetime.now(timezone.utc).isoformat(),
            ),
        )
        return task


def _refusal(task_id: str, status: TaskStatus) -> Exception:
    if status == TaskStatus.IN_PROGRESS:
        return ConflictError(f"task {task_id} is already running")
    if status == TaskStatus.COMPLETED:
        return BadRequestError(f"task {task_id} is already completed")
    if status == TaskStatus.FAILED:
        return BadRequestError(f"task {task_id} has failed; reset it before running again")
    return BadRequestError(f"task {task_id} cannot start from {status.value}")
