from __future__ import annotations

import logging
import secrets
import string
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

from orchestrator_api.runner import ExecutionRunner
from orchestrator_api.state_machine import ExecutionStateMachine
from orchestrator_api.store import AuthError, BadRequestError, ConflictError, InMemoryStore, NotFoundError

logger = logging.getLogger(__name__)

_EXECUTION_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class RunAcceptance:
    task_id: str
    execution_id: str
    message: str


class RunGatekeeper:
    """Accepts or refuses a request to run a task.

    Refusals are raised as the store's error types. On acceptance the task is
    already IN_PROGRESS and the execution has been handed to the runner.
    """

    def __init__(self, store: InMemoryStore, state_machine: ExecutionStateMachine, runner: ExecutionRunner) -> None:
        self._store = store
        self._state_machine = state_machine
        self._runner = runner
        self._issued: set[str] = set()
        self._issued_lock = threading.Lock()

    def request_run(self, task_id: str, *, user_id: str) -> RunAcceptance:
        task_id = parse_task_id(task_id)
        task = self._store.get_owned_task(task_id, owner_id=user_id)
        if not task.assignee_ids:
            raise BadRequestError(f"task {task_id} has no assignees")
        agents = [self._store.get_agent(agent_id) for agent_id in task.assignee_ids]
        primary = agents[0]

        self._state_machine.begin(
            task_id,
            agent_id=primary.id,
            agent_name=primary.name,
            expected_assignees=tuple(task.assignee_ids),
        )
        execution_id = self.new_execution_id()
        try:
            self._runner.submit(execution_id, task, agents)
        except Exception:
            logger.exception("could not start execution %s for task %s", execution_id, task_id)
            self._state_machine.force_fail(task_id, execution_id=execution_id)
            raise
        logger.info("accepted task %s as %s (%d agent(s))", task_id, execution_id, len(agents))
        return RunAcceptance(
            task_id=task_id,
            execution_id=execution_id,
            message=f"Task {task_id} accepted for execution",
        )

    def handle_task_created(self, payload: dict[str, Any]) -> None:
        task_id = str(payload.get("task_id", ""))
        owner_id = str(payload.get("owner_id", ""))
        try:
            acceptance = self.request_run(task_id, user_id=owner_id)
        except (AuthError, BadRequestError, ConflictError, NotFoundError) as exc:
            logger.info("task %s was not auto-started: %s", task_id, exc)
            return
        logger.info("auto-started task %s as %s", task_id, acceptance.execution_id)

    def new_execution_id(self) -> str:
        with self._issued_lock:
            while True:
                suffix = "".join(secrets.choice(_EXECUTION_SUFFIX_ALPHABET) for _ in range(8))
                execution_id = f"exec_{int(time.time() * 1000)}_{suffix}"
                if execution_id not in self._issued:
                    self._issued.add(execution_id)
                    return execution_id


def parse_task_id(raw: str) -> str:
    try:
        return str(uuid.UUID(str(raw).strip()))
    except ValueError as exc:
        raise BadRequestError(f"invalid task id '{raw}'") from exc
