from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from orchestrator_api.agents import AgentBackendFactory
from orchestrator_api.config import Settings
from orchestrator_api.gateway import BroadcastGateway
from orchestrator_api.memory import MemoryContext, MemoryManager, MemoryStep
from orchestrator_api.sandbox import CommandResult, SandboxHandle, SandboxManager, SandboxProvisionError
from orchestrator_api.schemas import (
    AgentLog,
    AgentRead,
    ExecutionPhase,
    ExecutionRead,
    MemoryState,
    ProjectRead,
    TaskRead,
    TaskStatus,
)
from orchestrator_api.security import redact_sensitive_text
from orchestrator_api.state_machine import ExecutionStateMachine
from orchestrator_api.store import InMemoryStore

logger = logging.getLogger(__name__)

LOG_OUTPUT_CHARS = 2000


class RunnerFault(Exception):
    pass


@dataclass
class Execution:
    execution_id: str
    task_id: str
    project_id: str
    owner_id: str
    agent_ids: list[str]
    started_at: str
    phase: ExecutionPhase = ExecutionPhase.ACCEPTED
    acting_agent_id: str = ""
    acting_agent_name: str = ""
    thread: threading.Thread | None = field(default=None, compare=False, repr=False)

    def to_read(self) -> ExecutionRead:
        return ExecutionRead(
            execution_id=self.execution_id,
            task_id=self.task_id,
            project_id=self.project_id,
            agent_ids=list(self.agent_ids),
            started_at=self.started_at,
            phase=self.phase,
        )


class ExecutionRunner:
    """Drives accepted executions to a terminal status, one daemon thread each.

    The registry of live executions is guarded by the state machine's lock.
    Whatever happens inside an execution, its sandbox is destroyed and the
    task ends COMPLETED or FAILED.
    """

    def __init__(
        self,
        *,
        store: InMemoryStore,
        state_machine: ExecutionStateMachine,
        gateway: BroadcastGateway,
        memory: MemoryManager,
        sandboxes: SandboxManager,
        backend_factory: AgentBackendFactory,
        settings: Settings,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._gateway = gateway
        self._memory = memory
        self._sandboxes = sandboxes
        self._backend_factory = backend_factory
        self._settings = settings
        self._executions: dict[str, Execution] = {}
        self._shutdown = threading.Event()

    def submit(self, execution_id: str, task: TaskRead, agents: list[AgentRead]) -> Execution:
        if self._shutdown.is_set():
            raise RunnerFault("runner is shutting down")
        if not agents:
            raise RunnerFault(f"execution {execution_id} has no agents")
        project = self._store.get_project_for_task(task.id)
        execution = Execution(
            execution_id=execution_id,
            task_id=task.id,
            project_id=project.id,
            owner_id=project.owner_id,
            agent_ids=[agent.id for agent in agents],
            started_at=_utc_now(),
            acting_agent_id=agents[0].id,
            acting_agent_name=agents[0].name,
        )
        thread = threading.Thread(
            target=self._run,
            args=(execution, task, agents, project),
            name=f"execution-{execution_id}",
            daemon=True,
        )
        execution.thread = thread
        with self._state_machine.lock:
            if execution_id in self._executions:
                raise RunnerFault(f"execution {execution_id} is already registered")
            self._executions[execution_id] = execution
        thread.start()
        return execution

    def list_executions(self, *, owner_id: str | None = None) -> list[ExecutionRead]:
        with self._state_machine.lock:
            executions = list(self._executions.values())
        return [
            execution.to_read()
            for execution in executions
            if owner_id is None or execution.owner_id == owner_id
        ]

    def active_count(self) -> int:
        with self._state_machine.lock:
            return len(self._executions)

    def wait_idle(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        for thread in self._threads():
            thread.join(max(deadline - time.monotonic(), 0.0))
        return self.active_count() == 0

    def shutdown(self, timeout: float = 10.0) -> None:
        self._shutdown.set()
        if not self.wait_idle(timeout):
            logger.warning("%d execution(s) still running at shutdown", self.active_count())
        leftover = self._sandboxes.destroy_all()
        if leftover:
            logger.warning("destroyed %d sandbox(es) left behind at shutdown", leftover)

    def _threads(self) -> list[threading.Thread]:
        with self._state_machine.lock:
            return [execution.thread for execution in self._executions.values() if execution.thread is not None]

    def _run(self, execution: Execution, task: TaskRead, agents: list[AgentRead], project: ProjectRead) -> None:
        outcome = TaskStatus.FAILED
        try:
            outcome = self._execute(execution, task, agents, project)
        except SandboxProvisionError as exc:
            logger.error("sandbox provisioning failed for %s: %s", execution.execution_id, exc)
            self._log(execution, f"[Error] Sandbox provisioning failed: {exc}")
        except RunnerFault as exc:
            logger.warning("execution %s stopped: %s", execution.execution_id, exc)
            self._log(execution, f"[Error] {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("execution %s crashed", execution.execution_id)
            self._log(execution, f"[Error] Execution failed: {exc}")
        finally:
            self._finalize(execution, outcome)

    def _execute(
        self,
        execution: Execution,
        task: TaskRead,
        agents: list[AgentRead],
        project: ProjectRead,
    ) -> TaskStatus:
        deadline = time.monotonic() + self._settings.max_run_seconds
        names = ", ".join(agent.name for agent in agents)
        self._log(execution, f'[Orchestrator] Accepted task "{task.title}" for {names}')

        self._set_phase(execution, ExecutionPhase.PROVISIONING)
        self._log(execution, "[Sandbox] Provisioning environment...")
        completed = False
        ready = False
        try:
            with self._sandboxes.session(execution.execution_id, repository_url=project.repository_url) as sandbox:
                ready = True
                self._log(execution, f"[Sandbox] Environment ready ({sandbox.short_id})")
                self._set_phase(execution, ExecutionPhase.RUNNING)
                for agent in agents:
                    execution.acting_agent_id = agent.id
                    execution.acting_agent_name = agent.name
                    if not self._run_agent(execution, task, agent, sandbox, deadline):
                        break
                else:
                    completed = True
        finally:
            if ready:
                self._log(execution, "[Sandbox] Environment destroyed")
        return TaskStatus.COMPLETED if completed else TaskStatus.FAILED

    def _run_agent(
        self,
        execution: Execution,
        task: TaskRead,
        agent: AgentRead,
        sandbox: SandboxHandle,
        deadline: float,
    ) -> bool:
        """Run one agent's step loop; True when the agent reports the task done."""
        context, state = self._memory.load(agent.id, task.id, _global_goal(task))
        self._log(execution, _memory_state_message(state, context))
        backend = self._backend_factory()
        max_steps = self._settings.max_steps

        for step in range(1, max_steps + 1):
            self._check_budget(deadline)
            decision = backend.decide(agent, task, context.render())
            self._log(execution, f"[Thought] {decision.thought}")
            if decision.finished or not decision.command_line:
                self._log(execution, f"[Agent] {agent.name} reports the task as done")
                return True

            command_line = decision.command_line
            self._log(execution, f"[Command] {command_line}")
            result = self._sandboxes.execute(
                sandbox,
                command_line,
                timeout=self._settings.command_timeout_seconds,
            )
            summary = _summarize_result(result)
            self._log(execution, f"[Result]\n{_truncate(summary, LOG_OUTPUT_CHARS)}")

            omitted_before = context.omitted_steps
            context = self._memory.append(agent.id, task.id, MemoryStep.record(command_line, summary))
            if context.omitted_steps > omitted_before:
                self._log(
                    execution,
                    f"[Memory] Context compressed: kept {len(context.steps)} of {context.total_original_steps} steps",
                )
            logger.debug("%s step %d/%d done for agent %s", execution.execution_id, step, max_steps, agent.id)

            if self._settings.step_delay_seconds > 0:
                self._shutdown.wait(self._settings.step_delay_seconds)

        self._log(execution, f"[Orchestrator] {agent.name} used all {max_steps} steps without finishing")
        return False

    def _check_budget(self, deadline: float) -> None:
        if self._shutdown.is_set():
            raise RunnerFault("Execution interrupted: the service is shutting down")
        if time.monotonic() > deadline:
            raise RunnerFault(
                f"Execution exceeded its time budget of {self._settings.max_run_seconds:g}s"
            )

    def _finalize(self, execution: Execution, outcome: TaskStatus) -> None:
        self._set_phase(execution, ExecutionPhase.FINALIZING)
        try:
            self._state_machine.finish(
                execution.task_id,
                outcome,
                agent_id=execution.acting_agent_id,
                agent_name=execution.acting_agent_name,
                execution_id=execution.execution_id,
            )
        except Exception:  # noqa: BLE001
            logger.exception("could not record %s for task %s", outcome.value, execution.task_id)
            self._force_fail(execution)
        finally:
            self._set_phase(execution, ExecutionPhase.FINISHED)
            with self._state_machine.lock:
                self._executions.pop(execution.execution_id, None)
        logger.info("execution %s finished with %s", execution.execution_id, outcome.value)

    def _force_fail(self, execution: Execution) -> None:
        try:
            self._state_machine.force_fail(execution.task_id, execution_id=execution.execution_id)
        except Exception:  # noqa: BLE001
            logger.exception("task %s could not be marked FAILED", execution.task_id)

    def _set_phase(self, execution: Execution, phase: ExecutionPhase) -> None:
        with self._state_machine.lock:
            execution.phase = phase

    def _log(self, execution: Execution, message: str) -> None:
        self._gateway.emit_model(
            execution.project_id,
            "agentLog",
            AgentLog(
                message=redact_sensitive_text(message) or "",
                agent_id=execution.acting_agent_id,
                agent_name=execution.acting_agent_name,
                timestamp=_utc_now(),
            ),
        )


def _global_goal(task: TaskRead) -> str:
    if task.description.strip():
        return f"{task.title}: {task.description.strip()}"
    return task.title


def _memory_state_message(state: MemoryState, context: MemoryContext) -> str:
    if state == MemoryState.FRESH:
        return "[Memory] Starting with fresh memory"
    if state == MemoryState.COMPRESSED:
        return (
            f"[Memory] Resuming from compressed memory "
            f"({len(context.steps)} of {context.total_original_steps} steps kept)"
        )
    return f"[Memory] Resuming from {context.total_original_steps} previous step(s)"


def _summarize_result(result: CommandResult) -> str:
    output = result.output
    if result.timed_out:
        return f"{output}\n(timed out)".strip()
    if not result.ok:
        return f"{output}\n(exit code {result.exit_code})".strip()
    return output


def _truncate(text: str, limit: int) -> str:
    if not text:
        return "(empty output)"
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (output truncated)"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
