from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from orchestrator_api.schemas import (
    AgentCreate,
    AgentRead,
    AuthToken,
    ProjectCreate,
    ProjectRead,
    TaskCreate,
    TaskRead,
    TaskStatus,
    TaskUpdate,
)

_PASSWORD_ITERATIONS = 120_000


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class BadRequestError(Exception):
    pass


class AuthError(Exception):
    pass


@dataclass
class _UserRecord:
    id: str
    email: str
    password_salt: str
    password_hash: str
    created_at: str


@dataclass
class _ProjectRecord:
    id: str
    name: str
    description: str
    repository_url: str | None
    owner_id: str
    created_at: str


@dataclass
class _AgentRecord:
    id: str
    name: str
    role: str
    system_prompt: str
    owner_id: str
    created_at: str


@dataclass
class _TaskRecord:
    id: str
    project_id: str
    title: str
    description: str
    created_at: str
    updated_at: str
    assignee_ids: list[str] = field(default_factory=list)
    status: str = TaskStatus.PENDING.value


class InMemoryStore:
    """Resource layer: users, projects, agents and tasks.

    Every public method takes the store lock, so callers on runner threads
    and request threads see consistent records. Task status is written here
    but decided by the execution state machine.
    """

    def __init__(self, state_file: str | None = None) -> None:
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._lock = threading.RLock()
        self._users: dict[str, _UserRecord] = {}
        self._tokens: dict[str, str] = {}
        self._projects: dict[str, _ProjectRecord] = {}
        self._agents: dict[str, _AgentRecord] = {}
        self._tasks: dict[str, _TaskRecord] = {}
        self._load_state()

    def create_user(self, email: str, password: str) -> AuthToken:
        with self._lock:
            normalized = email.strip().lower()
            if any(record.email == normalized for record in self._users.values()):
                raise ConflictError(f"user '{normalized}' already exists")

            salt = secrets.token_hex(16)
            record = _UserRecord(
                id=self._new_id(),
                email=normalized,
                password_salt=salt,
                password_hash=self._hash_password(password, salt),
                created_at=self._utc_now(),
            )
            self._users[record.id] = record
            token = self._issue_token(record.id)
            self._persist_state()
            return AuthToken(user_id=record.id, email=record.email, access_token=token)

    def login(self, email: str, password: str) -> AuthToken:
        with self._lock:
            normalized = email.strip().lower()
            record = next((user for user in self._users.values() if user.email == normalized), None)
            if record is None:
                raise AuthError("invalid credentials")
            expected = self._hash_password(password, record.password_salt)
            if not hmac.compare_digest(expected, record.password_hash):
                raise AuthError("invalid credentials")
            token = self._issue_token(record.id)
            self._persist_state()
            return AuthToken(user_id=record.id, email=record.email, access_token=token)

    def resolve_token(self, token: str) -> str:
        with self._lock:
            user_id = self._tokens.get(token)
            if user_id is None or user_id not in self._users:
                raise AuthError("invalid credentials")
            return user_id

    def create_project(self, project: ProjectCreate, *, owner_id: str) -> ProjectRead:
        with self._lock:
            record = _ProjectRecord(
                id=self._new_id(),
                name=project.name,
                description=project.description,
                repository_url=project.repository_url,
                owner_id=owner_id,
                created_at=self._utc_now(),
            )
            self._projects[record.id] = record
            self._persist_state()
            return self._to_project_read(record)

    def list_projects(self, *, owner_id: str, limit: int = 100, offset: int = 0) -> list[ProjectRead]:
        with self._lock:
            records = [record for record in self._projects.values() if record.owner_id == owner_id]
            return [self._to_project_read(record) for record in _page(records, limit=limit, offset=offset)]

    def get_project(self, project_id: str, *, owner_id: str) -> ProjectRead:
        with self._lock:
            return self._to_project_read(self._owned_project(project_id, owner_id))

    def update_project(self, project_id: str, project: ProjectCreate, *, owner_id: str) -> ProjectRead:
        with self._lock:
            record = self._owned_project(project_id, owner_id)
            record.name = project.name
            record.description = project.description
            record.repository_url = project.repository_url
            self._persist_state()
            return self._to_project_read(record)

    def delete_project(self, project_id: str, *, owner_id: str) -> list[str]:
        """Delete a project with its tasks and return the removed task ids."""
        with self._lock:
            self._owned_project(project_id, owner_id)
            task_ids = [task.id for task in self._tasks.values() if task.project_id == project_id]
            for task_id in task_ids:
                if self._tasks[task_id].status == TaskStatus.IN_PROGRESS.value:
                    raise ConflictError(f"project {project_id} has a running task {task_id}")
            for task_id in task_ids:
                del self._tasks[task_id]
            del self._projects[project_id]
            self._persist_state()
            return task_ids

    def create_agent(self, agent: AgentCreate, *, owner_id: str) -> AgentRead:
        with self._lock:
            record = _AgentRecord(
                id=self._new_id(),
                name=agent.name,
                role=agent.role,
                system_prompt=agent.system_prompt,
                owner_id=owner_id,
                created_at=self._utc_now(),
            )
            self._agents[record.id] = record
            self._persist_state()
            return self._to_agent_read(record)

    def list_agents(self, *, owner_id: str, limit: int = 100, offset: int = 0) -> list[AgentRead]:
        with self._lock:
            records = [record for record in self._agents.values() if record.owner_id == owner_id]
            return [self._to_agent_read(record) for record in _page(records, limit=limit, offset=offset)]

    def get_agent(self, agent_id: str, *, owner_id: str | None = None) -> AgentRead:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None or (owner_id is not None and record.owner_id != owner_id):
                raise NotFoundError(f"agent {agent_id} not found")
            return self._to_agent_read(record)

    def update_agent(self, agent_id: str, agent: AgentCreate, *, owner_id: str) -> AgentRead:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None or record.owner_id != owner_id:
                raise NotFoundError(f"agent {agent_id} not found")
            record.name = agent.name
            record.role = agent.role
            record.system_prompt = agent.system_prompt
            self._persist_state()
            return self._to_agent_read(record)

    def delete_agent(self, agent_id: str, *, owner_id: str) -> None:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None or record.owner_id != owner_id:
                raise NotFoundError(f"agent {agent_id} not found")
            for task in self._tasks.values():
                if agent_id in task.assignee_ids and task.status == TaskStatus.IN_PROGRESS.value:
                    raise ConflictError(f"agent {agent_id} is executing task {task.id}")
            for task in self._tasks.values():
                if agent_id in task.assignee_ids:
                    task.assignee_ids = [item for item in task.assignee_ids if item != agent_id]
            del self._agents[agent_id]
            self._persist_state()

    def create_task(self, project_id: str, task: TaskCreate, *, owner_id: str) -> TaskRead:
        with self._lock:
            self._owned_project(project_id, owner_id)
            self._validate_assignees(task.assignee_ids, owner_id)
            now = self._utc_now()
            record = _TaskRecord(
                id=self._new_id(),
                project_id=project_id,
                title=task.title,
                description=task.description,
                created_at=now,
                updated_at=now,
                assignee_ids=list(task.assignee_ids),
            )
            self._tasks[record.id] = record
            self._persist_state()
            return self._to_task_read(record)

    def list_tasks(
        self,
        project_id: str,
        *,
        owner_id: str,
        status: TaskStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TaskRead]:
        with self._lock:
            self._owned_project(project_id, owner_id)
            records = [
                record
                for record in self._tasks.values()
                if record.project_id == project_id and (status is None or record.status == status.value)
            ]
            return [self._to_task_read(record) for record in _page(records, limit=limit, offset=offset)]

    def get_task(self, task_id: str) -> TaskRead:
        with self._lock:
            record = self._tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            return self._to_task_read(record)

    def get_owned_task(self, task_id: str, *, owner_id: str) -> TaskRead:
        """Return the task only when its project belongs to ``owner_id``.

        A task owned by someone else is reported exactly like a missing one.
        """
        with self._lock:
            record = self._tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            project = self._projects.get(record.project_id)
            if project is None or project.owner_id != owner_id:
                raise NotFoundError(f"task {task_id} not found")
            return self._to_task_read(record)

    def update_task(self, task_id: str, update: TaskUpdate, *, owner_id: str) -> TaskRead:
        with self._lock:
            self.get_owned_task(task_id, owner_id=owner_id)
            record = self._tasks[task_id]
            if record.status == TaskStatus.IN_PROGRESS.value:
                raise ConflictError(f"task {task_id} is running and cannot be edited")
            if update.assignee_ids is not None:
                self._validate_assignees(update.assignee_ids, owner_id)
                record.assignee_ids = list(update.assignee_ids)
            if update.title is not None:
                record.title = update.title
            if update.description is not None:
                record.description = update.description
            record.updated_at = self._utc_now()
            self._persist_state()
            return self._to_task_read(record)

    def delete_task(self, task_id: str, *, owner_id: str) -> None:
        with self._lock:
            self.get_owned_task(task_id, owner_id=owner_id)
            if self._tasks[task_id].status == TaskStatus.IN_PROGRESS.value:
                raise ConflictError(f"task {task_id} is running and cannot be deleted")
            del self._tasks[task_id]
            self._persist_state()

    def get_project_for_task(self, task_id: str) -> ProjectRead:
        with self._lock:
            record = self._tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            project = self._projects.get(record.project_id)
            if project is None:
                raise NotFoundError(f"project {record.project_id} not found")
            return self._to_project_read(project)

    def swap_task_status(
        self,
        task_id: str,
        *,
        expected: tuple[TaskStatus, ...],
        new: TaskStatus,
        expected_assignees: tuple[str, ...] | None = None,
    ) -> tuple[bool, TaskStatus]:
        """Set ``new`` only if the current status is one of ``expected``.

        Returns whether the swap happened together with the status observed
        before it. With ``expected_assignees`` the swap also requires the
        task's assignees to be unchanged, otherwise ConflictError is raised.
        """
        with self._lock:
            record = self._tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            current = TaskStatus(record.status)
            if current not in expected:
                return False, current
            if expected_assignees is not None and tuple(record.assignee_ids) != expected_assignees:
                raise ConflictError(f"task {task_id} assignees changed while starting; try again")
            record.status = new.value
            record.updated_at = self._utc_now()
            self._persist_state()
            return True, current

    def _validate_assignees(self, assignee_ids: list[str], owner_id: str) -> None:
        for agent_id in assignee_ids:
            agent = self._agents.get(agent_id)
            if agent is None or agent.owner_id != owner_id:
                raise NotFoundError(f"agent {agent_id} not found")

    def _owned_project(self, project_id: str, owner_id: str) -> _ProjectRecord:
        record = self._projects.get(project_id)
        if record is None or record.owner_id != owner_id:
            raise NotFoundError(f"project {project_id} not found")
        return record

    def _issue_token(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self._tokens[token] = user_id
        return token

    @staticmethod
    def _hash_password(password: str, salt: str) -> str:
        digest = hashlib.pbkdf2_hmac(
            "sha256",
            password.encode("utf-8"),
            bytes.fromhex(salt),
            _PASSWORD_ITERATIONS,
        )
        return digest.hex()

    def _persist_state(self) -> None:
        if self._state_file is None:
            return

        snapshot = self._snapshot()
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._state_file.with_name(f"{self._state_file.name}.tmp")
        tmp_file.write_text(json.dumps(snapshot, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        tmp_file.replace(self._state_file)

    def _load_state(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return

        raw = self._state_file.read_text(encoding="utf-8")
        data = json.loads(raw)
        self._users = {key: _UserRecord(**value) for key, value in data.get("users", {}).items()}
        self._tokens = {str(key): str(value) for key, value in data.get("tokens", {}).items()}
        self._projects = {key: _ProjectRecord(**value) for key, value in data.get("projects", {}).items()}
        self._agents = {key: _AgentRecord(**value) for key, value in data.get("agents", {}).items()}
        self._tasks = {key: _TaskRecord(**value) for key, value in data.get("tasks", {}).items()}

        # An execution never survives a restart.
        interrupted = False
        for record in self._tasks.values():
            if record.status == TaskStatus.IN_PROGRESS.value:
                record.status = TaskStatus.FAILED.value
                record.updated_at = self._utc_now()
                interrupted = True
        if interrupted:
            self._persist_state()

    def _snapshot(self) -> dict[str, Any]:
        return {
            "users": {key: value.__dict__ for key, value in self._users.items()},
            "tokens": dict(self._tokens),
            "projects": {key: value.__dict__ for key, value in self._projects.items()},
            "agents": {key: value.__dict__ for key, value in self._agents.items()},
            "tasks": {key: value.__dict__ for key, value in self._tasks.items()},
        }

    @staticmethod
    def _to_project_read(record: _ProjectRecord) -> ProjectRead:
        return ProjectRead(
            id=record.id,
            name=record.name,
            description=record.description,
            repository_url=record.repository_url,
            owner_id=record.owner_id,
            created_at=record.created_at,
        )

    @staticmethod
    def _to_agent_read(record: _AgentRecord) -> AgentRead:
        return AgentRead(
            id=record.id,
            name=record.name,
            role=record.role,
            system_prompt=record.system_prompt,
            owner_id=record.owner_id,
            created_at=record.created_at,
        )

    @staticmethod
    def _to_task_read(record: _TaskRecord) -> TaskRead:
        return TaskRead(
            id=record.id,
            project_id=record.project_id,
            title=record.title,
            description=record.description,
            status=record.status,
            assignee_ids=list(record.assignee_ids),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _utc_now() -> str:
        return datetime.now(timezone.utc).isoformat()


def _page(records: list[Any], *, limit: int, offset: int) -> list[Any]:
    if limit <= 0:
        return []
    start = max(offset, 0)
    return records[start : start + limit]
