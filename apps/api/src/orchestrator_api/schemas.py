from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


class ExecutionPhase(str, Enum):
    ACCEPTED = "accepted"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    FINALIZING = "finalizing"
    FINISHED = "finished"


class MemoryState(str, Enum):
    FRESH = "fresh"
    RESUMED = "resumed"
    COMPRESSED = "compressed"


class CamelModel(BaseModel):
    """Wire payloads shared with the web client use camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SignupRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8, max_length=256)

    @model_validator(mode="after")
    def normalize_email(self) -> "SignupRequest":
        self.email = self.email.strip().lower()
        if "@" not in self.email:
            raise ValueError("email must contain '@'")
        return self


class LoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class AuthToken(BaseModel):
    user_id: str
    email: str
    access_token: str
    token_type: str = "bearer"


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    repository_url: str | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def validate_repository_url(self) -> "ProjectCreate":
        self.name = self.name.strip()
        if not self.name:
            raise ValueError("name must not be blank")
        if self.repository_url is not None and not self.repository_url.startswith(
            ("http://", "https://", "git@", "ssh://")
        ):
            raise ValueError("repository_url must be an http(s), ssh or git@ url")
        return self


class ProjectUpdate(ProjectCreate):
    pass


class ProjectRead(BaseModel):
    id: str
    name: str
    description: str = ""
    repository_url: str | None = None
    owner_id: str
    created_at: str


class AgentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    role: str = Field(min_length=1, max_length=200)
    system_prompt: str = ""


class AgentUpdate(AgentCreate):
    pass


class AgentRead(BaseModel):
    id: str
    name: str
    role: str
    system_prompt: str = ""
    owner_id: str
    created_at: str


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    assignee_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_assignees(self) -> "TaskCreate":
        self.assignee_ids = _normalize_string_list(self.assignee_ids)
        return self


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    assignee_ids: list[str] | None = None

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskUpdate":
        if self.assignee_ids is not None:
            self.assignee_ids = _normalize_string_list(self.assignee_ids)
        return self


class TaskRead(BaseModel):
    id: str
    project_id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    assignee_ids: list[str] = Field(default_factory=list)
    created_at: str
    updated_at: str


class RunTaskResponse(CamelModel):
    message: str
    task_id: str
    execution_id: str
    status: str = "initiated"


class TaskStatusUpdate(CamelModel):
    task_id: str
    new_status: TaskStatus
    agent_id: str
    agent_name: str


class AgentLog(CamelModel):
    message: str
    agent_id: str
    agent_name: str
    timestamp: str


class ExecutionRead(CamelModel):
    execution_id: str
    task_id: str
    project_id: str
    agent_ids: list[str] = Field(default_factory=list)
    started_at: str
    phase: ExecutionPhase


class MemoryStepRead(BaseModel):
    timestamp: str
    action: str
    result: str
    token_count: int


class MemoryContextRead(BaseModel):
    agent_id: str
    task_id: str
    global_goal: str
    is_compressed: bool
    compression_ratio: float
    total_original_steps: int
    total_token_count: int
    steps: list[MemoryStepRead] = Field(default_factory=list)
    omitted_steps: int = 0
    rendered: str


class MemoryStatsRead(BaseModel):
    agent_id: str
    total_memories: int
    compressed_memories: int
    total_tokens: int
    avg_compression_ratio: float


class AgentDecision(BaseModel):
    thought: str
    command: str = ""
    args: list[str] = Field(default_factory=list)
    finished: bool = False

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args]).strip()


def _normalize_string_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in values:
        value = raw.strip()
        if not value or value in seen:
            continue
        normalized.append(value)
        seen.add(value)
    return normalized
