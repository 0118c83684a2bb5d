from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from orchestrator_api.agents import build_agent_backend_factory
from orchestrator_api.config import load_settings
from orchestrator_api.events import TASK_CREATED, TASK_FINISHED, MessageBus
from orchestrator_api.gatekeeper import RunGatekeeper, parse_task_id
from orchestrator_api.gateway import BroadcastGateway, serve_websocket
from orchestrator_api.memory import MemoryManager
from orchestrator_api.runner import ExecutionRunner, RunnerFault
from orchestrator_api.sandbox import build_sandbox_manager
from orchestrator_api.schemas import (
    AgentCreate,
    AgentRead,
    AgentUpdate,
    AuthToken,
    ExecutionRead,
    LoginRequest,
    MemoryContextRead,
    MemoryStatsRead,
    MemoryStepRead,
    ProjectCreate,
    ProjectRead,
    ProjectUpdate,
    RunTaskResponse,
    SignupRequest,
    TaskCreate,
    TaskRead,
    TaskStatus,
    TaskUpdate,
)
from orchestrator_api.security import parse_bearer_token
from orchestrator_api.state_machine import ExecutionStateMachine
from orchestrator_api.store import AuthError, BadRequestError, ConflictError, InMemoryStore, NotFoundError

logger = logging.getLogger(__name__)

settings = load_settings()


def _configure_logging(level: str) -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("orchestrator_api").setLevel(level)


_configure_logging(settings.log_level)

store = InMemoryStore(state_file=settings.state_file)
bus = MessageBus()
gateway = BroadcastGateway()
memory = MemoryManager(
    token_budget=settings.memory_token_budget,
    keep_first=settings.memory_keep_first,
    keep_last=settings.memory_keep_last,
)
sandboxes = build_sandbox_manager(settings)
state_machine = ExecutionStateMachine(store, gateway, bus)
runner = ExecutionRunner(
    store=store,
    state_machine=state_machine,
    gateway=gateway,
    memory=memory,
    sandboxes=sandboxes,
    backend_factory=build_agent_backend_factory(settings),
    settings=settings,
)
gatekeeper = RunGatekeeper(store, state_machine, runner)


def _log_task_finished(payload: dict[str, Any]) -> None:
    logger.info(
        "task %s finished with %s (execution %s)",
        payload.get("task_id"),
        payload.get("status"),
        payload.get("execution_id"),
    )


bus.subscribe(TASK_FINISHED, _log_task_finished)
if settings.auto_run_on_create:
    bus.subscribe(TASK_CREATED, gatekeeper.handle_task_created)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "orchestrator ready (sandbox=%s, agents=%s)",
        settings.sandbox_backend,
        settings.agent_backend,
    )
    yield
    await asyncio.to_thread(runner.shutdown, 10.0)


app = FastAPI(title="agent orchestrator api", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allow_origins),
    allow_origin_regex=settings.cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def current_user(authorization: str | None = Header(default=None)) -> str:
    token = parse_bearer_token(authorization)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail="missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return store.resolve_token(token)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}) from exc


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=AuthToken, status_code=201)
def signup(payload: SignupRequest) -> AuthToken:
    try:
        return store.create_user(payload.email, payload.password)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/auth/login", response_model=AuthToken)
def login(payload: LoginRequest) -> AuthToken:
    try:
        return store.login(payload.email, payload.password)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


@app.post("/projects", response_model=ProjectRead, status_code=201)
def create_project(payload: ProjectCreate, user_id: str = Depends(current_user)) -> ProjectRead:
    return store.create_project(payload, owner_id=user_id)


@app.get("/projects", response_model=list[ProjectRead])
def list_projects(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(current_user),
) -> list[ProjectRead]:
    return store.list_projects(owner_id=user_id, limit=limit, offset=offset)


@app.get("/projects/{project_id}", response_model=ProjectRead)
def get_project(project_id: str, user_id: str = Depends(current_user)) -> ProjectRead:
    try:
        return store.get_project(project_id, owner_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/projects/{project_id}", response_model=ProjectRead)
def update_project(project_id: str, payload: ProjectUpdate, user_id: str = Depends(current_user)) -> ProjectRead:
    try:
        return store.update_project(project_id, payload, owner_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/projects/{project_id}", status_code=204)
def delete_project(project_id: str, user_id: str = Depends(current_user)) -> None:
    try:
        task_ids = store.delete_project(project_id, owner_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    for task_id in task_ids:
        memory.clear_task(task_id)


@app.post("/agents", response_model=AgentRead, status_code=201)
def create_agent(payload: AgentCreate, user_id: str = Depends(current_user)) -> AgentRead:
    return store.create_agent(payload, owner_id=user_id)


@app.get("/agents", response_model=list[AgentRead])
def list_agents(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(current_user),
) -> list[AgentRead]:
    return store.list_agents(owner_id=user_id, limit=limit, offset=offset)


@app.get("/agents/{agent_id}", response_model=AgentRead)
def get_agent(agent_id: str, user_id: str = Depends(current_user)) -> AgentRead:
    try:
        return store.get_agent(agent_id, owner_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/agents/{agent_id}", response_model=AgentRead)
def update_agent(agent_id: str, payload: AgentUpdate, user_id: str = Depends(current_user)) -> AgentRead:
    try:
        return store.update_agent(agent_id, payload, owner_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/agents/{agent_id}", status_code=204)
def delete_agent(agent_id: str, user_id: str = Depends(current_user)) -> None:
    try:
        store.delete_agent(agent_id, owner_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/agents/{agent_id}/memory/stats", response_model=MemoryStatsRead)
def get_agent_memory_stats(agent_id: str, user_id: str = Depends(current_user)) -> MemoryStatsRead:
    try:
        store.get_agent(agent_id, owner_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return MemoryStatsRead(agent_id=agent_id, **memory.stats(agent_id))


@app.post("/projects/{project_id}/tasks", response_model=TaskRead, status_code=201)
def create_task(project_id: str, payload: TaskCreate, user_id: str = Depends(current_user)) -> TaskRead:
    try:
        task = store.create_task(project_id, payload, owner_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    bus.publish(TASK_CREATED, {"task_id": task.id, "project_id": project_id, "owner_id": user_id})
    return task


@app.get("/projects/{project_id}/tasks", response_model=list[TaskRead])
def list_tasks(
    project_id: str,
    status: TaskStatus | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(current_user),
) -> list[TaskRead]:
    try:
        return store.list_tasks(project_id, owner_id=user_id, status=status, limit=limit, offset=offset)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: str, user_id: str = Depends(current_user)) -> TaskRead:
    try:
        return store.get_owned_task(parse_task_id(task_id), owner_id=user_id)
    except BadRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/tasks/{task_id}", response_model=TaskRead)
def update_task(task_id: str, payload: TaskUpdate, user_id: str = Depends(current_user)) -> TaskRead:
    try:
        return store.update_task(parse_task_id(task_id), payload, owner_id=user_id)
    except BadRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.delete("/tasks/{task_id}", status_code=204)
def delete_task(task_id: str, user_id: str = Depends(current_user)) -> None:
    try:
        normalized = parse_task_id(task_id)
        store.delete_task(normalized, owner_id=user_id)
    except BadRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    memory.clear_task(normalized)


@app.post("/orchestrator/tasks/{task_id}/run", response_model=RunTaskResponse, status_code=201)
def run_task(task_id: str, user_id: str = Depends(current_user)) -> RunTaskResponse:
    try:
        acceptance = gatekeeper.request_run(task_id, user_id=user_id)
    except BadRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except RunnerFault as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return RunTaskResponse(
        message=acceptance.message,
        task_id=acceptance.task_id,
        execution_id=acceptance.execution_id,
    )


@app.post("/orchestrator/tasks/{task_id}/reset", response_model=TaskRead)
def reset_task(task_id: str, user_id: str = Depends(current_user)) -> TaskRead:
    try:
        task = store.get_owned_task(parse_task_id(task_id), owner_id=user_id)
        return state_machine.reset(task.id)
    except BadRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/orchestrator/executions", response_model=list[ExecutionRead])
def list_executions(user_id: str = Depends(current_user)) -> list[ExecutionRead]:
    return runner.list_executions(owner_id=user_id)


@app.get("/orchestrator/tasks/{task_id}/memory/{agent_id}", response_model=MemoryContextRead)
def get_task_memory(task_id: str, agent_id: str, user_id: str = Depends(current_user)) -> MemoryContextRead:
    try:
        task = store.get_owned_task(parse_task_id(task_id), owner_id=user_id)
        store.get_agent(agent_id, owner_id=user_id)
        context = memory.get_context(agent_id, task.id)
    except BadRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return MemoryContextRead(
        agent_id=agent_id,
        task_id=task.id,
        global_goal=context.global_goal,
        is_compressed=context.is_compressed,
        compression_ratio=context.compression_ratio,
        total_original_steps=context.total_original_steps,
        total_token_count=context.total_token_count,
        steps=[
            MemoryStepRead(
                timestamp=step.timestamp,
                action=step.action,
                result=step.result,
                token_count=step.token_count,
            )
            for step in context.steps
        ],
        omitted_steps=context.omitted_steps,
        rendered=context.render(),
    )


@app.websocket("/ws")
async def events_socket(websocket: WebSocket) -> None:
    await serve_websocket(websocket, gateway)
