from __future__ import annotations

import os
from dataclasses import dataclass


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _env_or_default(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = _env_or_default(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


@dataclass(frozen=True)
class Settings:
    state_file: str | None = None
    cors_allow_origins: tuple[str, ...] = ("null",)
    cors_allow_origin_regex: str = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
    log_level: str = "INFO"

    sandbox_backend: str = "mock"
    sandbox_image: str = "alpine/git:latest"
    sandbox_workdir: str = "/workspace/project"
    sandbox_network: str = "bridge"
    sandbox_memory: str = "2g"
    sandbox_cpus: str = "2.0"
    sandbox_pids_limit: str = "256"
    sandbox_drop_caps: bool = False
    command_timeout_seconds: int = 120

    agent_backend: str = "mock"
    llm_url: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_api_key: str | None = None

    max_steps: int = 10
    max_run_seconds: float = 600.0
    step_delay_seconds: float = 0.0

    memory_token_budget: int = 4000
    memory_keep_first: int = 3
    memory_keep_last: int = 3

    auto_run_on_create: bool = False


def load_settings() -> Settings:
    return Settings(
        state_file=os.getenv("API_STATE_FILE") or None,
        cors_allow_origins=tuple(_parse_csv_env("API_CORS_ALLOW_ORIGINS", default="null")),
        cors_allow_origin_regex=_env_or_default(
            "API_CORS_ALLOW_ORIGIN_REGEX",
            r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        ),
        log_level=_env_or_default("ORCHESTRATOR_LOG_LEVEL", "INFO").upper(),
        sandbox_backend=_env_or_default("ORCHESTRATOR_SANDBOX_BACKEND", "mock").lower(),
        sandbox_image=_env_or_default("ORCHESTRATOR_SANDBOX_IMAGE", "alpine/git:latest"),
        sandbox_workdir=_env_or_default("ORCHESTRATOR_SANDBOX_WORKDIR", "/workspace/project"),
        sandbox_network=_env_or_default("ORCHESTRATOR_SANDBOX_NETWORK", "bridge"),
        sandbox_memory=_env_or_default("ORCHESTRATOR_SANDBOX_MEMORY", "2g"),
        sandbox_cpus=_env_or_default("ORCHESTRATOR_SANDBOX_CPUS", "2.0"),
        sandbox_pids_limit=_env_or_default("ORCHESTRATOR_SANDBOX_PIDS_LIMIT", "256"),
        sandbox_drop_caps=_env_bool("ORCHESTRATOR_SANDBOX_DROP_CAPS", False),
        command_timeout_seconds=_env_int("ORCHESTRATOR_COMMAND_TIMEOUT_SECONDS", 120, minimum=1),
        agent_backend=_env_or_default("ORCHESTRATOR_AGENT_BACKEND", "mock").lower(),
        llm_url=os.getenv("ORCHESTRATOR_LLM_URL") or None,
        llm_model=_env_or_default("ORCHESTRATOR_LLM_MODEL", "gpt-4o-mini"),
        llm_api_key=os.getenv("ORCHESTRATOR_LLM_API_KEY") or None,
        max_steps=_env_int("ORCHESTRATOR_MAX_STEPS", 10, minimum=1),
        max_run_seconds=_env_float("ORCHESTRATOR_MAX_RUN_SECONDS", 600.0, minimum=1.0),
        step_delay_seconds=_env_float("ORCHESTRATOR_STEP_DELAY_SECONDS", 0.0),
        memory_token_budget=_env_int("ORCHESTRATOR_MEMORY_TOKEN_BUDGET", 4000, minimum=1),
        memory_keep_first=_env_int("ORCHESTRATOR_MEMORY_KEEP_FIRST", 3),
        memory_keep_last=_env_int("ORCHESTRATOR_MEMORY_KEEP_LAST", 3),
        auto_run_on_create=_env_bool("ORCHESTRATOR_AUTO_RUN_ON_CREATE", False),
    )
