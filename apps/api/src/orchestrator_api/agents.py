"""Decision backends: given an agent, its task and its memory, pick the next shell step."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from orchestrator_api.config import Settings
from orchestrator_api.schemas import AgentDecision, AgentRead, TaskRead
from orchestrator_api.security import redact_sensitive_text

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

RESPONSE_FORMAT = '{"thought": "your reasoning", "command": "program", "args": ["arg"], "finished": false}'
FIX_PROMPT = (
    "Your previous reply was not a valid decision. Reply with ONLY one JSON object in this format: "
    + RESPONSE_FORMAT
)


class AgentBackendError(Exception):
    pass


class AgentBackend(Protocol):
    def decide(self, agent: AgentRead, task: TaskRead, context: str) -> AgentDecision: ...


AgentBackendFactory = Callable[[], AgentBackend]


class ScriptedAgentBackend:
    """Deterministic backend that walks a fixed plan, one step per call."""

    def __init__(self, script: list[AgentDecision] | None = None) -> None:
        self._script = list(script) if script is not None else default_script()
        self._calls = 0

    def decide(self, agent: AgentRead, task: TaskRead, context: str) -> AgentDecision:
        index = self._calls
        self._calls += 1
        if index < len(self._script):
            return self._script[index]
        return AgentDecision(thought="Nothing left to do.", finished=True)


def default_script() -> list[AgentDecision]:
    return [
        AgentDecision(
            thought="First I need to see what is in the working directory.",
            command="ls",
            args=["-la", "."],
        ),
        AgentDecision(
            thought="The repository is here. Now I create the requested hello.txt file.",
            command="echo",
            args=["'Hello, World!'", ">", "hello.txt"],
        ),
        AgentDecision(
            thought="The file is written. I check that it holds the expected text.",
            command="cat",
            args=["hello.txt"],
        ),
        AgentDecision(
            thought="I created the file and verified its content. The task is done.",
            finished=True,
        ),
    ]


class HttpAgentBackend:
    """Asks an OpenAI-compatible chat completions endpoint for each decision."""

    def __init__(
        self,
        *,
        url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        max_attempts: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._url = url
        self._model = model
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._max_attempts = max_attempts

    def decide(self, agent: AgentRead, task: TaskRead, context: str) -> AgentDecision:
        messages = [
            {"role": "system", "content": build_system_prompt(agent)},
            {"role": "user", "content": build_step_prompt(task, context)},
        ]
        last_error = "no reply"
        for attempt in range(1, self._max_attempts + 1):
            content = self._complete(messages)
            try:
                return parse_decision(content)
            except AgentBackendError as exc:
                last_error = str(exc)
                logger.warning("attempt %d: unusable reply from %s: %s", attempt, self._model, exc)
                messages.append({"role": "assistant", "content": content})
                messages.append({"role": "user", "content": FIX_PROMPT})
        raise AgentBackendError(f"no valid decision after {self._max_attempts} attempts: {last_error}")

    def _complete(self, messages: list[dict[str, str]]) -> str:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            response = httpx.post(
                self._url,
                json={"model": self._model, "messages": messages, "temperature": 0.2},
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AgentBackendError(f"llm request failed: {redact_sensitive_text(str(exc))}") from exc
        try:
            return str(data["choices"][0]["message"]["content"])
        except (KeyError, IndexError, TypeError) as exc:
            raise AgentBackendError("llm reply has no message content") from exc


def parse_decision(content: str) -> AgentDecision:
    match = _JSON_OBJECT_RE.search(content or "")
    if match is None:
        raise AgentBackendError("reply contains no JSON object")
    try:
        payload = json.loads(match.group(0))
    except ValueError as exc:
        raise AgentBackendError(f"reply is not valid JSON: {exc}") from exc
    try:
        decision = AgentDecision.model_validate(payload)
    except PydanticValidationError as exc:
        raise AgentBackendError(f"reply does not match the decision format: {exc.error_count()} error(s)") from exc
    if not decision.finished and not decision.command.strip():
        raise AgentBackendError("reply has neither a command nor finished=true")
    return decision


def build_system_prompt(agent: AgentRead) -> str:
    lines = [
        "You are an autonomous software agent working in a shell inside a disposable container.",
        f"Your role: {agent.role}.",
    ]
    if agent.system_prompt.strip():
        lines.append(agent.system_prompt.strip())
    lines.extend(
        [
            "Rules:",
            "1. Work toward the global goal one shell command at a time.",
            "2. Reply with ONLY a JSON object, no text before or after it.",
            '3. When the goal is reached set "finished" to true and leave "command" empty.',
            f"Format: {RESPONSE_FORMAT}",
        ]
    )
    return "\n".join(lines)


def build_step_prompt(task: TaskRead, context: str) -> str:
    return f"Task: {task.title}\n\n{context}\n\nYour next step as JSON:"


def build_agent_backend_factory(settings: Settings) -> AgentBackendFactory:
    if settings.agent_backend == "http":
        if not settings.llm_url:
            raise ValueError("ORCHESTRATOR_LLM_URL is required for the http agent backend")
        url = settings.llm_url
        return lambda: HttpAgentBackend(
            url=url,
            model=settings.llm_model,
            api_key=settings.llm_api_key,
        )
    if settings.agent_backend != "mock":
        raise ValueError(f"unknown agent backend '{settings.agent_backend}'")
    return ScriptedAgentBackend
