"""Working memory for one agent on one task.

Each step the agent takes is appended with a token estimate. When the
retained steps cost more than the token budget, the middle of the history is
dropped: the first ``keep_first`` steps (the original plan) and the last
``keep_last`` steps (the current state) survive. The cumulative token count
and the original step count are kept for audit.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from orchestrator_api.schemas import MemoryState
from orchestrator_api.store import NotFoundError

logger = logging.getLogger(__name__)

OUTPUT_PREVIEW_CHARS = 500


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))


@dataclass(frozen=True)
class MemoryStep:
    timestamp: str
    action: str
    result: str
    token_count: int

    @classmethod
    def record(cls, action: str, result: str) -> "MemoryStep":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            result=result,
            token_count=estimate_tokens(action) + estimate_tokens(result),
        )


@dataclass
class AgentMemory:
    agent_id: str
    task_id: str
    global_goal: str
    steps: list[MemoryStep] = field(default_factory=list)
    total_token_count: int = 0
    context_token_count: int = 0
    is_compressed: bool = False
    compression_ratio: float = 1.0
    total_original_steps: int = 0
    first_steps: list[MemoryStep] = field(default_factory=list)
    last_steps: list[MemoryStep] = field(default_factory=list)
    loads: int = 0


@dataclass(frozen=True)
class MemoryContext:
    global_goal: str
    steps: tuple[MemoryStep, ...]
    is_compressed: bool
    compression_ratio: float
    total_original_steps: int
    total_token_count: int
    first_count: int = 0

    @property
    def omitted_steps(self) -> int:
        return max(self.total_original_steps - len(self.steps), 0)

    def render(self) -> str:
        lines = [f"Global goal: {self.global_goal}", ""]
        if not self.steps:
            lines.append("No actions taken yet.")
            return "\n".join(lines)

        if not self.is_compressed:
            lines.append("===== ACTION HISTORY =====")
            lines.extend(_format_step(index + 1, step) for index, step in enumerate(self.steps))
            return "\n".join(lines)

        first = self.steps[: self.first_count]
        last = self.steps[self.first_count :]
        lines.append("===== INITIAL STEPS =====")
        lines.extend(_format_step(index + 1, step) for index, step in enumerate(first))
        if self.omitted_steps:
            lines.append(f"[... {self.omitted_steps} intermediate steps omitted ...]")
        lines.append("===== RECENT STEPS =====")
        offset = self.total_original_steps - len(last)
        lines.extend(_format_step(offset + index + 1, step) for index, step in enumerate(last))
        return "\n".join(lines)


class MemoryManager:
    def __init__(self, *, token_budget: int, keep_first: int, keep_last: int) -> None:
        if token_budget <= 0:
            raise ValueError("token_budget must be positive")
        if keep_first < 0 or keep_last < 0:
            raise ValueError("keep_first and keep_last must not be negative")
        self._token_budget = token_budget
        self._keep_first = keep_first
        self._keep_last = keep_last
        self._memories: dict[tuple[str, str], AgentMemory] = {}
        self._lock = threading.Lock()

    @property
    def token_budget(self) -> int:
        return self._token_budget

    def load(self, agent_id: str, task_id: str, global_goal: str) -> tuple[MemoryContext, MemoryState]:
        with self._lock:
            memory = self._memories.get((agent_id, task_id))
            if memory is None:
                memory = AgentMemory(agent_id=agent_id, task_id=task_id, global_goal=global_goal)
                self._memories[(agent_id, task_id)] = memory
                state = MemoryState.FRESH
                logger.info("initialized memory for agent %s on task %s", agent_id, task_id)
            else:
                state = MemoryState.COMPRESSED if memory.is_compressed else MemoryState.RESUMED
                logger.info(
                    "restored memory for agent %s on task %s (%d steps, %s)",
                    agent_id,
                    task_id,
                    memory.total_original_steps,
                    state.value,
                )
            memory.loads += 1
            return self._context(memory), state

    def append(self, agent_id: str, task_id: str, step: MemoryStep) -> MemoryContext:
        with self._lock:
            memory = self._require(agent_id, task_id)
            memory.steps.append(step)
            memory.total_original_steps += 1
            memory.total_token_count += step.token_count
            memory.context_token_count += step.token_count
            if memory.is_compressed:
                memory.last_steps = memory.steps[len(memory.first_steps) :]
            if memory.context_token_count > self._token_budget:
                self._compress(memory)
            return self._context(memory)

    def get_context(self, agent_id: str, task_id: str) -> MemoryContext:
        with self._lock:
            return self._context(self._require(agent_id, task_id))

    def get_memory(self, agent_id: str, task_id: str) -> AgentMemory:
        with self._lock:
            memory = self._require(agent_id, task_id)
            return replace(
                memory,
                steps=list(memory.steps),
                first_steps=list(memory.first_steps),
                last_steps=list(memory.last_steps),
            )

    def compress(self, agent_id: str, task_id: str) -> MemoryContext:
        with self._lock:
            memory = self._require(agent_id, task_id)
            self._compress(memory)
            return self._context(memory)

    def stats(self, agent_id: str) -> dict[str, float | int]:
        with self._lock:
            memories = [memory for memory in self._memories.values() if memory.agent_id == agent_id]
        total = len(memories)
        compressed = [memory for memory in memories if memory.is_compressed]
        avg_ratio = sum(memory.compression_ratio for memory in compressed) / len(compressed) if compressed else 0.0
        return {
            "total_memories": total,
            "compressed_memories": len(compressed),
            "total_tokens": sum(memory.total_token_count for memory in memories),
            "avg_compression_ratio": round(avg_ratio, 4),
        }

    def clear_task(self, task_id: str) -> int:
        with self._lock:
            keys = [key for key in self._memories if key[1] == task_id]
            for key in keys:
                del self._memories[key]
            return len(keys)

    def _compress(self, memory: AgentMemory) -> None:
        kept = self._keep_first + self._keep_last
        if len(memory.steps) <= kept:
            return

        if memory.is_compressed:
            first = memory.first_steps
        else:
            first = memory.steps[: self._keep_first]
        tail_source = memory.steps[len(first) :]
        last = tail_source[-self._keep_last :] if self._keep_last else []

        memory.first_steps = list(first)
        memory.last_steps = list(last)
        memory.steps = [*first, *last]
        memory.context_token_count = sum(step.token_count for step in memory.steps)
        memory.is_compressed = True
        memory.compression_ratio = len(memory.steps) / memory.total_original_steps
        logger.info(
            "compressed memory for agent %s on task %s: kept %d of %d steps (ratio %.3f)",
            memory.agent_id,
            memory.task_id,
            len(memory.steps),
            memory.total_original_steps,
            memory.compression_ratio,
        )

    def _require(self, agent_id: str, task_id: str) -> AgentMemory:
        memory = self._memories.get((agent_id, task_id))
        if memory is None:
            raise NotFoundError(f"memory for agent {agent_id} on task {task_id} not found")
        return memory

    @staticmethod
    def _context(memory: AgentMemory) -> MemoryContext:
        return MemoryContext(
            global_goal=memory.global_goal,
            steps=tuple(memory.steps),
            is_compressed=memory.is_compressed,
            compression_ratio=memory.compression_ratio,
            total_original_steps=memory.total_original_steps,
            total_token_count=memory.total_token_count,
            first_count=len(memory.first_steps) if memory.is_compressed else 0,
        )


def _format_step(number: int, step: MemoryStep) -> str:
    result = step.result if step.result else "(empty output)"
    if len(result) > OUTPUT_PREVIEW_CHARS:
        result = result[:OUTPUT_PREVIEW_CHARS] + "\n... (output truncated)"
    return f"Step {number}: {step.action} -> {result}"
