from __future__ import annotations

import logging
import re
import shlex
import subprocess
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from orchestrator_api.config import Settings
from orchestrator_api.security import redact_sensitive_text

logger = logging.getLogger(__name__)


class SandboxError(Exception):
    pass


class SandboxProvisionError(SandboxError):
    pass


class SandboxCommandError(SandboxError):
    pass


@dataclass
class SandboxHandle:
    sandbox_id: str
    execution_id: str
    backend: str
    workdir: str
    created_at: str
    destroyed: bool = field(default=False, compare=False)

    @property
    def short_id(self) -> str:
        return self.sandbox_id[:12]


@dataclass(frozen=True)
class CommandResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        parts = [part.rstrip() for part in (self.stdout, self.stderr) if part and part.strip()]
        return "\n".join(parts)


class SandboxManager:
    """Creates and destroys one disposable environment per execution.

    ``destroy`` is idempotent and never raises. ``session`` is the scoped
    form used by the runner: the sandbox is destroyed on every exit path.
    """

    backend = "base"

    def __init__(self) -> None:
        self._live: dict[str, SandboxHandle] = {}
        self._lock = threading.Lock()

    def provision(self, execution_id: str, *, repository_url: str | None = None) -> SandboxHandle:
        handle = self._create(execution_id, repository_url=repository_url)
        with self._lock:
            self._live[handle.sandbox_id] = handle
        logger.info("provisioned %s sandbox %s for %s", self.backend, handle.short_id, execution_id)
        return handle

    def execute(self, handle: SandboxHandle, command_line: str, *, timeout: float) -> CommandResult:
        if handle.destroyed:
            raise SandboxCommandError(f"sandbox {handle.short_id} is already destroyed")
        return self._execute(handle, command_line, timeout=timeout)

    def destroy(self, handle: SandboxHandle) -> None:
        with self._lock:
            if handle.destroyed:
                return
            handle.destroyed = True
            self._live.pop(handle.sandbox_id, None)
        try:
            self._remove(handle)
        except Exception:  # noqa: BLE001
            logger.exception("failed to remove sandbox %s for %s", handle.short_id, handle.execution_id)
            return
        logger.info("destroyed sandbox %s for %s", handle.short_id, handle.execution_id)

    @contextmanager
    def session(self, execution_id: str, *, repository_url: str | None = None) -> Iterator[SandboxHandle]:
        handle = self.provision(execution_id, repository_url=repository_url)
        try:
            yield handle
        finally:
            self.destroy(handle)

    def live_handles(self) -> list[SandboxHandle]:
        with self._lock:
            return list(self._live.values())

    def destroy_all(self) -> int:
        handles = self.live_handles()
        for handle in handles:
            self.destroy(handle)
        return len(handles)

    def _create(self, execution_id: str, *, repository_url: str | None) -> SandboxHandle:
        raise NotImplementedError

    def _execute(self, handle: SandboxHandle, command_line: str, *, timeout: float) -> CommandResult:
        raise NotImplementedError

    def _remove(self, handle: SandboxHandle) -> None:
        raise NotImplementedError


class MockSandboxManager(SandboxManager):
    """In-process stand-in used when no container runtime is configured."""

    backend = "mock"

    def __init__(self, *, workdir: str = "/workspace/project") -> None:
        super().__init__()
        self._workdir = workdir
        self.commands: list[tuple[str, str]] = []
        self.removed: list[str] = []

    def _create(self, execution_id: str, *, repository_url: str | None) -> SandboxHandle:
        return SandboxHandle(
            sandbox_id=f"mock-{uuid.uuid4().hex}",
            execution_id=execution_id,
            backend=self.backend,
            workdir=self._workdir,
            created_at=_utc_now(),
        )

    def _execute(self, handle: SandboxHandle, command_line: str, *, timeout: float) -> CommandResult:
        with self._lock:
            self.commands.append((handle.sandbox_id, command_line))
        return CommandResult(exit_code=0, stdout=f"$ {command_line}\n(mock sandbox: command accepted)")

    def _remove(self, handle: SandboxHandle) -> None:
        with self._lock:
            self.removed.append(handle.sandbox_id)


class DockerSandboxManager(SandboxManager):
    backend = "docker"

    def __init__(
        self,
        *,
        image: str,
        workdir: str = "/workspace/project",
        network: str = "bridge",
        memory: str = "2g",
        cpus: str = "2.0",
        pids_limit: str = "256",
        drop_caps: bool = False,
        docker_bin: str = "docker",
        setup_timeout_seconds: int = 300,
    ) -> None:
        super().__init__()
        if not workdir.startswith("/"):
            raise ValueError("sandbox workdir must be absolute")
        self._image = image
        self._workdir = workdir
        self._network = network
        self._memory = memory
        self._cpus = cpus
        self._pids_limit = pids_limit
        self._drop_caps = drop_caps
        self._docker_bin = docker_bin
        self._setup_timeout = setup_timeout_seconds

    def _create(self, execution_id: str, *, repository_url: str | None) -> SandboxHandle:
        container_name = _sandbox_container_name(execution_id)
        self._force_remove(container_name)

        command: list[str] = [
            self._docker_bin,
            "run",
            "-d",
            "--name",
            container_name,
            "--label",
            f"orchestrator.execution_id={execution_id}",
            "-w",
            self._workdir,
        ]
        if self._drop_caps:
            command.extend(["--cap-drop", "ALL", "--security-opt", "no-new-privileges:true"])
        command.extend(["--network", self._network])
        command.extend(["--pids-limit", self._pids_limit, "--memory", self._memory, "--cpus", self._cpus])
        command.extend(["--entrypoint", "sleep", self._image, "infinity"])

        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._setup_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SandboxProvisionError("docker binary not found") from exc
        except subprocess.TimeoutExpired as exc:
            self._force_remove(container_name)
            raise SandboxProvisionError("docker run timed out") from exc
        except OSError as exc:
            self._force_remove(container_name)
            raise SandboxProvisionError(f"docker run failed: {exc}") from exc

        if completed.returncode != 0:
            self._force_remove(container_name)
            detail = (completed.stderr or completed.stdout or "").strip()
            raise SandboxProvisionError(f"docker run failed: {detail or f'exit code {completed.returncode}'}")

        container_id = (completed.stdout or "").strip() or container_name
        handle = SandboxHandle(
            sandbox_id=container_id,
            execution_id=execution_id,
            backend=self.backend,
            workdir=self._workdir,
            created_at=_utc_now(),
        )

        if repository_url:
            try:
                cloned = self._execute(
                    handle,
                    f"git clone --depth 1 {shlex.quote(repository_url)} {shlex.quote(self._workdir)}",
                    timeout=self._setup_timeout,
                )
            except SandboxCommandError as exc:
                self._force_remove(container_id)
                raise SandboxProvisionError(f"repository clone failed: {exc}") from exc
            if not cloned.ok:
                self._force_remove(container_id)
                detail = redact_sensitive_text(cloned.output) or f"exit code {cloned.exit_code}"
                raise SandboxProvisionError(f"repository clone failed: {detail}")
        return handle

    def _execute(self, handle: SandboxHandle, command_line: str, *, timeout: float) -> CommandResult:
        command = [self._docker_bin, "exec", "-w", handle.workdir, handle.sandbox_id, "sh", "-c", command_line]
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SandboxCommandError("docker binary not found") from exc
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                exit_code=None,
                stdout=_decode(exc.stdout),
                stderr=f"command timed out after {timeout:g}s",
                timed_out=True,
            )
        except OSError as exc:
            raise SandboxCommandError(f"docker exec failed: {exc}") from exc
        return CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def _remove(self, handle: SandboxHandle) -> None:
        completed = subprocess.run(
            [self._docker_bin, "rm", "-f", handle.sandbox_id],
            capture_output=True,
            text=True,
            timeout=30,
            check=False,
        )
        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            if "No such container" in stderr:
                logger.warning("sandbox %s was already gone", handle.short_id)
                return
            logger.error("docker rm failed for sandbox %s: %s", handle.short_id, stderr)

    def _force_remove(self, container: str) -> None:
        try:
            subprocess.run(
                [self._docker_bin, "rm", "-f", container],
                capture_output=True,
                text=True,
                timeout=30,
                check=False,
            )
        except Exception:  # noqa: BLE001
            logger.warning("could not force-remove container %s", container)


def build_sandbox_manager(settings: Settings) -> SandboxManager:
    if settings.sandbox_backend == "docker":
        return DockerSandboxManager(
            image=settings.sandbox_image,
            workdir=settings.sandbox_workdir,
            network=settings.sandbox_network,
            memory=settings.sandbox_memory,
            cpus=settings.sandbox_cpus,
            pids_limit=settings.sandbox_pids_limit,
            drop_caps=settings.sandbox_drop_caps,
        )
    if settings.sandbox_backend != "mock":
        raise ValueError(f"unknown sandbox backend '{settings.sandbox_backend}'")
    return MockSandboxManager(workdir=settings.sandbox_workdir)


def _sandbox_container_name(execution_id: str) -> str:
    normalized = re.sub(r"[^a-zA-Z0-9_.-]+", "-", execution_id).strip("-")
    if not normalized:
        normalized = "execution"
    return f"orchestrator-{normalized}"


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
