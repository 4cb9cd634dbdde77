"""Execution backends: direct host subprocess and docker container.

Both backends exec an argument vector; no shell ever sees the command.
Every spawned process is wrapped in an ``ExecutionHandle`` that can be
awaited under a deadline and terminated on timeout or cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from contracts.execution import BackendKind

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 2.0
DRAIN_TIMEOUT_SECONDS = 2.0
DOCKER_KILL_TIMEOUT_SECONDS = 10.0

CONTAINER_WORKDIR = "/workspace"
CONTAINER_NAME_PREFIX = "bastion-"

# Fixed resource envelope for containerized runs.
DOCKER_ISOLATION_FLAGS: tuple[str, ...] = (
    "--network", "none",
    "--read-only",
    "--tmpfs", "/tmp",
    "--user", "1000:1000",
    "--memory", "128m",
    "--cpus", "0.5",
)


@dataclass
class ProcessOutcome:
    stdout: str
    stderr: str
    returncode: int | None
    timed_out: bool = False
    cancelled: bool = False


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


class ExecutionHandle:
    """Owns one child process for the lifetime of a dispatch."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        container_name: str | None = None,
    ) -> None:
        self._process = process
        self._container_name = container_name
        self._loop = asyncio.get_running_loop()
        self._cancel_event = asyncio.Event()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def container_name(self) -> str | None:
        return self._container_name

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def request_cancel(self) -> None:
        """Ask the waiting dispatch to stop.  Safe to call from any thread."""
        self._loop.call_soon_threadsafe(self._cancel_event.set)

    async def wait(self, timeout: float) -> ProcessOutcome:
        """Collect output until exit, deadline, or cancellation, whichever is first."""
        communicate = asyncio.ensure_future(self._process.communicate())
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            communicate.cancel()
            await self.terminate()
            raise
        finally:
            cancelled.cancel()

        if communicate in done:
            stdout, stderr = communicate.result()
            return ProcessOutcome(_decode(stdout), _decode(stderr), self._process.returncode)

        was_cancelled = cancelled in done
        await self.terminate()
        stdout, stderr = await self._drain(communicate)
        return ProcessOutcome(
            stdout,
            stderr,
            self._process.returncode,
            timed_out=not was_cancelled,
            cancelled=was_cancelled,
        )

    async def terminate(self, grace: float = TERMINATE_GRACE_SECONDS) -> None:
        """SIGTERM the process group, then SIGKILL after ``grace`` seconds."""
        if self._container_name is not None:
            await kill_container(self._container_name)

        if self._process.returncode is not None:
            return

        self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Process %d ignored SIGTERM; sending SIGKILL", self._process.pid)
            self._signal(signal.SIGKILL)
            await self._process.wait()

    def _signal(self, sig: signal.Signals) -> None:
        if sys.platform == "win32":
            self._process.kill()
            return
        try:
            os.killpg(os.getpgid(self._process.pid), sig)
        except (ProcessLookupError, OSError):
            # already gone
            pass

    async def _drain(self, communicate: asyncio.Future) -> tuple[str, str]:
        try:
            stdout, stderr = await asyncio.wait_for(communicate, timeout=DRAIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Output pipes of process %d did not close", self._process.pid)
            return "", ""
        return _decode(stdout), _decode(stderr)


async def kill_container(name: str) -> None:
    """Best-effort ``docker kill``; the container may already have exited."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "docker", "kill", name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await asyncio.wait_for(proc.wait(), timeout=DOCKER_KILL_TIMEOUT_SECONDS)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.warning("docker kill %s failed: %s", name, exc)


# ── Backends ─────────────────────────────────────────────────────────


class ExecutionBackend(ABC):
    """Turns a validated, authorized command into a running process."""

    kind: BackendKind

    def __init__(self, workspace_path: str | Path) -> None:
        self._workspace = Path(workspace_path)

    @property
    def workspace(self) -> Path:
        return self._workspace

    @abstractmethod
    def build_argv(self, execution_id: str, command: str, args: list[str]) -> list[str]:
        ...

    async def spawn(self, execution_id: str, command: str, args: list[str]) -> ExecutionHandle:
        argv = self.build_argv(execution_id, command, args)
        logger.debug("Spawning %s", argv)
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd(),
            start_new_session=sys.platform != "win32",
        )
        return ExecutionHandle(process, container_name=self._container_name(execution_id))

    def _cwd(self) -> str | None:
        return str(self._workspace) if self._workspace.is_dir() else None

    def _container_name(self, execution_id: str) -> str | None:
        return None


class DirectBackend(ExecutionBackend):
    """Runs ``[command, *args]`` on the host, inside the workspace if it exists."""

    kind = BackendKind.DIRECT

    def build_argv(self, execution_id: str, command: str, args: list[str]) -> list[str]:
        return [command, *args]


class DockerBackend(ExecutionBackend):
    """Runs the command in a throwaway, network-less container."""

    kind = BackendKind.DOCKER

    def __init__(self, workspace_path: str | Path, image: str) -> None:
        super().__init__(workspace_path)
        self._image = image

    @property
    def image(self) -> str:
        return self._image

    def build_argv(self, execution_id: str, command: str, args: list[str]) -> list[str]:
        return [
            "docker", "run", "--rm",
            "--name", self._container_name(execution_id),
            "-v", f"{self._workspace.resolve()}:{CONTAINER_WORKDIR}",
            "-w", CONTAINER_WORKDIR,
            *DOCKER_ISOLATION_FLAGS,
            self._image,
            command,
            *args,
        ]

    def _cwd(self) -> str | None:
        return None

    def _container_name(self, execution_id: str) -> str:
        return f"{CONTAINER_NAME_PREFIX}{execution_id}"
