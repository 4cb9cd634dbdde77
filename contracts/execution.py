"""Execution contracts: command requests and tracked execution records."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import Field

from contracts.model import WireModel

DEFAULT_TIMEOUT_MS = 30_000


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"
    CANCELLED = "cancelled"


class BackendKind(str, Enum):
    DIRECT = "direct"
    DOCKER = "docker"


class ExecutionOptions(WireModel):
    timeout: int = Field(DEFAULT_TIMEOUT_MS, gt=0)  # milliseconds


class CommandRequest(WireModel):
    command: str
    args: list[str] = []
    options: ExecutionOptions = ExecutionOptions()


class ExecutionRecord(WireModel):
    """Tracked outcome of one command dispatch, keyed by ``execution_id``."""

    execution_id: str
    command: str
    args: list[str] = []
    backend: BackendKind = BackendKind.DIRECT
    status: ExecutionStatus = ExecutionStatus.RUNNING
    exit_code: int | None = None
    logs: list[str] = []
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def finished(self) -> bool:
        return self.status != ExecutionStatus.RUNNING

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED and self.exit_code == 0
