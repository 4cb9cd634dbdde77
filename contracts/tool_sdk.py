"""Tool SDK contracts.

Every Bastion tool implements BaseTool.  The runtime validates inputs,
checks policy, executes the tool, and logs the result.  Tools that shell
out do so through the sandbox manager's dispatch path, never directly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    from runtime.sandbox.manager import ExecutionSandboxManager


# ── Data models ──────────────────────────────────────────────────────


class ToolDefinition(BaseModel):
    """Function-calling compatible schema for a tool."""

    name: str
    description: str
    input_schema: dict[str, Any]   # JSON Schema
    permissions: list[str] = []    # e.g. ["exec:lint"]


class ToolOutput(BaseModel):
    tool_name: str
    result: Any = None
    error: str | None = None
    success: bool = True


# ── Context passed to every tool invocation ──────────────────────────


@dataclass
class ToolContext:
    """Runtime context supplied to a tool's run() method."""

    request_id: str
    sandbox: ExecutionSandboxManager
    session_id: str = "unknown"
    ip_address: str = "unknown"
    timeout_ms: int | None = None


# ── Abstract base class ─────────────────────────────────────────────


class BaseTool(ABC):
    """Abstract base class that every Bastion tool must implement."""

    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Return the tool's function-calling schema."""
        ...

    @abstractmethod
    async def run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        """Execute the tool. Called by the runtime after policy check."""
        ...
