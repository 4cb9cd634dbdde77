"""Bastion MCP server — exposes policy-checked operations over stdio transport.

Every call runs as session ``mcp`` from ``stdio`` through the same policy
engine, sandbox and audit log as the HTTP server.  Results and denials
are returned as JSON strings.
"""

from __future__ import annotations

import inspect
import json
import logging
import uuid
from typing import Any, Awaitable, Callable

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError as PydanticValidationError

from contracts.errors import BastionError, ValidationError
from contracts.execution import CommandRequest, ExecutionOptions
from contracts.policy import ActionType, Caller

from runtime.components import BastionComponents, init_bastion
from runtime.policy import require_allowed

logger = logging.getLogger(__name__)

MCP_SESSION_ID = "mcp"
MCP_IP_ADDRESS = "stdio"

# ── Initialisation ────────────────────────────────────────────────────

_components: BastionComponents | None = None

mcp = FastMCP("bastion")


def _get_components() -> BastionComponents:
    """Return initialised components, lazily loading on first access."""
    global _components  # noqa: PLW0603
    if _components is None:
        _components = init_bastion()
    return _components


def _caller() -> Caller:
    return Caller(
        session_id=MCP_SESSION_ID,
        ip_address=MCP_IP_ADDRESS,
        request_id=str(uuid.uuid4()),
    )


async def _call(operation: Callable[[BastionComponents, Caller], Awaitable[Any] | Any]) -> str:
    """Run *operation* and render its result, or its denial, as JSON."""
    c = _get_components()
    caller = _caller()
    try:
        result = operation(c, caller)
        if inspect.isawaitable(result):
            result = await result
    except BastionError as exc:
        logger.info("MCP call rejected (%d): %s", exc.status_code, exc.message)
        return json.dumps({"error": exc.message, "status": exc.status_code})
    return json.dumps(result)


def _authorize_execution(c: BastionComponents, caller: Caller, execution_id: str) -> None:
    require_allowed(
        c.policy,
        caller.context(execution_id, ActionType.COMMAND_EXECUTION),
        audit=c.audit,
        request_id=caller.request_id,
    )


# ── Operations ────────────────────────────────────────────────────────


async def _run_command(
    c: BastionComponents,
    caller: Caller,
    command: str,
    args: list[str],
    timeout_ms: int,
) -> dict:
    try:
        request = CommandRequest(
            command=command,
            args=args,
            options=ExecutionOptions(timeout=timeout_ms),
        )
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid command request: {exc.errors()[0]['msg']}") from exc
    record = await c.sandbox.run_command(
        request,
        session_id=caller.session_id,
        ip_address=caller.ip_address,
        request_id=caller.request_id,
    )
    return record.to_wire()


def _get_execution(c: BastionComponents, caller: Caller, execution_id: str) -> dict:
    _authorize_execution(c, caller, execution_id)
    record = c.sandbox.get_execution(execution_id)
    if record is None:
        return {"error": "Execution not found", "status": 404}
    return record.to_wire()


def _cancel_execution(c: BastionComponents, caller: Caller, execution_id: str) -> dict:
    _authorize_execution(c, caller, execution_id)
    if not c.sandbox.cancel_execution(execution_id):
        return {"error": "Execution not found", "status": 404}
    return {"success": True, "message": "Execution cancelled"}


# ── MCP tool wrappers ─────────────────────────────────────────────────


@mcp.tool()
async def run_command(command: str, args: list[str] | None = None, timeout_ms: int = 30_000) -> str:
    """Run a command in the workspace sandbox and return its execution record."""
    return await _call(lambda c, caller: _run_command(c, caller, command, args or [], timeout_ms))


@mcp.tool()
async def get_execution(execution_id: str) -> str:
    """Look up a tracked execution record by id."""
    return await _call(lambda c, caller: _get_execution(c, caller, execution_id))


@mcp.tool()
async def cancel_execution(execution_id: str) -> str:
    """Cancel an execution, terminating it if it is still running."""
    return await _call(lambda c, caller: _cancel_execution(c, caller, execution_id))


@mcp.tool()
async def read_file(path: str) -> str:
    """Read a file relative to the workspace root."""
    return await _call(lambda c, caller: c.workspace.read_file(path, caller).to_wire())


@mcp.tool()
async def write_file(path: str, content: str) -> str:
    """Write a file relative to the workspace root, creating parent directories."""
    return await _call(lambda c, caller: c.workspace.write_file(path, content, caller).to_wire())


@mcp.tool()
async def list_files(path: str = "") -> str:
    """List the entries of a workspace directory."""
    return await _call(lambda c, caller: c.workspace.list_files(path, caller).to_wire())


@mcp.tool()
async def run_tool(name: str, arguments: dict[str, Any] | None = None) -> str:
    """Run a registered tool (code-analyzer, test-runner, doc-generator)."""

    async def _run(c: BastionComponents, caller: Caller) -> dict:
        output = await c.tools.execute(name, arguments or {}, caller)
        return output.model_dump(mode="json")

    return await _call(_run)


def main() -> None:
    from runtime.logging_utils import configure_logging

    c = _get_components()
    configure_logging(c.manifest.logging.level, c.manifest.logging.path)
    mcp.run(transport="stdio")


# ── Entry point ───────────────────────────────────────────────────────

if __name__ == "__main__":
    main()
