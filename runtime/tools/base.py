"""Tool base utilities — schema validation and sandboxed command execution."""

from __future__ import annotations

from typing import Any

import jsonschema

from contracts.errors import ValidationError
from contracts.execution import ExecutionRecord, ExecutionStatus
from contracts.tool_sdk import BaseTool, ToolContext, ToolOutput

from runtime.sandbox.manager import EXIT_CODE_NOT_FOUND


def validate_args(tool: BaseTool, args: dict[str, Any]) -> None:
    """Validate *args* against the tool's input_schema.

    Raises ``contracts.errors.ValidationError`` on invalid input.
    """
    schema = tool.definition().input_schema
    try:
        jsonschema.validate(instance=args, schema=schema)
    except jsonschema.ValidationError as exc:
        raise ValidationError(f"Invalid arguments: {exc.message}") from exc


def log_section(record: ExecutionRecord, prefix: str) -> str:
    """Return the text of the first log line starting with *prefix*, or ''."""
    for line in record.logs:
        if line.startswith(prefix):
            return line[len(prefix):]
    return ""


async def run_in_sandbox(
    ctx: ToolContext,
    tool_name: str,
    argv: list[str],
    *,
    default_timeout_ms: int | None = None,
    detail: dict[str, Any] | None = None,
) -> ToolOutput:
    """Dispatch *argv* through the sandbox and wrap the record as a ToolOutput.

    Analysers and test runners exit non-zero when they find problems, so a
    completed or failed run is still a successful tool call.  Only a
    missing binary or a timeout counts as a tool failure.
    """
    record = await ctx.sandbox.dispatch(
        argv[0],
        argv[1:],
        timeout_ms=ctx.timeout_ms or default_timeout_ms,
        request_id=ctx.request_id,
        session_id=ctx.session_id,
        ip_address=ctx.ip_address,
    )

    if record.exit_code == EXIT_CODE_NOT_FOUND and record.status == ExecutionStatus.FAILED:
        return ToolOutput(tool_name=tool_name, error=f"Command not found: {argv[0]}", success=False)
    if record.status == ExecutionStatus.TIMED_OUT:
        return ToolOutput(tool_name=tool_name, error=f"{tool_name} timed out", success=False)
    if record.status == ExecutionStatus.CANCELLED:
        return ToolOutput(tool_name=tool_name, error=f"{tool_name} was cancelled", success=False)

    result = dict(detail or {})
    result.update({
        "executionId": record.execution_id,
        "exitCode": record.exit_code,
        "output": log_section(record, "STDOUT: "),
        "errors": log_section(record, "STDERR: "),
    })
    return ToolOutput(tool_name=tool_name, result=result)
