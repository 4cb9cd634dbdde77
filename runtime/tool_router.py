"""Tool router — policy-checked lookup and execution of registered tools."""

from __future__ import annotations

import logging
from typing import Any

from contracts.api import ToolSummary
from contracts.audit import AuditEntry, AuditEvent, AuditLogger
from contracts.errors import NotFoundError, ValidationError
from contracts.manifest import ToolConfig
from contracts.policy import ActionType, Caller, PolicyEngine
from contracts.tool_sdk import BaseTool, ToolContext, ToolOutput

from runtime.policy import require_allowed
from runtime.sandbox.manager import ExecutionSandboxManager
from runtime.tools.base import validate_args
from runtime.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

TOOLS_RESOURCE = "tools"


def tool_resource(name: str) -> str:
    return f"{TOOLS_RESOURCE}/{name}"


class ToolRouter:
    """Runs tool calls with policy enforcement, argument validation and audit."""

    def __init__(
        self,
        policy: PolicyEngine,
        registry: ToolRegistry,
        sandbox: ExecutionSandboxManager,
        logger: AuditLogger | None = None,
        tool_configs: dict[str, ToolConfig] | None = None,
    ) -> None:
        self._policy = policy
        self._registry = registry
        self._sandbox = sandbox
        self._logger = logger
        self._tool_configs = tool_configs or {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def list_tools(self, caller: Caller) -> list[ToolSummary]:
        self._authorize(caller, TOOLS_RESOURCE, ActionType.FILE_ACCESS)
        return self._registry.summaries()

    def describe(self, name: str, caller: Caller) -> ToolSummary:
        self._authorize(caller, tool_resource(name), ActionType.FILE_ACCESS)
        self._lookup(name)
        return self._registry.summary(name)

    async def execute(self, name: str, args: dict[str, Any], caller: Caller) -> ToolOutput:
        """Authorize, validate and run one tool call.

        Policy denials, unknown tools and bad arguments raise; whatever the
        tool itself reports comes back as a ``ToolOutput``.
        """
        self._authorize(caller, tool_resource(name), ActionType.COMMAND_EXECUTION)
        tool = self._lookup(name)

        try:
            validate_args(tool, args)
        except ValidationError as exc:
            self._log(caller, AuditEvent.VALIDATION_REJECT, {"tool": name, "reason": exc.message})
            raise

        self._log(caller, AuditEvent.TOOL_CALL, {"tool": name, "arguments": args})

        config = self._tool_configs.get(name)
        ctx = ToolContext(
            request_id=caller.request_id,
            sandbox=self._sandbox,
            session_id=caller.session_id,
            ip_address=caller.ip_address,
            timeout_ms=config.timeout_ms if config else None,
        )
        output = await tool.run(ctx, args)

        if not output.success:
            logger.warning("Tool %s failed: %s", name, output.error)
        self._log(
            caller,
            AuditEvent.TOOL_RESULT,
            {"tool": name, "success": output.success, "error": output.error},
        )
        return output

    # ── internal ────────────────────────────────────────────────────

    def _lookup(self, name: str) -> BaseTool:
        try:
            return self._registry.get(name)
        except KeyError:
            raise NotFoundError(f"Tool not found: {name}") from None

    def _authorize(self, caller: Caller, resource: str, action: ActionType) -> None:
        require_allowed(
            self._policy,
            caller.context(resource, action),
            audit=self._logger,
            request_id=caller.request_id,
        )

    def _log(self, caller: Caller, event: AuditEvent, detail: dict[str, Any]) -> None:
        if self._logger is None:
            return
        self._logger.log(
            AuditEntry(
                request_id=caller.request_id,
                event=event,
                session_id=caller.session_id,
                ip_address=caller.ip_address,
                detail=detail,
            )
        )
