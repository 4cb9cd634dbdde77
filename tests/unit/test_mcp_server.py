"""Unit tests for the Bastion MCP server."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import runtime.mcp_server as mod
from contracts.audit import AuditEvent
from contracts.manifest import AppInfo, AuditConfig, Manifest, PolicyMode, RuntimeConfig, SandboxConfig
from contracts.policy import CommandExecutionRule, FileAccessRule, Policy, RuleAction
from runtime.components import build_components
from runtime.mcp_server import (
    cancel_execution,
    get_execution,
    list_files,
    mcp,
    read_file,
    run_command,
    run_tool,
    write_file,
)


# ── helpers ────────────────────────────────────────────────────────────


def _make_manifest(tmp_path: Path, *rules) -> Manifest:
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    return Manifest(
        app=AppInfo(name="mcp-test-app"),
        runtime=RuntimeConfig(policy_mode=PolicyMode.STRICT),
        sandbox=SandboxConfig(workspace_path=str(workspace)),
        policies=[Policy(id="mcp", name="mcp", rules=list(rules))] if rules else [],
        audit=AuditConfig(path=str(tmp_path / "audit.jsonl")),
    )


@pytest.fixture
def install(monkeypatch):
    """Swap the module-level components for ones built from *rules*."""

    def _install(tmp_path: Path, *rules):
        components = build_components(_make_manifest(tmp_path, *rules))
        monkeypatch.setattr(mod, "_components", components)
        return components

    return _install


_ALLOW_FILES = FileAccessRule(id="files", action=RuleAction.ALLOW, resource="*")
_ALLOW_ECHO = CommandExecutionRule(id="echo", action=RuleAction.ALLOW, resource="echo")
_ALLOW_EXECUTIONS = CommandExecutionRule(id="executions", action=RuleAction.ALLOW, resource="exec-*")


# ── MCP tool registration ─────────────────────────────────────────────


class TestMcpToolRegistration:
    def test_tools_registered(self) -> None:
        tool_names = {tool.name for tool in mcp._tool_manager._tools.values()}
        assert tool_names == {
            "run_command",
            "get_execution",
            "cancel_execution",
            "read_file",
            "write_file",
            "list_files",
            "run_tool",
        }

    def test_tools_have_descriptions(self) -> None:
        for tool in mcp._tool_manager._tools.values():
            assert tool.description, f"Tool {tool.name} has no description"


# ── files ──────────────────────────────────────────────────────────────


class TestMcpFiles:
    @pytest.mark.asyncio
    async def test_write_read_list(self, tmp_path: Path, install) -> None:
        install(tmp_path, _ALLOW_FILES)
        assert json.loads(await write_file("notes/a.txt", "hi"))["success"] is True
        assert json.loads(await read_file("notes/a.txt")) == {"path": "notes/a.txt", "content": "hi"}
        assert json.loads(await list_files("notes"))["files"] == ["a.txt"]

    @pytest.mark.asyncio
    async def test_strict_without_policies_denies(self, tmp_path: Path, install) -> None:
        install(tmp_path)
        data = json.loads(await list_files())
        assert data == {"error": "Access denied by policy", "status": 403}

    @pytest.mark.asyncio
    async def test_traversal_rejected(self, tmp_path: Path, install) -> None:
        install(tmp_path, _ALLOW_FILES)
        data = json.loads(await read_file("../secret"))
        assert data["status"] == 400

    @pytest.mark.asyncio
    async def test_calls_audited_as_mcp_session(self, tmp_path: Path, install) -> None:
        components = install(tmp_path, _ALLOW_FILES)
        await list_files()
        [entry] = components.audit.query_by_event(AuditEvent.FILE_ACCESS)
        assert entry.session_id == "mcp"
        assert entry.ip_address == "stdio"


# ── executions ─────────────────────────────────────────────────────────


class TestMcpExecutions:
    @pytest.mark.asyncio
    async def test_run_get_cancel(self, tmp_path: Path, install) -> None:
        install(tmp_path, _ALLOW_ECHO, _ALLOW_EXECUTIONS)
        record = json.loads(await run_command("echo", ["hello"]))
        assert record["status"] == "completed"
        assert record["exitCode"] == 0

        execution_id = record["executionId"]
        assert json.loads(await get_execution(execution_id))["executionId"] == execution_id
        assert json.loads(await cancel_execution(execution_id))["success"] is True
        assert json.loads(await get_execution(execution_id)) == {
            "error": "Execution not found",
            "status": 404,
        }

    @pytest.mark.asyncio
    async def test_disallowed_command(self, tmp_path: Path, install) -> None:
        install(tmp_path, _ALLOW_ECHO)
        data = json.loads(await run_command("ls"))
        assert data["status"] == 403

    @pytest.mark.asyncio
    async def test_injection_rejected(self, tmp_path: Path, install) -> None:
        install(tmp_path, _ALLOW_ECHO)
        data = json.loads(await run_command("echo", ["`id`"]))
        assert data == {"error": "Invalid command or arguments", "status": 400}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timeout_ms", [0, -5])
    async def test_non_positive_timeout_rejected(self, tmp_path: Path, install, timeout_ms: int) -> None:
        components = install(tmp_path, _ALLOW_ECHO)
        data = json.loads(await run_command("echo", ["hi"], timeout_ms=timeout_ms))
        assert data["status"] == 400
        assert data["error"].startswith("Invalid command request")
        assert components.sandbox.list_executions() == []


# ── tools ──────────────────────────────────────────────────────────────


class TestMcpRunTool:
    @pytest.mark.asyncio
    async def test_unknown_tool(self, tmp_path: Path, install) -> None:
        install(
            tmp_path,
            CommandExecutionRule(id="tools", action=RuleAction.ALLOW, resource="tools/*"),
        )
        data = json.loads(await run_tool("nope"))
        assert data == {"error": "Tool not found: nope", "status": 404}

    @pytest.mark.asyncio
    async def test_tool_denied(self, tmp_path: Path, install) -> None:
        install(tmp_path, _ALLOW_FILES)
        data = json.loads(await run_tool("code-analyzer", {"path": "src"}))
        assert data["status"] == 403
