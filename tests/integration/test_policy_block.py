"""Integration test: policy denials and the rate-limit gate over HTTP."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from contracts.manifest import AppInfo, AuditConfig, Manifest, PolicyMode, RateLimitConfig, RuntimeConfig, SandboxConfig
from contracts.policy import (
    CommandExecutionRule,
    ConditionOperator,
    FileAccessRule,
    Policy,
    RateLimitCondition,
    RateLimitRule,
    RuleAction,
)
from runtime.app import create_app
from runtime.components import build_components


def _client(tmp_path: Path, *rules, mode: PolicyMode = PolicyMode.STRICT) -> TestClient:
    ws = tmp_path / "ws"
    ws.mkdir(exist_ok=True)
    (ws / ".env").write_text("TOKEN=1\n")
    (ws / "app.ts").write_text("export {};\n")
    manifest = Manifest(
        app=AppInfo(name="blocked"),
        runtime=RuntimeConfig(policy_mode=mode),
        sandbox=SandboxConfig(workspace_path=str(ws)),
        rate_limit=RateLimitConfig(cleanup_interval_seconds=0),
        policies=[Policy(id="p", name="p", rules=list(rules))] if rules else [],
        audit=AuditConfig(path=str(tmp_path / "audit.jsonl")),
    )
    return TestClient(create_app(build_components(manifest)))


_GATE = RateLimitRule(id="gate", action=RuleAction.ALLOW, resource="*")


class TestStrictMode:
    def test_no_policies_rejects_everything_but_health(self, tmp_path: Path) -> None:
        with _client(tmp_path) as client:
            assert client.get("/health").status_code == 200
            resp = client.get("/api/v1/files/list")
            assert resp.status_code == 429
            assert resp.json() == {
                "error": "Rate limit exceeded",
                "message": "Too many requests, please try again later",
            }

    def test_unlisted_command_forbidden(self, tmp_path: Path) -> None:
        echo = CommandExecutionRule(id="echo", action=RuleAction.ALLOW, resource="echo")
        with _client(tmp_path, _GATE, echo) as client:
            resp = client.post("/api/v1/execute", json={"command": "rm", "args": ["-rf", "src"]})
            assert resp.status_code == 403
            assert resp.json() == {"error": "Access denied by policy"}

            blocks = client.get("/api/v1/audit/logs", params={"event": "policy.block"}).json()
            assert blocks["total"] == 1
            assert blocks["entries"][0]["detail"]["resource"] == "rm"

    def test_injection_rejected_before_policy(self, tmp_path: Path) -> None:
        with _client(tmp_path, _GATE) as client:
            resp = client.post("/api/v1/execute", json={"command": "echo", "args": ["a && b"]})
            assert resp.status_code == 400
            assert resp.json() == {"error": "Invalid command or arguments"}
            blocks = client.get("/api/v1/audit/logs", params={"event": "policy.block"}).json()
            assert blocks["total"] == 0

    def test_empty_command(self, tmp_path: Path) -> None:
        with _client(tmp_path, _GATE) as client:
            resp = client.post("/api/v1/execute", json={"command": ""})
            assert resp.status_code == 400
            assert resp.json() == {"error": "Command is required"}

    def test_denied_file_pattern(self, tmp_path: Path) -> None:
        rules = (
            _GATE,
            FileAccessRule(id="no-env", action=RuleAction.DENY, resource=".env*"),
            FileAccessRule(id="files", action=RuleAction.ALLOW, resource="*"),
        )
        with _client(tmp_path, *rules) as client:
            assert client.get("/api/v1/files/app.ts").status_code == 200
            assert client.get("/api/v1/files/.env").status_code == 403
            resp = client.post("/api/v1/files", json={"path": ".env.local", "content": "x"})
            assert resp.status_code == 403
        assert not (tmp_path / "ws" / ".env.local").exists()

    def test_traversal_rejected(self, tmp_path: Path) -> None:
        files = FileAccessRule(id="files", action=RuleAction.ALLOW, resource="*")
        with _client(tmp_path, _GATE, files) as client:
            resp = client.post("/api/v1/files", json={"path": "../escape.txt", "content": "x"})
            assert resp.status_code == 400
            assert resp.json() == {"error": "Invalid path"}
        assert not (tmp_path / "escape.txt").exists()


class TestRateLimitGate:
    def test_gate_limit_from_rule(self, tmp_path: Path) -> None:
        gate = RateLimitRule(
            id="tight",
            action=RuleAction.ALLOW,
            resource="*",
            conditions=[RateLimitCondition(operator=ConditionOperator.LIMIT, value=3)],
        )
        with _client(tmp_path, gate) as client:
            statuses = [client.get("/api/v1/session/capabilities").status_code for _ in range(4)]
            assert statuses == [200, 200, 200, 429]
            # liveness stays reachable
            assert client.get("/health").status_code == 200

            limited = client.get(
                "/api/v1/audit/logs", headers={"X-Session-Id": "auditor"}
            )
            assert limited.status_code == 200
            assert limited.json()["total"] >= 1

    def test_sessions_have_separate_budgets(self, tmp_path: Path) -> None:
        gate = RateLimitRule(
            id="tight",
            action=RuleAction.ALLOW,
            resource="*",
            conditions=[RateLimitCondition(operator=ConditionOperator.LIMIT, value=1)],
        )
        with _client(tmp_path, gate) as client:
            assert client.get("/api/v1/session/capabilities", headers={"X-Session-Id": "a"}).status_code == 200
            assert client.get("/api/v1/session/capabilities", headers={"X-Session-Id": "a"}).status_code == 429
            assert client.get("/api/v1/session/capabilities", headers={"X-Session-Id": "b"}).status_code == 200

    def test_denied_request_is_audited_under_its_request_id(self, tmp_path: Path) -> None:
        gate = RateLimitRule(
            id="tight",
            action=RuleAction.ALLOW,
            resource="*",
            conditions=[RateLimitCondition(operator=ConditionOperator.LIMIT, value=1)],
        )
        with _client(tmp_path, gate) as client:
            client.get("/api/v1/session/capabilities", headers={"X-Session-Id": "a"})
            denied = client.get("/api/v1/session/capabilities", headers={"X-Session-Id": "a"})
            assert denied.status_code == 429
            request_id = denied.headers["X-Request-Id"]

            entries = client.get(f"/api/v1/audit/{request_id}", headers={"X-Session-Id": "b"}).json()
            assert [e["event"] for e in entries] == ["request.start", "rate.limited", "request.end"]
            assert entries[-1]["detail"]["status_code"] == 429

    def test_denied_gate_sets_version_header(self, tmp_path: Path) -> None:
        with _client(tmp_path) as client:
            resp = client.get("/api/v1/policy")
            assert resp.status_code == 429
            assert resp.headers["X-API-Version"] == "v1"


class TestDeveloperMode:
    def test_default_policy_installed(self, tmp_path: Path) -> None:
        with _client(tmp_path, mode=PolicyMode.DEVELOPER) as client:
            policies = client.get("/api/v1/policy").json()["policies"]
            assert [p["id"] for p in policies] == ["default-policy"]
            assert client.get("/api/v1/files/.env").status_code == 200

    @pytest.mark.parametrize("path", ["/api/v1/tools", "/tools"])
    def test_tools_listed(self, tmp_path: Path, path: str) -> None:
        with _client(tmp_path, mode=PolicyMode.DEVELOPER) as client:
            names = [t["name"] for t in client.get(path).json()["tools"]]
            assert names == ["code-analyzer", "doc-generator", "test-runner"]
