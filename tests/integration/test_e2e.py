"""End-to-end integration tests: manifest on disk, app factory, HTTP surface."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml
from fastapi.testclient import TestClient

from contracts.audit import AuditEvent


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    (ws / "src").mkdir(parents=True)
    (ws / "src" / "index.ts").write_text("export const answer = 42;\n")
    return ws


@pytest.fixture()
def manifest_file(tmp_path: Path, workspace: Path) -> Path:
    """A strict manifest that allows files, echo and execution lookups."""
    manifest = {
        "app": {"name": "e2e", "version": "1.2.3"},
        "runtime": {"policy_mode": "strict", "api_version": "v1"},
        "sandbox": {"workspace_path": str(workspace), "default_timeout_ms": 5000},
        "rate_limit": {"cleanup_interval_seconds": 0},
        "policies": [
            {
                "id": "e2e",
                "name": "E2E",
                "rules": [
                    {"id": "gate", "type": "rateLimit", "action": "allow", "resource": "*"},
                    {"id": "files", "type": "fileAccess", "action": "allow", "resource": "*"},
                    {"id": "echo", "type": "commandExecution", "action": "allow", "resource": "echo"},
                    {"id": "sleep", "type": "commandExecution", "action": "allow", "resource": "sleep"},
                    {"id": "lookup", "type": "commandExecution", "action": "allow", "resource": "exec-*"},
                ],
            }
        ],
        "audit": {"path": str(tmp_path / "audit.jsonl")},
    }
    p = tmp_path / "bastion.yaml"
    p.write_text(yaml.dump(manifest))
    return p


@pytest.fixture()
def client(manifest_file: Path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("BASTION_MANIFEST", str(manifest_file))
    from runtime.app import create_app

    with TestClient(create_app()) as c:
        yield c


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["version"] == "1.2.3"
        assert body["policyMode"] == "strict"
        assert body["backend"] == "direct"
        assert body["policies"] == 1
        assert resp.headers["X-API-Version"] == "v1"

    def test_version(self, client: TestClient) -> None:
        assert client.get("/version").json()["version"] == "v1"


class TestSessionFlow:
    def test_init_and_lookup(self, client: TestClient) -> None:
        resp = client.post("/api/v1/session/init", json={"tools": ["readFile"]})
        assert resp.status_code == 200
        session = resp.json()
        assert session["capabilities"] == ["readFile"]

        again = client.get(f"/api/v1/session/{session['sessionId']}")
        assert again.json() == session

    def test_default_capabilities(self, client: TestClient) -> None:
        resp = client.post("/api/v1/session/init", json={})
        assert resp.json()["capabilities"] == ["readFile", "writeFile", "runCommand", "listFiles"]
        assert client.get("/api/v1/session/capabilities").json()["tools"] == resp.json()["capabilities"]

    def test_unknown_session(self, client: TestClient) -> None:
        resp = client.get("/api/v1/session/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Session not found"}


class TestFiles:
    def test_read_write_list(self, client: TestClient, workspace: Path) -> None:
        assert client.get("/api/v1/files/src/index.ts").json() == {
            "path": "src/index.ts",
            "content": "export const answer = 42;\n",
        }

        resp = client.post("/api/v1/files", json={"path": "notes/todo.md", "content": "- ship"})
        assert resp.json() == {"success": True, "message": "File written successfully"}
        assert (workspace / "notes" / "todo.md").read_text() == "- ship"

        assert client.get("/api/v1/files/list").json()["files"] == ["notes", "src"]
        assert client.get("/api/v1/files/list/src").json() == {"path": "src", "files": ["index.ts"]}

    def test_missing_file(self, client: TestClient) -> None:
        resp = client.get("/api/v1/files/missing.txt")
        assert resp.status_code == 404
        assert resp.json() == {"error": "File not found: missing.txt"}

    def test_unversioned_routes(self, client: TestClient) -> None:
        assert client.get("/files/src/index.ts").status_code == 200


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX binaries required")
class TestExecution:
    def test_run_lookup_cancel(self, client: TestClient) -> None:
        resp = client.post("/api/v1/execute", json={"command": "echo", "args": ["hello"]})
        assert resp.status_code == 200
        record = resp.json()
        assert record["status"] == "completed"
        assert record["exitCode"] == 0
        assert record["logs"][0] == "Command: echo hello"
        assert "STDOUT: hello\n" in record["logs"]

        execution_id = record["executionId"]
        assert client.get(f"/api/v1/execute/{execution_id}").json() == record

        resp = client.delete(f"/api/v1/execute/{execution_id}")
        assert resp.json() == {"success": True, "message": "Execution cancelled"}
        assert client.get(f"/api/v1/execute/{execution_id}").status_code == 404
        assert client.delete(f"/api/v1/execute/{execution_id}").status_code == 404

    def test_timeout(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/execute",
            json={"command": "sleep", "args": ["5"], "options": {"timeout": 200}},
        )
        record = resp.json()
        assert record["status"] == "timedOut"
        assert record["exitCode"] == 1
        assert "Error: Command timed out after 200ms" in record["logs"]

    def test_request_is_audited(self, client: TestClient) -> None:
        resp = client.post("/api/v1/execute", json={"command": "echo", "args": ["x"]})
        request_id = resp.headers["X-Request-Id"]
        events = [e["event"] for e in client.get(f"/api/v1/audit/{request_id}").json()]
        assert events == [
            AuditEvent.REQUEST_START.value,
            AuditEvent.EXECUTION_START.value,
            AuditEvent.EXECUTION_END.value,
            AuditEvent.REQUEST_END.value,
        ]


class TestPolicyCrud:
    def test_create_get_replace_delete(self, client: TestClient) -> None:
        policy = {
            "id": "extra",
            "name": "Extra",
            "rules": [{"id": "ls", "type": "commandExecution", "action": "allow", "resource": "ls"}],
        }
        resp = client.post("/api/v1/policy", json=policy)
        assert resp.status_code == 201
        created = resp.json()
        assert created["createdAt"]

        ids = [p["id"] for p in client.get("/api/v1/policy").json()["policies"]]
        assert ids == ["e2e", "extra"]

        resp = client.put(
            "/api/v1/policy/extra",
            json={"id": "ignored", "name": "Renamed", "rules": []},
        )
        replaced = resp.json()
        assert replaced["id"] == "extra"
        assert replaced["name"] == "Renamed"
        assert replaced["createdAt"] == created["createdAt"]

        assert client.delete("/api/v1/policy/extra").json()["success"] is True
        assert client.get("/api/v1/policy/extra").status_code == 404
        assert client.delete("/api/v1/policy/extra").status_code == 404

    def test_invalid_policy_rejected(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/policy",
            json={"id": "bad", "name": "bad", "rules": [{"id": "r", "type": "nope", "action": "allow", "resource": "*"}]},
        )
        assert resp.status_code == 422


class TestObservability:
    def test_audit_logs_and_metrics(self, client: TestClient) -> None:
        client.get("/api/v1/files/list")
        logs = client.get("/api/v1/audit/logs", params={"event": "file.access"}).json()
        assert logs["total"] == 1
        assert logs["entries"][0]["detail"] == {"path": "", "operation": "list"}

        metrics = client.get("/api/v1/metrics").json()
        assert metrics["error_rates"]["total_requests"] >= 2
        assert metrics["latency"]["count"] >= 1

    def test_security_alerts(self, client: TestClient) -> None:
        client.get("/api/v1/files/..%2F..%2Fetc%2Fpasswd")
        client.post("/api/v1/execute", json={"command": "echo", "args": ["$(id)"]})
        alerts = client.get("/api/v1/security/alerts").json()
        assert {a["type"] for a in alerts["alerts"]} >= {"command_injection"}
