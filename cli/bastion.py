"""Bastion CLI: manifests, servers, audit logs and a small HTTP client."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

# Ensure project root is importable when running as script
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

DEFAULT_MANIFEST = "bastion.yaml"
DEFAULT_URL = "http://127.0.0.1:8080"


# ── Server-side commands ─────────────────────────────────────────────


def cmd_validate(args: argparse.Namespace) -> None:
    """Validate a bastion.yaml manifest."""
    from runtime.manifest_loader import load_manifest

    path = args.manifest
    try:
        manifest = load_manifest(path)
    except FileNotFoundError:
        print(f"Error: manifest not found: {path}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Error: invalid manifest: {exc}", file=sys.stderr)
        sys.exit(1)

    sandbox = manifest.sandbox
    print(f"Manifest OK: {manifest.app.name} v{manifest.app.version}")
    print(f"  Policy mode:  {manifest.runtime.policy_mode.value}")
    print(f"  API version:  {manifest.runtime.api_version}")
    print(f"  Backend:      {'docker (' + sandbox.docker_image + ')' if sandbox.use_docker else 'direct'}")
    print(f"  Workspace:    {sandbox.workspace_path}")
    print(f"  Rate limit:   {manifest.rate_limit.limit} per {manifest.rate_limit.window_ms}ms")
    print(f"  Policies:     {', '.join(p.id for p in manifest.policies) or '(none)'}")
    print(f"  Audit path:   {manifest.audit.path}")

    from runtime.tools.registry import create_default_registry

    available = set(create_default_registry().list_tools())
    for tool_name in manifest.tools:
        if tool_name not in available:
            print(f"  Warning: tool '{tool_name}' is not a known built-in tool")

    if manifest.runtime.policy_mode.value == "strict" and not manifest.policies:
        print("  Warning: strict mode with no policies denies every request")
    elif manifest.runtime.policy_mode.value == "strict" and not any(
        r.type == "rateLimit" for p in manifest.policies for r in p.rules
    ):
        print("  Warning: no rateLimit rule; the HTTP gate will reject every request")


def cmd_run(args: argparse.Namespace) -> None:
    """Start the Bastion HTTP server."""
    import os

    os.environ["BASTION_MANIFEST"] = args.manifest

    from runtime.manifest_loader import load_manifest

    try:
        manifest = load_manifest(args.manifest)
    except Exception as exc:
        print(f"Error loading manifest: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"Starting Bastion for '{manifest.app.name}'...")
    print(f"  Manifest: {args.manifest}")
    print(f"  Host:     {args.host}")
    print(f"  Port:     {args.port}")
    print(f"  Policy:   {manifest.runtime.policy_mode.value}")
    print(f"  Backend:  {'docker' if manifest.sandbox.use_docker else 'direct'}")
    print()

    import uvicorn

    uvicorn.run(
        "runtime.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


def cmd_mcp(args: argparse.Namespace) -> None:
    """Start the MCP server on stdio."""
    import os

    os.environ["BASTION_MANIFEST"] = args.manifest

    from runtime.mcp_server import main as mcp_main

    mcp_main()


def cmd_logs(args: argparse.Namespace) -> None:
    """Query audit logs."""
    from contracts.audit import AuditEvent
    from runtime.audit.query import query_by_event, query_by_request, tail

    log_path = args.log_path

    if not Path(log_path).exists():
        print(f"No audit log found at {log_path}", file=sys.stderr)
        sys.exit(1)

    if args.request_id:
        entries = query_by_request(log_path, args.request_id)
    elif args.event:
        try:
            event = AuditEvent(args.event)
        except ValueError:
            valid = ", ".join(e.value for e in AuditEvent)
            print(f"Unknown event type: {args.event}", file=sys.stderr)
            print(f"Valid events: {valid}", file=sys.stderr)
            sys.exit(1)
        entries = query_by_event(log_path, event, limit=args.limit)
    else:
        entries = tail(log_path, n=args.limit)

    if not entries:
        print("No matching audit entries.")
        return

    for entry in entries:
        record = json.loads(entry.model_dump_json())
        if args.json:
            print(json.dumps(record))
        else:
            ts = record["ts"][:19]
            event = record["event"]
            rid = record["request_id"][:8]
            who = f"{record['session_id']}@{record['ip_address']}"
            detail = json.dumps(record.get("detail", {}))
            print(f"{ts}  [{event:17s}]  {rid:8s}  {who}  {detail}")


def cmd_policy_default(args: argparse.Namespace) -> None:
    """Print the development policy as JSON."""
    from runtime.policy import BastionPolicyEngine

    policy = BastionPolicyEngine.create_default_policy()
    print(json.dumps(policy.to_wire(), indent=2))


# ── Client commands (talk to a running server) ───────────────────────


def _request(args: argparse.Namespace, method: str, path: str, **kwargs: Any) -> Any:
    import httpx

    url = f"{args.url.rstrip('/')}/api/{args.api_version}{path}"
    headers = {"X-Session-Id": args.session_id} if args.session_id else {}
    try:
        resp = httpx.request(method, url, headers=headers, timeout=args.http_timeout, **kwargs)
    except httpx.HTTPError as exc:
        print(f"Error: cannot reach {args.url}: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        body = resp.json()
    except ValueError:
        body = {"error": resp.text}
    if resp.status_code >= 400:
        message = body.get("error", body) if isinstance(body, dict) else body
        print(f"Error ({resp.status_code}): {message}", file=sys.stderr)
        sys.exit(1)
    return body


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2))


def cmd_init(args: argparse.Namespace) -> None:
    _print_json(_request(args, "POST", "/session/init", json={"tools": args.tools}))


def cmd_read(args: argparse.Namespace) -> None:
    body = _request(args, "GET", f"/files/{args.path}")
    print(body["content"], end="")


def cmd_write(args: argparse.Namespace) -> None:
    content = Path(args.source).read_text(encoding="utf-8") if args.source else args.content
    if content is None:
        content = sys.stdin.read()
    _print_json(_request(args, "POST", "/files", json={"path": args.path, "content": content}))


def cmd_list(args: argparse.Namespace) -> None:
    path = f"/files/list/{args.path}" if args.path else "/files/list"
    body = _request(args, "GET", path)
    for name in body["files"]:
        print(name)


def cmd_exec(args: argparse.Namespace) -> None:
    payload = {"command": args.cmd, "args": args.cmd_args, "options": {"timeout": args.timeout}}
    record = _request(args, "POST", "/execute", json=payload)
    if args.json:
        _print_json(record)
    else:
        print(f"{record['executionId']}  status={record['status']}  exit={record['exitCode']}")
        for line in record["logs"]:
            print(f"  {line}")
    if record["exitCode"]:
        sys.exit(record["exitCode"])


def cmd_status(args: argparse.Namespace) -> None:
    _print_json(_request(args, "GET", f"/execute/{args.execution_id}"))


def cmd_cancel(args: argparse.Namespace) -> None:
    _print_json(_request(args, "DELETE", f"/execute/{args.execution_id}"))


def _add_client_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--url", default=DEFAULT_URL, help="Server base URL")
    p.add_argument("--api-version", default="v1", help="API version prefix")
    p.add_argument("--session-id", "-s", help="Session id sent as X-Session-Id")
    p.add_argument("--http-timeout", type=float, default=120.0, help="HTTP timeout in seconds")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bastion",
        description="Bastion — policy-gated workspace control plane",
    )
    sub = parser.add_subparsers(dest="command")

    # validate
    p_val = sub.add_parser("validate", help="Validate a bastion.yaml manifest")
    p_val.add_argument("manifest", nargs="?", default=DEFAULT_MANIFEST, help="Path to manifest")
    p_val.set_defaults(func=cmd_validate)

    # run
    p_run = sub.add_parser("run", help="Start the HTTP server")
    p_run.add_argument("manifest", nargs="?", default=DEFAULT_MANIFEST, help="Path to manifest")
    p_run.add_argument("--host", default="127.0.0.1", help="Bind address")
    p_run.add_argument("--port", type=int, default=8080, help="Port")
    p_run.add_argument("--reload", action="store_true", help="Enable auto-reload")
    p_run.set_defaults(func=cmd_run)

    # mcp
    p_mcp = sub.add_parser("mcp", help="Start the MCP server on stdio")
    p_mcp.add_argument("manifest", nargs="?", default=DEFAULT_MANIFEST, help="Path to manifest")
    p_mcp.set_defaults(func=cmd_mcp)

    # logs
    p_logs = sub.add_parser("logs", help="Query audit logs")
    p_logs.add_argument("log_path", help="Path to audit JSONL file")
    p_logs.add_argument("--request-id", "-r", help="Filter by request ID")
    p_logs.add_argument("--event", "-e", help="Filter by event type")
    p_logs.add_argument("--limit", "-n", type=int, default=20, help="Max entries")
    p_logs.add_argument("--json", action="store_true", help="Output raw JSON")
    p_logs.set_defaults(func=cmd_logs)

    # policy
    p_pol = sub.add_parser("policy", help="Policy helpers")
    pol_sub = p_pol.add_subparsers(dest="policy_command", required=True)
    p_pol_def = pol_sub.add_parser("default", help="Print the development policy as JSON")
    p_pol_def.set_defaults(func=cmd_policy_default)

    # client: init
    p_init = sub.add_parser("init", help="Start a session on a running server")
    p_init.add_argument("tools", nargs="*", help="Capabilities to request")
    _add_client_options(p_init)
    p_init.set_defaults(func=cmd_init)

    # client: read
    p_read = sub.add_parser("read", help="Print a workspace file")
    p_read.add_argument("path", help="Path relative to the workspace")
    _add_client_options(p_read)
    p_read.set_defaults(func=cmd_read)

    # client: write
    p_write = sub.add_parser("write", help="Write a workspace file")
    p_write.add_argument("path", help="Path relative to the workspace")
    p_write.add_argument("content", nargs="?", help="Content (default: stdin)")
    p_write.add_argument("--from", dest="source", help="Read content from a local file")
    _add_client_options(p_write)
    p_write.set_defaults(func=cmd_write)

    # client: list
    p_list = sub.add_parser("list", help="List a workspace directory")
    p_list.add_argument("path", nargs="?", default="", help="Directory (default: root)")
    _add_client_options(p_list)
    p_list.set_defaults(func=cmd_list)

    # client: exec
    p_exec = sub.add_parser("exec", help="Run a command in the sandbox")
    p_exec.add_argument("cmd", help="Command to run")
    p_exec.add_argument("cmd_args", nargs=argparse.REMAINDER, help="Command arguments")
    p_exec.add_argument("--timeout", type=int, default=30_000, help="Timeout in milliseconds")
    p_exec.add_argument("--json", action="store_true", help="Output the raw record")
    _add_client_options(p_exec)
    p_exec.set_defaults(func=cmd_exec)

    # client: status / cancel
    p_status = sub.add_parser("status", help="Show an execution record")
    p_status.add_argument("execution_id")
    _add_client_options(p_status)
    p_status.set_defaults(func=cmd_status)

    p_cancel = sub.add_parser("cancel", help="Cancel an execution")
    p_cancel.add_argument("execution_id")
    _add_client_options(p_cancel)
    p_cancel.set_defaults(func=cmd_cancel)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
