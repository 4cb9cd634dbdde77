"""Manifest (bastion.yaml) schema — Pydantic models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from contracts.execution import DEFAULT_TIMEOUT_MS
from contracts.policy import Policy


# ── Top-level sections ──────────────────────────────────────────────


class AppInfo(BaseModel):
    name: str
    version: str = "0.0.1"


class PolicyMode(str, Enum):
    STRICT = "strict"
    DEVELOPER = "developer"


class RuntimeConfig(BaseModel):
    base_url: str = "http://127.0.0.1:8080"
    api_version: str = "v1"
    policy_mode: PolicyMode = PolicyMode.STRICT


# ── Sandbox + rate limiting ─────────────────────────────────────────


class SandboxConfig(BaseModel):
    use_docker: bool = False
    docker_image: str = "node:18-alpine"
    workspace_path: str = "./workspace"
    default_timeout_ms: int = Field(DEFAULT_TIMEOUT_MS, gt=0)
    max_concurrent: int = Field(8, ge=1)


class RateLimitConfig(BaseModel):
    limit: int = Field(100, ge=1)
    window_ms: int = Field(60_000, gt=0)
    cleanup_interval_seconds: float = Field(60.0, ge=0)  # 0 disables the sweep


# ── Per-tool config ──────────────────────────────────────────────────


class ToolConfig(BaseModel):
    timeout_ms: int | None = None


# ── Audit + logging ─────────────────────────────────────────────────


class AuditConfig(BaseModel):
    path: str = "audit.jsonl"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    path: str | None = None


# ── Root manifest ────────────────────────────────────────────────────


class Manifest(BaseModel):
    app: AppInfo
    runtime: RuntimeConfig = RuntimeConfig()
    sandbox: SandboxConfig = SandboxConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    policies: list[Policy] = []
    tools: dict[str, ToolConfig] = {}
    audit: AuditConfig = AuditConfig()
    logging: LoggingConfig = LoggingConfig()
