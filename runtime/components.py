"""Shared initialisation logic for the Bastion HTTP and MCP servers."""

from __future__ import annotations

import logging

from contracts.manifest import Manifest, PolicyMode

from runtime.audit.logger import JsonlAuditLogger
from runtime.manifest_loader import load_manifest, manifest_path_from_env
from runtime.policy import BastionPolicyEngine
from runtime.rate_limiter import RateLimiter
from runtime.sandbox.manager import ExecutionSandboxManager
from runtime.sessions import SessionStore
from runtime.tool_router import ToolRouter
from runtime.tools.registry import create_default_registry
from runtime.workspace import Workspace

logger = logging.getLogger(__name__)


class BastionComponents:
    """Container for one service instance's engines and stores."""

    def __init__(
        self,
        manifest: Manifest,
        rate_limiter: RateLimiter,
        policy: BastionPolicyEngine,
        sandbox: ExecutionSandboxManager,
        workspace: Workspace,
        sessions: SessionStore,
        tools: ToolRouter,
        audit: JsonlAuditLogger,
    ) -> None:
        self.manifest = manifest
        self.rate_limiter = rate_limiter
        self.policy = policy
        self.sandbox = sandbox
        self.workspace = workspace
        self.sessions = sessions
        self.tools = tools
        self.audit = audit


def build_components(manifest: Manifest) -> BastionComponents:
    """Construct every component from a validated manifest.

    ``developer`` policy mode keeps the permissive empty-engine default
    and installs the development policy when none is declared; ``strict``
    denies everything the declared policies do not allow.
    """
    developer = manifest.runtime.policy_mode == PolicyMode.DEVELOPER

    rate_limiter = RateLimiter(
        default_limit=manifest.rate_limit.limit,
        default_window_ms=manifest.rate_limit.window_ms,
    )
    policy = BastionPolicyEngine(rate_limiter, allow_when_empty=developer)
    for p in manifest.policies:
        policy.add_policy(p)
    if developer and not manifest.policies:
        policy.add_policy(BastionPolicyEngine.create_default_policy())
    if not developer and not manifest.policies:
        logger.warning("Strict policy mode with no policies: every request will be denied")

    audit = JsonlAuditLogger(manifest.audit.path)
    sandbox = ExecutionSandboxManager(policy, manifest.sandbox, audit=audit)
    workspace = Workspace(manifest.sandbox.workspace_path, policy, audit)
    tools = ToolRouter(
        policy=policy,
        registry=create_default_registry(),
        sandbox=sandbox,
        logger=audit,
        tool_configs=manifest.tools,
    )

    return BastionComponents(
        manifest=manifest,
        rate_limiter=rate_limiter,
        policy=policy,
        sandbox=sandbox,
        workspace=workspace,
        sessions=SessionStore(),
        tools=tools,
        audit=audit,
    )


def init_bastion(manifest_path: str | None = None) -> BastionComponents:
    """Load the manifest and build components.

    Uses ``BASTION_MANIFEST`` if *manifest_path* is not provided.
    """
    if manifest_path is None:
        manifest_path = manifest_path_from_env()
    manifest = load_manifest(manifest_path)
    return build_components(manifest)
