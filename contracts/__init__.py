"""Shared contracts — source of truth for all Bastion interfaces."""

from contracts.api import Capabilities, FileContent, FileListing, SessionInfo, ToolSummary
from contracts.audit import AuditEntry, AuditEvent, AuditLogger
from contracts.errors import (
    BastionError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from contracts.execution import (
    BackendKind,
    CommandRequest,
    ExecutionOptions,
    ExecutionRecord,
    ExecutionStatus,
)
from contracts.manifest import Manifest, PolicyMode, RateLimitConfig, SandboxConfig
from contracts.policy import (
    ActionType,
    Caller,
    Policy,
    PolicyCondition,
    PolicyDecision,
    PolicyEngine,
    PolicyEvaluationContext,
    PolicyRule,
    PolicyVerdict,
    RateLimitStatus,
    RuleAction,
)
from contracts.tool_sdk import BaseTool, ToolContext, ToolDefinition, ToolOutput

__all__ = [
    # api
    "Capabilities",
    "FileContent",
    "FileListing",
    "SessionInfo",
    "ToolSummary",
    # audit
    "AuditEntry",
    "AuditEvent",
    "AuditLogger",
    # errors
    "BastionError",
    "ForbiddenError",
    "InternalError",
    "NotFoundError",
    "RateLimitedError",
    "ValidationError",
    # execution
    "BackendKind",
    "CommandRequest",
    "ExecutionOptions",
    "ExecutionRecord",
    "ExecutionStatus",
    # manifest
    "Manifest",
    "PolicyMode",
    "RateLimitConfig",
    "SandboxConfig",
    # policy
    "ActionType",
    "Caller",
    "Policy",
    "PolicyCondition",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyEvaluationContext",
    "PolicyRule",
    "PolicyVerdict",
    "RateLimitStatus",
    "RuleAction",
    # tool sdk
    "BaseTool",
    "ToolContext",
    "ToolDefinition",
    "ToolOutput",
]
