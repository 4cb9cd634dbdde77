"""Policy engine contracts.

Policies are ordered collections of rules.  Rules and conditions are
closed tagged unions keyed on ``type``; an unknown kind fails to parse
and never reaches the evaluator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from contracts.model import WireModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionType(str, Enum):
    FILE_ACCESS = "fileAccess"
    COMMAND_EXECUTION = "commandExecution"
    NETWORK_ACCESS = "networkAccess"
    RATE_LIMIT = "rateLimit"


class RuleAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    LIMIT = "limit"
    WINDOW = "window"


# ── Conditions ───────────────────────────────────────────────────────


class _ConditionBase(WireModel):
    operator: ConditionOperator
    value: Union[str, int, float]


class IpAddressCondition(_ConditionBase):
    type: Literal["ipAddress"] = "ipAddress"


class SessionIdCondition(_ConditionBase):
    type: Literal["sessionId"] = "sessionId"


class TimeRangeCondition(_ConditionBase):
    type: Literal["timeRange"] = "timeRange"


class RateLimitCondition(_ConditionBase):
    """Parameterises the rate limiter (``limit`` / ``window``); never gates a match."""

    type: Literal["rateLimit"] = "rateLimit"


PolicyCondition = Annotated[
    Union[IpAddressCondition, SessionIdCondition, TimeRangeCondition, RateLimitCondition],
    Field(discriminator="type"),
]


# ── Rules ────────────────────────────────────────────────────────────


class _RuleBase(WireModel):
    id: str
    action: RuleAction
    resource: str  # exact string, "*", or trailing-wildcard prefix ("src/*")
    conditions: list[PolicyCondition] = []

    @property
    def action_type(self) -> ActionType:
        return ActionType(self.type)  # type: ignore[attr-defined]


class FileAccessRule(_RuleBase):
    type: Literal["fileAccess"] = "fileAccess"


class CommandExecutionRule(_RuleBase):
    type: Literal["commandExecution"] = "commandExecution"


class NetworkAccessRule(_RuleBase):
    type: Literal["networkAccess"] = "networkAccess"


class RateLimitRule(_RuleBase):
    type: Literal["rateLimit"] = "rateLimit"


PolicyRule = Annotated[
    Union[FileAccessRule, CommandExecutionRule, NetworkAccessRule, RateLimitRule],
    Field(discriminator="type"),
]


# ── Policy + evaluation context ──────────────────────────────────────


class Policy(WireModel):
    id: str
    name: str
    description: str = ""
    rules: list[PolicyRule] = []
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class PolicyEvaluationContext(WireModel):
    """Identity + resource + action snapshot for one request.  Never persisted."""

    session_id: str = "unknown"
    ip_address: str = "unknown"
    resource: str
    action: ActionType
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def rate_key(self) -> str:
        return f"{self.session_id}:{self.ip_address}"


@dataclass(frozen=True)
class Caller:
    """Who is asking: identity shared by every check made for one request."""

    session_id: str = "unknown"
    ip_address: str = "unknown"
    request_id: str = ""

    def context(self, resource: str, action: ActionType) -> PolicyEvaluationContext:
        return PolicyEvaluationContext(
            session_id=self.session_id,
            ip_address=self.ip_address,
            resource=resource,
            action=action,
        )


class RateLimitStatus(WireModel):
    remaining: int
    reset_time: int  # epoch millis
    limit: int


class PolicyVerdict(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class PolicyDecision(BaseModel):
    verdict: PolicyVerdict
    rule: str = ""        # which rule triggered the decision
    policy: str = ""      # id of the policy owning that rule
    reason: str = ""      # human-readable explanation
    rate_limited: bool = False

    @property
    def allowed(self) -> bool:
        return self.verdict == PolicyVerdict.ALLOW


class PolicyEngine(ABC):
    """Interface that the runtime policy engine must implement."""

    @abstractmethod
    def add_policy(self, policy: Policy) -> None:
        """Insert or overwrite a policy by id."""
        ...

    @abstractmethod
    def remove_policy(self, policy_id: str) -> bool:
        """Remove a policy; return False if it was not registered."""
        ...

    @abstractmethod
    def get_policy(self, policy_id: str) -> Policy | None:
        """Return a policy by id, or None.  Never raises."""
        ...

    @abstractmethod
    def list_policies(self) -> list[Policy]:
        """Return registered policies in insertion order."""
        ...

    @abstractmethod
    def evaluate(self, context: PolicyEvaluationContext) -> PolicyDecision:
        """Rate-limit gate, then first-match-wins rule evaluation."""
        ...

    def is_action_allowed(self, context: PolicyEvaluationContext) -> bool:
        """Is this context's action allowed?"""
        return self.evaluate(context).allowed
