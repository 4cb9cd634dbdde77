"""Rule-based policy engine fused with the fixed-window rate limiter.

Every check runs the rate-limit gate first; a requester over budget is
denied before any rule is looked at.  Rules are then evaluated
first-match-wins in policy insertion order and rule declaration order,
falling back to deny.
"""

from __future__ import annotations

import logging
import threading

from contracts.audit import AuditEntry, AuditEvent, AuditLogger
from contracts.errors import ForbiddenError, RateLimitedError
from contracts.policy import (
    CommandExecutionRule,
    ConditionOperator,
    FileAccessRule,
    IpAddressCondition,
    Policy,
    PolicyCondition,
    PolicyDecision,
    PolicyEngine,
    PolicyEvaluationContext,
    PolicyRule,
    PolicyVerdict,
    RateLimitCondition,
    RateLimitRule,
    RuleAction,
    SessionIdCondition,
    TimeRangeCondition,
)
from runtime.rate_limiter import DEFAULT_LIMIT, DEFAULT_WINDOW_MS, RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_POLICY_ID = "default-policy"


class BastionPolicyEngine(PolicyEngine):
    """In-memory policy store plus evaluator.

    ``allow_when_empty`` decides the answer when no policy is registered:
    True keeps the permissive bootstrap behaviour (development only),
    False denies everything until a policy is added.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        *,
        allow_when_empty: bool = True,
    ) -> None:
        self._rate_limiter = rate_limiter or RateLimiter()
        self._allow_when_empty = allow_when_empty
        self._policies: dict[str, Policy] = {}
        self._lock = threading.Lock()
        if allow_when_empty:
            logger.warning("Policy engine allows all actions while no policy is registered")

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def allow_when_empty(self) -> bool:
        return self._allow_when_empty

    # ── policy lifecycle ────────────────────────────────────────────

    def add_policy(self, policy: Policy) -> None:
        with self._lock:
            self._policies[policy.id] = policy
        logger.info("Policy '%s' registered with %d rule(s)", policy.id, len(policy.rules))

    def remove_policy(self, policy_id: str) -> bool:
        with self._lock:
            removed = self._policies.pop(policy_id, None)
        if removed is not None:
            logger.info("Policy '%s' removed", policy_id)
        return removed is not None

    def get_policy(self, policy_id: str) -> Policy | None:
        with self._lock:
            return self._policies.get(policy_id)

    def list_policies(self) -> list[Policy]:
        with self._lock:
            return list(self._policies.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)

    # ── evaluation ──────────────────────────────────────────────────

    def evaluate(self, context: PolicyEvaluationContext) -> PolicyDecision:
        policies = self.list_policies()

        if not self._within_rate_limit(context, policies):
            return PolicyDecision(
                verdict=PolicyVerdict.DENY,
                rule="rate_limit",
                reason=f"Rate limit exceeded for '{context.rate_key}'",
                rate_limited=True,
            )

        if not policies:
            if self._allow_when_empty:
                return PolicyDecision(
                    verdict=PolicyVerdict.ALLOW,
                    rule="no_policies",
                    reason="No policies registered; permissive bootstrap default",
                )
            return PolicyDecision(
                verdict=PolicyVerdict.DENY,
                rule="no_policies",
                reason="No policies registered",
            )

        for policy in policies:
            for rule in policy.rules:
                if _rule_matches(rule, context):
                    verdict = PolicyVerdict(rule.action.value)
                    logger.debug(
                        "%s %s on '%s' by rule '%s' (policy '%s')",
                        verdict.value, context.action.value, context.resource,
                        rule.id, policy.id,
                    )
                    return PolicyDecision(
                        verdict=verdict,
                        rule=rule.id,
                        policy=policy.id,
                        reason=f"Rule '{rule.id}' {rule.action.value}s '{rule.resource}'",
                    )

        return PolicyDecision(
            verdict=PolicyVerdict.DENY,
            rule="default_deny",
            reason=f"No rule matches {context.action.value} on '{context.resource}'",
        )

    def _within_rate_limit(
        self, context: PolicyEvaluationContext, policies: list[Policy]
    ) -> bool:
        for policy in policies:
            for rule in policy.rules:
                if isinstance(rule, RateLimitRule) and _rule_matches(rule, context):
                    limit, window_ms = rate_limit_parameters(rule)
                    return self._rate_limiter.is_allowed(context, limit, window_ms)
        return self._rate_limiter.is_allowed(context)

    # ── factory ─────────────────────────────────────────────────────

    @staticmethod
    def create_default_policy() -> Policy:
        """Permissive development policy: all file access, all commands, 100 req/min."""
        return Policy(
            id=DEFAULT_POLICY_ID,
            name="Default Development Policy",
            description="Default policy for development environments",
            rules=[
                FileAccessRule(
                    id="allow-all-file-access", action=RuleAction.ALLOW, resource="*"
                ),
                CommandExecutionRule(
                    id="allow-all-command-execution", action=RuleAction.ALLOW, resource="*"
                ),
                RateLimitRule(
                    id="default-rate-limit",
                    action=RuleAction.ALLOW,
                    resource="*",
                    conditions=[
                        RateLimitCondition(operator=ConditionOperator.LIMIT, value=DEFAULT_LIMIT),
                        RateLimitCondition(operator=ConditionOperator.WINDOW, value=DEFAULT_WINDOW_MS),
                    ],
                ),
            ],
        )


# ── matching helpers ─────────────────────────────────────────────────


def matches_resource_pattern(pattern: str, resource: str) -> bool:
    """``*`` matches anything; ``prefix*`` matches by prefix; otherwise exact."""
    if pattern == "*" or pattern == resource:
        return True
    if pattern.endswith("*"):
        return resource.startswith(pattern[:-1])
    return False


def rate_limit_parameters(rule: PolicyRule) -> tuple[int, int]:
    """Return (limit, window_ms) from a rule's rateLimit conditions."""
    limit = _numeric_condition(rule, ConditionOperator.LIMIT, DEFAULT_LIMIT)
    window_ms = _numeric_condition(rule, ConditionOperator.WINDOW, DEFAULT_WINDOW_MS)
    return limit, window_ms


def _numeric_condition(rule: PolicyRule, operator: ConditionOperator, default: int) -> int:
    for condition in rule.conditions:
        if isinstance(condition, RateLimitCondition) and condition.operator == operator:
            try:
                value = int(float(condition.value))
            except (ValueError, OverflowError):
                return default
            # zero or negative values fall back to the default
            return value if value > 0 else default
    return default


def _rule_matches(rule: PolicyRule, context: PolicyEvaluationContext) -> bool:
    if rule.action_type != context.action:
        return False
    if not matches_resource_pattern(rule.resource, context.resource):
        return False
    return all(_condition_matches(c, context) for c in rule.conditions)


def _condition_matches(condition: PolicyCondition, context: PolicyEvaluationContext) -> bool:
    if isinstance(condition, IpAddressCondition):
        return _compare(condition.operator, context.ip_address, str(condition.value))
    if isinstance(condition, SessionIdCondition):
        return _compare(condition.operator, context.session_id, str(condition.value))
    if isinstance(condition, TimeRangeCondition):
        # TODO: evaluate time windows once a value format ("HH:MM-HH:MM") is agreed on
        logger.debug("timeRange condition accepted without evaluation")
        return True
    if isinstance(condition, RateLimitCondition):
        # consumed by the rate-limit gate, not here
        return True
    return False


def _compare(operator: ConditionOperator, actual: str, expected: str) -> bool:
    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if operator == ConditionOperator.CONTAINS:
        return expected in actual
    if operator == ConditionOperator.STARTS_WITH:
        return actual.startswith(expected)
    if operator == ConditionOperator.ENDS_WITH:
        return actual.endswith(expected)
    if operator == ConditionOperator.GREATER_THAN:
        return actual > expected
    if operator == ConditionOperator.LESS_THAN:
        return actual < expected
    # limit / window carry no meaning for string conditions
    return False


# ── enforcement helper shared by the transports and the sandbox ──────


def require_allowed(
    engine: PolicyEngine,
    context: PolicyEvaluationContext,
    *,
    audit: AuditLogger | None = None,
    request_id: str = "",
) -> PolicyDecision:
    """Evaluate *context*; raise ``RateLimitedError`` / ``ForbiddenError`` on deny."""
    decision = engine.evaluate(context)
    if decision.allowed:
        return decision

    logger.warning(
        "Denied %s on '%s' for %s: %s",
        context.action.value, context.resource, context.rate_key, decision.reason,
    )
    if audit is not None:
        audit.log(
            AuditEntry(
                request_id=request_id,
                event=AuditEvent.RATE_LIMITED if decision.rate_limited else AuditEvent.POLICY_BLOCK,
                session_id=context.session_id,
                ip_address=context.ip_address,
                detail={
                    "action": context.action.value,
                    "resource": context.resource,
                    "rule": decision.rule,
                    "reason": decision.reason,
                },
            )
        )
    if decision.rate_limited:
        raise RateLimitedError("Rate limit exceeded")
    raise ForbiddenError("Access denied by policy")
