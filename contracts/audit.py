"""Audit logging contracts.

Append-only JSONL, one record per event.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AuditEvent(str, Enum):
    REQUEST_START = "request.start"
    REQUEST_END = "request.end"
    POLICY_BLOCK = "policy.block"
    RATE_LIMITED = "rate.limited"
    VALIDATION_REJECT = "validation.reject"
    EXECUTION_START = "execution.start"
    EXECUTION_END = "execution.end"
    EXECUTION_CANCEL = "execution.cancel"
    TOOL_CALL = "tool.call"
    TOOL_RESULT = "tool.result"
    FILE_ACCESS = "file.access"


class AuditEntry(BaseModel):
    """A single audit log record."""

    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: str
    event: AuditEvent
    session_id: str = "unknown"
    ip_address: str = "unknown"
    detail: dict[str, Any] = {}  # command, resource, rule, exit code, etc.


class AuditLogger(ABC):
    """Interface for the append-only audit logger."""

    @abstractmethod
    def log(self, entry: AuditEntry) -> None:
        """Append an entry to the audit log."""
        ...

    @abstractmethod
    def query_by_request(self, request_id: str) -> list[AuditEntry]:
        """Return all entries for a given request_id."""
        ...

    @abstractmethod
    def query_by_event(self, event: AuditEvent, limit: int = 100) -> list[AuditEntry]:
        """Return recent entries of a given event type."""
        ...

    @abstractmethod
    def tail(self, n: int = 20) -> list[AuditEntry]:
        """Return the last N entries."""
        ...
