"""Security alert heuristics over the audit log.

Scans audit entries for suspicious patterns:
- Shell injection attempts (commands rejected for metacharacters)
- Path traversal attempts (../ in file paths)
- Burst denial (many policy.block / rate.limited events in a short window)
- Repeated denial clustering by resource
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from contracts.audit import AuditEntry, AuditEvent
from runtime.audit.query import read_entries
from runtime.sandbox.validation import contains_shell_metacharacters

# ── Pattern constants ────────────────────────────────────────────────

_PATH_TRAVERSAL_RE = re.compile(r"\.\./|\.\.\\")
_DENIAL_EVENTS = (AuditEvent.POLICY_BLOCK, AuditEvent.RATE_LIMITED)
_BURST_WINDOW_SECONDS = 60
_BURST_THRESHOLD = 5
_REPEAT_THRESHOLD = 3


def detect_alerts(
    log_path: str | Path,
    *,
    since: datetime | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Run all heuristic detectors and return alerts sorted by time (newest first)."""
    entries = read_entries(log_path)
    if since:
        entries = [e for e in entries if e.ts >= since]

    alerts: list[dict[str, Any]] = []
    alerts.extend(_detect_injection(entries))
    alerts.extend(_detect_path_traversal(entries))
    alerts.extend(_detect_burst_denial(entries))
    alerts.extend(_detect_repeated_denial(entries))

    alerts.sort(key=lambda a: a["ts"], reverse=True)
    return alerts[:limit]


def _alert(kind: str, severity: str, e: AuditEntry, detail: dict, message: str) -> dict[str, Any]:
    return {
        "type": kind,
        "severity": severity,
        "ts": e.ts.isoformat(),
        "request_id": e.request_id,
        "session_id": e.session_id,
        "ip_address": e.ip_address,
        "event": e.event.value,
        "detail": detail,
        "message": message,
    }


def _detect_injection(entries: list[AuditEntry]) -> list[dict[str, Any]]:
    alerts = []
    for e in entries:
        if e.event != AuditEvent.VALIDATION_REJECT or "command" not in e.detail:
            continue
        parts = [str(e.detail["command"]), *map(str, e.detail.get("args", []))]
        if any(contains_shell_metacharacters(p) for p in parts):
            line = " ".join(parts)
            alerts.append(_alert(
                "command_injection", "critical", e, e.detail,
                f"Shell metacharacters in command: {line[:120]}",
            ))
    return alerts


def _detect_path_traversal(entries: list[AuditEntry]) -> list[dict[str, Any]]:
    alerts = []
    for e in entries:
        if e.event not in (AuditEvent.VALIDATION_REJECT, AuditEvent.FILE_ACCESS, AuditEvent.POLICY_BLOCK):
            continue
        target = str(e.detail.get("path", e.detail.get("resource", "")))
        if _PATH_TRAVERSAL_RE.search(target):
            alerts.append(_alert(
                "path_traversal", "high", e, e.detail,
                f"Path traversal pattern in file request: {target[:120]}",
            ))
    return alerts


def _detect_burst_denial(entries: list[AuditEntry]) -> list[dict[str, Any]]:
    blocks = sorted((e for e in entries if e.event in _DENIAL_EVENTS), key=lambda e: e.ts)
    if len(blocks) < _BURST_THRESHOLD:
        return []

    for i in range(len(blocks)):
        window_end = blocks[i].ts + timedelta(seconds=_BURST_WINDOW_SECONDS)
        window_blocks = [b for b in blocks[i:] if b.ts <= window_end]
        if len(window_blocks) >= _BURST_THRESHOLD:
            # first burst only
            return [_alert(
                "burst_denial", "medium", blocks[i],
                {"count": len(window_blocks), "window_seconds": _BURST_WINDOW_SECONDS},
                f"{len(window_blocks)} denials within {_BURST_WINDOW_SECONDS}s window",
            )]
    return []


def _detect_repeated_denial(entries: list[AuditEntry]) -> list[dict[str, Any]]:
    blocks = [e for e in entries if e.event == AuditEvent.POLICY_BLOCK]
    by_resource: dict[str, list[AuditEntry]] = {}
    for b in blocks:
        by_resource.setdefault(str(b.detail.get("resource", "unknown")), []).append(b)

    alerts = []
    for resource, hits in by_resource.items():
        if len(hits) >= _REPEAT_THRESHOLD:
            alerts.append(_alert(
                "repeated_denial", "medium", hits[-1],
                {"resource": resource, "count": len(hits)},
                f"Resource '{resource}' denied {len(hits)} times, possible probing",
            ))
    return alerts
