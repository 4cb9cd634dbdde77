"""Metrics aggregation over the audit log.

Computes request throughput, latency percentiles, command and tool usage,
and denial / rate-limit / timeout rates.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from contracts.audit import AuditEntry, AuditEvent
from contracts.execution import ExecutionStatus
from runtime.audit.query import read_entries


def compute_metrics(
    log_path: str | Path,
    *,
    since: datetime | None = None,
    window_seconds: int = 60,
) -> dict[str, Any]:
    """Compute aggregated metrics from the audit log."""
    entries = read_entries(log_path)
    if since:
        entries = [e for e in entries if e.ts >= since]

    return {
        "throughput": _throughput_buckets(entries, window_seconds),
        "latency": _latency_percentiles(entries),
        "command_usage": _usage(entries, AuditEvent.EXECUTION_START, "command"),
        "tool_usage": _usage(entries, AuditEvent.TOOL_CALL, "tool"),
        "error_rates": _error_rates(entries),
        "summary": _summary(entries),
    }


def _throughput_buckets(
    entries: list[AuditEntry], window_seconds: int
) -> list[dict[str, Any]]:
    """Bucket request.start events into time windows."""
    starts = sorted(
        (e for e in entries if e.event == AuditEvent.REQUEST_START), key=lambda e: e.ts
    )
    if not starts:
        return []

    bucket_start = starts[0].ts
    last_ts = starts[-1].ts
    buckets: list[dict[str, Any]] = []

    while bucket_start <= last_ts:
        bucket_end = bucket_start + timedelta(seconds=window_seconds)
        count = sum(1 for e in starts if bucket_start <= e.ts < bucket_end)
        buckets.append({"time": bucket_start.isoformat(), "count": count})
        bucket_start = bucket_end

    return buckets


def _latency_percentiles(entries: list[AuditEntry]) -> dict[str, Any]:
    """p50/p95/p99 request latency in milliseconds.

    Uses the ``duration_ms`` recorded on request.end, falling back to the
    gap between request.start and request.end.
    """
    starts: dict[str, datetime] = {}
    durations: list[float] = []

    for e in entries:
        if e.event == AuditEvent.REQUEST_START:
            starts[e.request_id] = e.ts
        elif e.event == AuditEvent.REQUEST_END:
            if "duration_ms" in e.detail:
                durations.append(float(e.detail["duration_ms"]))
            elif e.request_id in starts:
                durations.append((e.ts - starts[e.request_id]).total_seconds() * 1000)

    if not durations:
        return {"p50": 0, "p95": 0, "p99": 0, "count": 0}

    durations.sort()
    n = len(durations)
    return {
        "p50": round(durations[int(n * 0.50)], 1),
        "p95": round(durations[int(min(n * 0.95, n - 1))], 1),
        "p99": round(durations[int(min(n * 0.99, n - 1))], 1),
        "count": n,
    }


def _usage(entries: list[AuditEntry], event: AuditEvent, key: str) -> list[dict[str, Any]]:
    """Count *event* entries by ``detail[key]``, most used first."""
    counts: dict[str, int] = {}
    for e in entries:
        if e.event == event:
            name = str(e.detail.get(key, "unknown")).split(" ", 1)[0]
            counts[name] = counts.get(name, 0) + 1

    return [{key: name, "count": c} for name, c in sorted(counts.items(), key=lambda x: -x[1])]


def _error_rates(entries: list[AuditEntry]) -> dict[str, Any]:
    total_requests = sum(1 for e in entries if e.event == AuditEvent.REQUEST_START)
    policy_blocks = sum(1 for e in entries if e.event == AuditEvent.POLICY_BLOCK)
    rate_limited = sum(1 for e in entries if e.event == AuditEvent.RATE_LIMITED)
    rejected = sum(1 for e in entries if e.event == AuditEvent.VALIDATION_REJECT)
    ends = [e for e in entries if e.event == AuditEvent.EXECUTION_END]
    timeouts = sum(1 for e in ends if e.detail.get("status") == ExecutionStatus.TIMED_OUT.value)

    return {
        "total_requests": total_requests,
        "policy_blocks": policy_blocks,
        "rate_limited": rate_limited,
        "validation_rejects": rejected,
        "executions": len(ends),
        "timeouts": timeouts,
        "block_rate": round(policy_blocks / max(total_requests, 1), 4),
        "rate_limit_rate": round(rate_limited / max(total_requests, 1), 4),
        "timeout_rate": round(timeouts / max(len(ends), 1), 4),
    }


def _summary(entries: list[AuditEntry]) -> dict[str, Any]:
    if not entries:
        return {"total_entries": 0, "first_entry": None, "last_entry": None}

    sorted_entries = sorted(entries, key=lambda e: e.ts)
    event_counts: dict[str, int] = {}
    for e in entries:
        event_counts[e.event.value] = event_counts.get(e.event.value, 0) + 1

    return {
        "total_entries": len(entries),
        "first_entry": sorted_entries[0].ts.isoformat(),
        "last_entry": sorted_entries[-1].ts.isoformat(),
        "event_counts": event_counts,
    }
