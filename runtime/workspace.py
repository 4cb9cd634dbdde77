"""Workspace file service: read, write and list files under one root.

Paths are always relative to the workspace root.  The guard runs before
the policy check, the policy check before any filesystem access.
"""

from __future__ import annotations

import logging
from pathlib import Path

from contracts.api import FileContent, FileListing, StatusMessage
from contracts.audit import AuditEntry, AuditEvent, AuditLogger
from contracts.errors import ForbiddenError, NotFoundError, ValidationError
from contracts.policy import ActionType, Caller, PolicyEngine
from runtime.policy import require_allowed

logger = logging.getLogger(__name__)


def check_relative_path(path: str) -> None:
    """Reject traversal sequences, absolute paths and NUL bytes."""
    if "\x00" in path:
        raise ValidationError("Invalid path")
    if "../" in path or "..\\" in path or path == "..":
        raise ValidationError("Invalid path")
    if path.startswith(("/", "\\")) or Path(path).is_absolute():
        raise ValidationError("Invalid path")


class Workspace:
    """Policy-checked filesystem access rooted at ``root``."""

    def __init__(
        self,
        root: str | Path,
        policy: PolicyEngine,
        audit: AuditLogger | None = None,
    ) -> None:
        self._root = Path(root)
        self._policy = policy
        self._audit = audit

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, path: str) -> Path:
        check_relative_path(path)
        root = self._root.resolve()
        resolved = (root / path).resolve()
        # symlinks may still point outside the root
        if resolved != root and root not in resolved.parents:
            raise ForbiddenError("Path escapes the workspace")
        return resolved

    # ── operations ──────────────────────────────────────────────────

    def read_file(self, path: str, caller: Caller | None = None) -> FileContent:
        target = self._authorize(path, caller, "read")
        if not target.exists():
            raise NotFoundError(f"File not found: {path}")
        if target.is_dir():
            raise ValidationError(f"Path is a directory: {path}")
        content = target.read_text(encoding="utf-8", errors="replace")
        return FileContent(path=path, content=content)

    def write_file(self, path: str, content: str, caller: Caller | None = None) -> StatusMessage:
        target = self._authorize(path, caller, "write")
        if target.is_dir():
            raise ValidationError(f"Path is a directory: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.info("Wrote %d bytes to %s", len(content.encode()), path)
        return StatusMessage(success=True, message="File written successfully")

    def list_files(self, path: str = "", caller: Caller | None = None) -> FileListing:
        target = self._authorize(path, caller, "list")
        if not target.exists():
            raise NotFoundError(f"Directory not found: {path}")
        if not target.is_dir():
            raise ValidationError(f"Path is not a directory: {path}")
        files = sorted(entry.name for entry in target.iterdir())
        return FileListing(path=path, files=files)

    # ── internal ────────────────────────────────────────────────────

    def _authorize(self, path: str, caller: Caller | None, operation: str) -> Path:
        caller = caller or Caller()
        try:
            target = self.resolve(path)
        except ValidationError:
            self._log(caller, AuditEvent.VALIDATION_REJECT, {"path": path, "operation": operation})
            raise
        require_allowed(
            self._policy,
            caller.context(path, ActionType.FILE_ACCESS),
            audit=self._audit,
            request_id=caller.request_id,
        )
        self._log(caller, AuditEvent.FILE_ACCESS, {"path": path, "operation": operation})
        return target

    def _log(self, caller: Caller, event: AuditEvent, detail: dict) -> None:
        if self._audit is None:
            return
        self._audit.log(AuditEntry(
            request_id=caller.request_id,
            event=event,
            session_id=caller.session_id,
            ip_address=caller.ip_address,
            detail=detail,
        ))
