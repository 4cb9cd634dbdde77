"""Execution sandbox manager.

Turns a command request into exactly one tracked, time-bounded execution:
validate, authorize, dispatch to the configured backend, record.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
import uuid
from datetime import datetime, timezone

from contracts.audit import AuditEntry, AuditEvent, AuditLogger
from contracts.errors import InternalError, ValidationError
from contracts.execution import (
    CommandRequest,
    ExecutionRecord,
    ExecutionStatus,
)
from contracts.manifest import SandboxConfig
from contracts.policy import ActionType, PolicyEngine, PolicyEvaluationContext
from runtime.policy import require_allowed
from runtime.sandbox.backends import (
    DirectBackend,
    DockerBackend,
    ExecutionBackend,
    ExecutionHandle,
    ProcessOutcome,
)
from runtime.sandbox.validation import validate_command

logger = logging.getLogger(__name__)

EXIT_CODE_TIMEOUT = 1
EXIT_CODE_NOT_FOUND = 127


def new_execution_id() -> str:
    """``exec-`` + hex epoch millis + random suffix; never reused."""
    return f"exec-{int(time.time() * 1000):x}{secrets.token_hex(4)}"


def create_backend(config: SandboxConfig) -> ExecutionBackend:
    if config.use_docker:
        return DockerBackend(config.workspace_path, config.docker_image)
    return DirectBackend(config.workspace_path)


class ExecutionSandboxManager:
    """Validates, authorizes, runs and tracks commands.

    The backend is chosen once, at construction.  Records live in memory
    until ``cancel_execution`` removes them.
    """

    def __init__(
        self,
        policy: PolicyEngine,
        config: SandboxConfig | None = None,
        *,
        audit: AuditLogger | None = None,
        backend: ExecutionBackend | None = None,
    ) -> None:
        self._policy = policy
        self._config = config or SandboxConfig()
        self._audit = audit
        self._backend = backend or create_backend(self._config)
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent)
        self._records: dict[str, ExecutionRecord] = {}
        self._handles: dict[str, ExecutionHandle] = {}
        self._lock = threading.Lock()
        logger.info(
            "Sandbox using %s backend (workspace=%s)",
            self._backend.kind.value, self._backend.workspace,
        )

    @property
    def backend(self) -> ExecutionBackend:
        return self._backend

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._handles)

    # ── public operations ───────────────────────────────────────────

    async def run_command(
        self,
        request: CommandRequest,
        *,
        session_id: str = "unknown",
        ip_address: str = "unknown",
        request_id: str | None = None,
    ) -> ExecutionRecord:
        """Validate, authorize, then execute *request*.

        Raises ``ValidationError`` or ``ForbiddenError`` before anything is
        spawned.  A failing or timed-out command is returned, not raised.
        """
        request_id = request_id or str(uuid.uuid4())
        self._validate(request.command, request.args, request_id, session_id, ip_address)

        context = PolicyEvaluationContext(
            session_id=session_id,
            ip_address=ip_address,
            resource=request.command,
            action=ActionType.COMMAND_EXECUTION,
        )
        require_allowed(self._policy, context, audit=self._audit, request_id=request_id)

        return await self.dispatch(
            request.command,
            request.args,
            timeout_ms=request.options.timeout,
            request_id=request_id,
            session_id=session_id,
            ip_address=ip_address,
        )

    async def dispatch(
        self,
        command: str,
        args: list[str],
        *,
        timeout_ms: int | None = None,
        request_id: str = "",
        session_id: str = "unknown",
        ip_address: str = "unknown",
    ) -> ExecutionRecord:
        """Run an already-authorized command and track it.

        Tools call this directly after their own policy check.  Validation
        still applies.
        """
        self._validate(command, args, request_id, session_id, ip_address)
        timeout_ms = timeout_ms or self._config.default_timeout_ms
        command_line = " ".join([command, *args])

        execution_id = new_execution_id()
        record = ExecutionRecord(
            execution_id=execution_id,
            command=command,
            args=list(args),
            backend=self._backend.kind,
            logs=[f"Command: {command_line}"],
        )
        with self._lock:
            self._records[execution_id] = record
        self._log(
            request_id, AuditEvent.EXECUTION_START, session_id, ip_address,
            {"execution_id": execution_id, "command": command_line, "timeout_ms": timeout_ms},
        )

        try:
            final = await self._execute(record, timeout_ms)
        except Exception as exc:
            logger.exception("Execution %s failed unexpectedly", execution_id)
            self._store_terminal(record.model_copy(update={
                "status": ExecutionStatus.FAILED,
                "exit_code": 1,
                "logs": [*record.logs, f"Error: {exc}"],
                "finished_at": datetime.now(timezone.utc),
            }))
            raise InternalError(f"Execution {execution_id} failed unexpectedly") from exc

        stored = self._store_terminal(final)
        if not stored:
            final = final.model_copy(update={"status": ExecutionStatus.CANCELLED})
        self._log(
            request_id, AuditEvent.EXECUTION_END, session_id, ip_address,
            {
                "execution_id": execution_id,
                "command": command,
                "status": final.status.value,
                "exit_code": final.exit_code,
                "backend": final.backend.value,
            },
        )
        return final

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            record = self._records.get(execution_id)
            return record.model_copy(deep=True) if record is not None else None

    def list_executions(self) -> list[ExecutionRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def cancel_execution(self, execution_id: str) -> bool:
        """Forget the record and stop the process if it is still running."""
        with self._lock:
            record = self._records.pop(execution_id, None)
            handle = self._handles.get(execution_id)
        if record is None:
            return False
        if handle is not None:
            logger.info("Terminating running execution %s", execution_id)
            handle.request_cancel()
        self._log(
            "", AuditEvent.EXECUTION_CANCEL, "unknown", "unknown",
            {"execution_id": execution_id, "was_running": handle is not None},
        )
        return True

    async def shutdown(self) -> None:
        """Terminate every running execution."""
        with self._lock:
            handles = list(self._handles.values())
        if handles:
            logger.info("Terminating %d running execution(s)", len(handles))
            await asyncio.gather(*(h.terminate() for h in handles))

    # ── internals ───────────────────────────────────────────────────

    def _validate(
        self,
        command: str,
        args: list[str],
        request_id: str,
        session_id: str,
        ip_address: str,
    ) -> None:
        try:
            validate_command(command, args)
        except ValidationError as exc:
            self._log(
                request_id, AuditEvent.VALIDATION_REJECT, session_id, ip_address,
                {"command": command, "args": list(args), "reason": exc.message},
            )
            raise

    async def _execute(self, record: ExecutionRecord, timeout_ms: int) -> ExecutionRecord:
        execution_id = record.execution_id
        async with self._semaphore:
            if not self._is_tracked(execution_id):
                # cancelled while waiting for a slot
                return self._finish(record, ExecutionStatus.CANCELLED, None, ["Error: Cancelled before start"])

            started = time.monotonic()
            try:
                handle = await self._backend.spawn(execution_id, record.command, record.args)
            except FileNotFoundError as exc:
                logger.warning("Command not found: %s", record.command)
                return self._finish(
                    record, ExecutionStatus.FAILED, EXIT_CODE_NOT_FOUND, [f"Error: {exc}"]
                )
            except OSError as exc:
                logger.warning("Could not start %s: %s", record.command, exc)
                return self._finish(record, ExecutionStatus.FAILED, 1, [f"Error: {exc}"])

            with self._lock:
                self._handles[execution_id] = handle
                cancelled = execution_id not in self._records
            if cancelled:
                # cancel_execution ran while the process was starting
                handle.request_cancel()
            try:
                outcome = await handle.wait(timeout_ms / 1000)
            finally:
                with self._lock:
                    self._handles.pop(execution_id, None)

            elapsed_ms = int((time.monotonic() - started) * 1000)
            return self._record_outcome(record, outcome, elapsed_ms, timeout_ms)

    def _record_outcome(
        self,
        record: ExecutionRecord,
        outcome: ProcessOutcome,
        elapsed_ms: int,
        timeout_ms: int,
    ) -> ExecutionRecord:
        logs = [f"Execution time: {elapsed_ms}ms"]
        if isinstance(self._backend, DockerBackend):
            logs.append(f"Docker Image: {self._backend.image}")
        if outcome.stdout:
            logs.append(f"STDOUT: {outcome.stdout}")
        if outcome.stderr:
            logs.append(f"STDERR: {outcome.stderr}")

        if outcome.timed_out:
            logger.warning("Execution %s timed out after %dms", record.execution_id, timeout_ms)
            logs.append(f"Error: Command timed out after {timeout_ms}ms")
            return self._finish(record, ExecutionStatus.TIMED_OUT, EXIT_CODE_TIMEOUT, logs)

        if outcome.cancelled:
            logs.append("Error: Cancelled")
            return self._finish(record, ExecutionStatus.CANCELLED, outcome.returncode, logs)

        exit_code = outcome.returncode if outcome.returncode is not None else 1
        if exit_code != 0:
            logs.append(f"Error: Command exited with code {exit_code}")
            return self._finish(record, ExecutionStatus.FAILED, exit_code, logs)
        return self._finish(record, ExecutionStatus.COMPLETED, 0, logs)

    @staticmethod
    def _finish(
        record: ExecutionRecord,
        status: ExecutionStatus,
        exit_code: int | None,
        extra_logs: list[str],
    ) -> ExecutionRecord:
        return record.model_copy(update={
            "status": status,
            "exit_code": exit_code,
            "logs": [*record.logs, *extra_logs],
            "finished_at": datetime.now(timezone.utc),
        })

    def _store_terminal(self, record: ExecutionRecord) -> bool:
        """Overwrite the tracked record unless it was cancelled meanwhile."""
        with self._lock:
            if record.execution_id not in self._records:
                return False
            self._records[record.execution_id] = record
            return True

    def _is_tracked(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._records

    def _log(
        self,
        request_id: str,
        event: AuditEvent,
        session_id: str,
        ip_address: str,
        detail: dict,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(AuditEntry(
            request_id=request_id,
            event=event,
            session_id=session_id,
            ip_address=ip_address,
            detail=detail,
        ))
