"""Error taxonomy shared by the engines and the transports.

A failing command is not an error: it is an ``ExecutionRecord`` with a
failed or timed-out status, returned normally.
"""

from __future__ import annotations


class BastionError(Exception):
    """Base class; carries the HTTP status the transport should answer with."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BastionError):
    """Malformed or disallowed input.  Raised before any policy evaluation."""

    status_code = 400


class ForbiddenError(BastionError):
    """Denied by policy."""

    status_code = 403


class RateLimitedError(ForbiddenError):
    """Denied because the requester's identity is over budget."""

    status_code = 429


class NotFoundError(BastionError):
    """Unknown execution, policy, session, tool or path."""

    status_code = 404


class InternalError(BastionError):
    """Unexpected fault inside Bastion itself."""

    status_code = 500
