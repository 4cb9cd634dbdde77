"""Command screening applied before any policy check or spawn.

Commands are executed as argument vectors, never through a shell, so the
metacharacter denylist is a second line of defence rather than the only one.
"""

from __future__ import annotations

import logging
import re

from contracts.errors import ValidationError

logger = logging.getLogger(__name__)

# ; || && $ ` > < ( {
_SHELL_META_RE = re.compile(r";|\|\||&&|\$|`|>|<|\(|\{")


def contains_shell_metacharacters(value: str) -> bool:
    return _SHELL_META_RE.search(value) is not None


def validate_command(command: str, args: list[str]) -> None:
    """Raise ``ValidationError`` if the command or any argument is unsafe."""
    if not command or not command.strip():
        raise ValidationError("Command is required")

    for part in (command, *args):
        if contains_shell_metacharacters(part):
            logger.warning("Rejected command %r: shell metacharacter in %r", command, part)
            raise ValidationError("Invalid command or arguments")
