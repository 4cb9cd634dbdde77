"""Unit tests for command screening."""

from __future__ import annotations

import pytest

from contracts.errors import ValidationError
from runtime.sandbox.validation import contains_shell_metacharacters, validate_command


class TestMetacharacters:
    @pytest.mark.parametrize(
        "value",
        ["a;b", "a || b", "a && b", "$HOME", "`id`", "a > f", "a < f", "$(id)", "{a,b}"],
    )
    def test_detected(self, value: str) -> None:
        assert contains_shell_metacharacters(value)

    @pytest.mark.parametrize(
        "value",
        ["hello", "src/a.ts", "--flag=value", "a|b", "a&b", "100%", "*.py", "x]"],
    )
    def test_clean(self, value: str) -> None:
        # single pipe and ampersand are not on the denylist
        assert not contains_shell_metacharacters(value)


class TestValidateCommand:
    def test_accepts_plain_command(self) -> None:
        validate_command("echo", ["hello", "world"])

    @pytest.mark.parametrize("command", ["", "   "])
    def test_rejects_empty_command(self, command: str) -> None:
        with pytest.raises(ValidationError, match="Command is required"):
            validate_command(command, [])

    def test_rejects_metacharacter_in_command(self) -> None:
        with pytest.raises(ValidationError, match="Invalid command or arguments"):
            validate_command("rm;ls", [])

    def test_rejects_metacharacter_in_any_argument(self) -> None:
        with pytest.raises(ValidationError) as excinfo:
            validate_command("echo", ["ok", "$(whoami)"])
        assert excinfo.value.status_code == 400
