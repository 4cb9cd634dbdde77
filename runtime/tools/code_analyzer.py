"""Built-in code-analyzer tool: eslint, tsc or ruff over a workspace path."""

from __future__ import annotations

from typing import Any

from contracts.tool_sdk import BaseTool, ToolContext, ToolDefinition, ToolOutput

from runtime.tools.base import run_in_sandbox

ANALYZERS = ("eslint", "tsc", "ruff")


class CodeAnalyzerTool(BaseTool):
    """Analyse code quality and report issues found."""

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="code-analyzer",
            description="Analyzes code quality and identifies potential issues",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path to the file or directory to analyze"},
                    "tool": {
                        "type": "string",
                        "enum": list(ANALYZERS),
                        "default": "eslint",
                        "description": "Analysis tool to use",
                    },
                },
                "required": ["path"],
                "additionalProperties": False,
            },
            permissions=["exec:lint"],
        )

    async def run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        path = args["path"]
        tool = args.get("tool", "eslint")

        if tool == "eslint":
            argv = ["npx", "eslint", path]
        elif tool == "tsc":
            argv = ["npx", "tsc", "--noEmit", "--project", "tsconfig.json"]
        else:
            argv = ["ruff", "check", path]

        return await run_in_sandbox(
            ctx, "code-analyzer", argv, detail={"tool": tool, "path": path}
        )
