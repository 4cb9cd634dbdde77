"""Built-in doc-generator tool (typedoc for TypeScript, pdoc for Python)."""

from __future__ import annotations

from typing import Any

from contracts.tool_sdk import BaseTool, ToolContext, ToolDefinition, ToolOutput

from runtime.tools.base import run_in_sandbox


class DocGeneratorTool(BaseTool):
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="doc-generator",
            description="Generates documentation from code comments",
            input_schema={
                "type": "object",
                "properties": {
                    "input": {"type": "string", "description": "Input directory, file pattern or module"},
                    "output": {"type": "string", "default": "docs", "description": "Output directory"},
                    "generator": {
                        "type": "string",
                        "enum": ["typedoc", "pdoc"],
                        "default": "typedoc",
                    },
                },
                "additionalProperties": False,
            },
            permissions=["exec:docs"],
        )

    async def run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        generator = args.get("generator", "typedoc")
        output = args.get("output", "docs")

        if generator == "typedoc":
            source = args.get("input", "src/index.ts")
            argv = ["npx", "typedoc", "--entryPoints", source, "--out", output]
        else:
            source = args.get("input", "src")
            argv = ["pdoc", source, "--output-directory", output]

        return await run_in_sandbox(
            ctx,
            "doc-generator",
            argv,
            detail={"generator": generator, "input": source, "output": output},
        )
