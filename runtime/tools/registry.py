"""Tool registry — register, look up, and describe Bastion tools."""

from __future__ import annotations

from contracts.api import ToolSummary
from contracts.tool_sdk import BaseTool


class ToolRegistry:
    """In-memory registry of available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        """Register a tool instance.  Overwrites if name already exists."""
        name = tool.definition().name
        self._tools[name] = tool

    def get(self, name: str) -> BaseTool:
        """Return a registered tool by name, or raise ``KeyError``."""
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """Return sorted list of registered tool names."""
        return sorted(self._tools)

    def summaries(self) -> list[ToolSummary]:
        """Describe every tool as name, description and parameter schema."""
        return [self.summary(name) for name in sorted(self._tools)]

    def summary(self, name: str) -> ToolSummary:
        defn = self.get(name).definition()
        return ToolSummary(
            name=defn.name,
            description=defn.description,
            parameters=defn.input_schema,
        )


def create_default_registry() -> ToolRegistry:
    """Create a registry pre-loaded with all built-in tools."""
    from runtime.tools.code_analyzer import CodeAnalyzerTool
    from runtime.tools.doc_generator import DocGeneratorTool
    from runtime.tools.test_runner import TestRunnerTool

    registry = ToolRegistry()
    registry.register(CodeAnalyzerTool())
    registry.register(TestRunnerTool())
    registry.register(DocGeneratorTool())
    return registry
