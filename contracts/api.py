"""HTTP API contracts for the session, file and tool surfaces."""

from __future__ import annotations

from typing import Any

from contracts.model import WireModel

DEFAULT_CAPABILITIES = ["readFile", "writeFile", "runCommand", "listFiles"]


class SessionInitRequest(WireModel):
    tools: list[str] = []


class SessionInfo(WireModel):
    session_id: str
    capabilities: list[str] = []


class Capabilities(WireModel):
    tools: list[str] = DEFAULT_CAPABILITIES


class FileContent(WireModel):
    path: str
    content: str


class FileListing(WireModel):
    path: str
    files: list[str]


class StatusMessage(WireModel):
    success: bool = True
    message: str = ""


class ToolSummary(WireModel):
    name: str
    description: str
    parameters: dict[str, Any] = {}  # JSON Schema
