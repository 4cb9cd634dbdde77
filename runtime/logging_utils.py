"""Operational logging setup shared by the HTTP server, MCP server and CLI."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(level: str | int = "INFO", log_path: str | None = None) -> None:
    """Install a stderr handler and, optionally, a file handler on the root logger.

    Calling it again only adjusts the level.  Console output goes to stderr
    so the MCP stdio transport keeps stdout to itself.
    """
    root = logging.getLogger()
    root.setLevel(level if isinstance(level, int) else level.upper())

    if getattr(root, "_bastion_configured", False):
        return

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)

    setattr(root, "_bastion_configured", True)
    logging.getLogger(__name__).debug("Logging initialized (level=%s, file=%s)", level, log_path)
