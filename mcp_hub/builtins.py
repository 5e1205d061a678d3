"""
In-process tools that need no server.

Built-ins register in the tool registry under the pseudo-server
"builtin" ahead of every pooled server, so their names win collisions.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from mcp_hub.errors import ToolExecutionFailed, UnknownTool
from mcp_hub.registry import BUILTIN_SERVER, ModelTier, SafetyClass, ToolDescriptor

logger = logging.getLogger(__name__)


READ_FILE = ToolDescriptor(
    name="read_file",
    description=(
        "Reads the contents of a file from the project. "
        "Use this tool to examine file contents directly."
    ),
    parameter_schema={
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": 'Path relative to the project root (e.g., "src/app.py", "config.json")',
            },
            "max_lines": {
                "type": "integer",
                "description": "Maximum number of lines to read (default: unlimited)",
            },
            "start_line": {
                "type": "integer",
                "description": "Line number to start reading from (1-based, default: 1)",
            },
        },
        "required": ["file_path"],
    },
    safety_class=SafetyClass.AUTO,
    preferred_tier=ModelTier.FULL,
    server=BUILTIN_SERVER,
)


class BuiltinTools:
    """The built-in tools, bound to one project root."""

    def __init__(self, project_root: str | Path = "."):
        self.project_root = Path(project_root).resolve()
        self._handlers = {
            READ_FILE.name: self._read_file,
        }

    def descriptors(self) -> list[ToolDescriptor]:
        return [READ_FILE]

    def handles(self, name: str) -> bool:
        return name in self._handlers

    def execute(self, name: str, arguments: dict[str, Any]) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownTool(name)
        logger.info(f"Calling builtin/{name}")
        return handler(arguments)

    def _read_file(self, arguments: dict[str, Any]) -> str:
        file_path = arguments.get("file_path")
        if not file_path:
            raise ToolExecutionFailed("file_path is required for read_file")

        try:
            path = (self.project_root / str(file_path)).resolve()
        except (OSError, ValueError) as e:
            raise ToolExecutionFailed(f"Invalid path '{file_path}': {e}") from e
        if not path.is_relative_to(self.project_root):
            raise ToolExecutionFailed(f"Path '{file_path}' is outside the project root")

        try:
            if path.is_dir():
                raise ToolExecutionFailed(f"Path '{file_path}' is a directory")
            lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
        except (OSError, ValueError) as e:
            raise ToolExecutionFailed(f"Failed to read file: {e}") from e

        start_line = int(arguments.get("start_line") or 1)
        max_lines = arguments.get("max_lines")
        selected = lines[max(start_line, 1) - 1:]
        if max_lines and int(max_lines) > 0:
            selected = selected[: int(max_lines)]

        logger.debug(
            f"read_file {file_path}: {len(selected)} of {len(lines)} lines from line {start_line}"
        )
        return "\n".join(selected)
