"""
Minimal project context for planning: an indented file tree.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({
    ".git", ".hg", ".svn",
    ".venv", "venv", "env",
    "__pycache__", ".mypy_cache", ".pytest_cache", ".ruff_cache", ".tox",
    "node_modules", "dist", "build", ".idea", ".vscode",
})


def project_snapshot(
    root: str | Path,
    max_entries: int = 200,
    ignored: frozenset[str] | set[str] = IGNORED_DIRS,
) -> str:
    """
    Sorted, indented listing of the files under root.

    Directories end with "/". Listing stops after max_entries lines and
    says how much was left out.
    """
    root = Path(root)
    if not root.is_dir():
        return "Project file structure not available"

    lines: list[str] = []
    omitted = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in ignored and not d.endswith(".egg-info")
        )
        depth = len(Path(dirpath).relative_to(root).parts)
        indent = "  " * depth
        if depth:
            if len(lines) < max_entries:
                lines.append(f"{'  ' * (depth - 1)}{Path(dirpath).name}/")
            else:
                omitted += 1
        for name in sorted(filenames):
            if len(lines) < max_entries:
                lines.append(f"{indent}{name}")
            else:
                omitted += 1

    if omitted:
        lines.append(f"... ({omitted} more entries)")
    logger.debug(f"Project snapshot of {root}: {len(lines)} lines")
    return "\n".join(lines) if lines else "(empty project)"
