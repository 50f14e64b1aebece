"""Directory-rooted file tools used by the command line demo.

Paths given by the model are resolved inside the workspace root; anything
that escapes it (``..``, absolute paths elsewhere, symlinks out) is
refused.  A leading ``/workspace/`` prefix is accepted as an alias for the
root.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from agent_bridge.tools.base import Tool
from agent_bridge.tools.registry import ToolRegistry
from agent_bridge.types import ToolParameter, ToolResult

_VIRTUAL_ROOT = "/workspace"
_MAX_READ_BYTES = 10_000_000


class WorkspaceError(ValueError):
    """A path outside the workspace root."""


class _WorkspaceTool(Tool):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def resolve(self, path: str) -> Path:
        if path == _VIRTUAL_ROOT or path.startswith(_VIRTUAL_ROOT + "/"):
            path = path[len(_VIRTUAL_ROOT):].lstrip("/")
        p = (self.root / path).resolve()
        if p != self.root and self.root not in p.parents:
            raise WorkspaceError(f"Path escapes the workspace: {path}")
        return p

    def display(self, p: Path) -> str:
        rel = p.relative_to(self.root).as_posix()
        return f"{_VIRTUAL_ROOT}/{rel}" if rel != "." else _VIRTUAL_ROOT


class ReadFileTool(_WorkspaceTool):
    """Read a text file from the workspace."""

    name = "readFile"
    description = "Read the contents of a file at the given path."
    parameters = [
        ToolParameter(
            name="path",
            type="string",
            description="File path inside /workspace",
        ),
    ]

    async def execute(self, **kwargs: Any) -> ToolResult:
        path = kwargs.get("path", "")
        if not path:
            return ToolResult(success=False, output="", error="No path provided")

        def _read() -> ToolResult:
            try:
                p = self.resolve(path)
            except WorkspaceError as e:
                return ToolResult(success=False, output="", error=str(e))
            if not p.is_file():
                return ToolResult(success=False, output="", error=f"File not found: {path}")
            size = p.stat().st_size
            if size > _MAX_READ_BYTES:
                return ToolResult(
                    success=False,
                    output="",
                    error=f"File too large ({size} bytes, max 10MB)",
                )
            return ToolResult(success=True, output=p.read_text(errors="replace"))

        return await asyncio.to_thread(_read)


class WriteFileTool(_WorkspaceTool):
    """Write a text file, creating parent directories."""

    name = "writeFile"
    description = "Write content to a file, creating it and parent dirs if needed."
    parameters = [
        ToolParameter(
            name="path",
            type="string",
            description="File path inside /workspace",
        ),
        ToolParameter(
            name="content",
            type="string",
            description="File content to write",
        ),
    ]

    async def execute(self, **kwargs: Any) -> ToolResult:
        path = kwargs.get("path", "")
        content = kwargs.get("content", "")
        if not path:
            return ToolResult(success=False, output="", error="No path provided")
        if not isinstance(content, str):
            return ToolResult(success=False, output="", error="content must be a string")

        def _write() -> ToolResult:
            try:
                p = self.resolve(path)
            except WorkspaceError as e:
                return ToolResult(success=False, output="", error=str(e))
            try:
                p.parent.mkdir(parents=True, exist_ok=True)
                p.write_text(content)
            except OSError as e:
                return ToolResult(success=False, output="", error=str(e))
            return ToolResult(
                success=True,
                output=f"Written {len(content)} bytes to {self.display(p)}",
            )

        return await asyncio.to_thread(_write)


class ListFilesTool(_WorkspaceTool):
    """List files below a workspace directory."""

    name = "listFiles"
    description = "List files below a directory, one path per line."
    max_entries = 500
    parameters = [
        ToolParameter(
            name="path",
            type="string",
            description="Directory inside /workspace",
            required=False,
            default=_VIRTUAL_ROOT,
        ),
    ]

    async def execute(self, **kwargs: Any) -> ToolResult:
        path = kwargs.get("path") or _VIRTUAL_ROOT

        def _list() -> ToolResult:
            try:
                base = self.resolve(path)
            except WorkspaceError as e:
                return ToolResult(success=False, output="", error=str(e))
            if not base.is_dir():
                return ToolResult(success=False, output="", error=f"Not a directory: {path}")
            entries = sorted(
                self.display(p) for p in base.rglob("*")
                if p.is_file() and not any(part.startswith(".") for part in p.relative_to(base).parts)
            )
            if len(entries) > self.max_entries:
                extra = len(entries) - self.max_entries
                entries = entries[: self.max_entries] + [f"... ({extra} more)"]
            return ToolResult(success=True, output="\n".join(entries) or "(empty)")

        return await asyncio.to_thread(_list)


def workspace_registry(root: str | Path) -> ToolRegistry:
    """A registry holding the three workspace tools rooted at *root*."""
    registry = ToolRegistry()
    for cls in (ReadFileTool, WriteFileTool, ListFilesTool):
        registry.register(cls(root))
    return registry


async def open_workspace(root: str | Path) -> ToolRegistry:
    """Async factory for :class:`~agent_bridge.tools.cache.ToolExecutorCache`."""
    p = Path(root).expanduser()
    await asyncio.to_thread(p.mkdir, parents=True, exist_ok=True)
    return workspace_registry(p)
