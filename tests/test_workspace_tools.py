"""Tests for the workspace file tools."""

from __future__ import annotations

import pytest

from agent_bridge.errors import ToolExecutionError
from agent_bridge.tools.workspace import (
    ListFilesTool,
    ReadFileTool,
    WorkspaceError,
    WriteFileTool,
    open_workspace,
    workspace_registry,
)


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "notes.txt").write_text("remember the milk")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.py").write_text("print('hi')\n")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref")
    return tmp_path


class TestResolve:
    def test_virtual_prefix(self, workspace):
        tool = ReadFileTool(workspace)
        assert tool.resolve("/workspace/notes.txt") == workspace.resolve() / "notes.txt"
        assert tool.resolve("/workspace") == workspace.resolve()
        assert tool.resolve("src/main.py") == workspace.resolve() / "src" / "main.py"

    @pytest.mark.parametrize("path", ["../outside", "/etc/passwd", "/workspace/../../x"])
    def test_escape_refused(self, workspace, path):
        with pytest.raises(WorkspaceError):
            ReadFileTool(workspace).resolve(path)


class TestReadFile:
    async def test_read(self, workspace):
        assert await ReadFileTool(workspace)({"path": "/workspace/notes.txt"}) == "remember the milk"

    async def test_missing(self, workspace):
        with pytest.raises(ToolExecutionError, match="File not found"):
            await ReadFileTool(workspace)({"path": "nope.txt"})

    async def test_escape(self, workspace):
        with pytest.raises(ToolExecutionError, match="escapes"):
            await ReadFileTool(workspace)({"path": "../secret"})

    async def test_no_path(self, workspace):
        result = await ReadFileTool(workspace).execute()
        assert not result.success


class TestWriteFile:
    async def test_write_creates_parents(self, workspace):
        out = await WriteFileTool(workspace)({"path": "/workspace/a/b/c.txt", "content": "data"})
        assert out == "Written 4 bytes to /workspace/a/b/c.txt"
        assert (workspace / "a" / "b" / "c.txt").read_text() == "data"

    async def test_content_must_be_text(self, workspace):
        with pytest.raises(ToolExecutionError, match="string"):
            await WriteFileTool(workspace)({"path": "x", "content": 3})


class TestListFiles:
    async def test_list_root(self, workspace):
        out = await ListFilesTool(workspace)({})
        assert out.splitlines() == ["/workspace/notes.txt", "/workspace/src/main.py"]

    async def test_list_subdir(self, workspace):
        out = await ListFilesTool(workspace)({"path": "/workspace/src"})
        assert out == "/workspace/src/main.py"

    async def test_empty(self, tmp_path):
        (tmp_path / "empty").mkdir()
        assert await ListFilesTool(tmp_path)({"path": "empty"}) == "(empty)"

    async def test_not_a_directory(self, workspace):
        with pytest.raises(ToolExecutionError, match="Not a directory"):
            await ListFilesTool(workspace)({"path": "notes.txt"})

    async def test_capped(self, tmp_path):
        for i in range(5):
            (tmp_path / f"f{i}.txt").write_text("")
        tool = ListFilesTool(tmp_path)
        tool.max_entries = 3
        lines = (await tool({})).splitlines()
        assert len(lines) == 4
        assert lines[-1] == "... (2 more)"


class TestRegistry:
    def test_names(self, workspace):
        assert workspace_registry(workspace).tool_names() == ["readFile", "writeFile", "listFiles"]

    async def test_open_workspace_creates_root(self, tmp_path):
        root = tmp_path / "new" / "ws"
        registry = await open_workspace(root)
        assert root.is_dir()
        assert "readFile" in registry
