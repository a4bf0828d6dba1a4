"""Tests for the filesystem tools."""

import pytest

from relay.capabilities.base import ToolContext
from relay.core.exceptions import ToolExecutionError
from relay.tools.filesystem import EditFileTool, ListDirTool, ReadFileTool, WriteFileTool, resolve_path

CTX = ToolContext(conversation_id="test:fs")


class TestResolvePath:

    def test_relative_paths_use_workspace(self, tmp_path):
        assert resolve_path("notes/a.md", tmp_path) == (tmp_path / "notes" / "a.md").resolve()

    def test_escape_from_allowed_dir_rejected(self, tmp_path):
        with pytest.raises(ToolExecutionError, match="outside allowed directory"):
            resolve_path("../secret.txt", tmp_path, allowed_dir=tmp_path)

    def test_allowed_dir_itself_is_allowed(self, tmp_path):
        assert resolve_path(str(tmp_path), tmp_path, allowed_dir=tmp_path) == tmp_path.resolve()


class TestReadWrite:

    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path):
        writer = WriteFileTool(tmp_path)
        reader = ReadFileTool(tmp_path)

        result = await writer.execute({"path": "deep/dir/hello.txt", "content": "hi there"}, CTX)

        assert result.startswith("Successfully wrote 8 characters to")
        assert await reader.execute({"path": "deep/dir/hello.txt"}, CTX) == "hi there"

    @pytest.mark.asyncio
    async def test_read_missing_file(self, tmp_path):
        with pytest.raises(ToolExecutionError, match="File not found"):
            await ReadFileTool(tmp_path).execute({"path": "nope.txt"}, CTX)

    @pytest.mark.asyncio
    async def test_read_directory(self, tmp_path):
        with pytest.raises(ToolExecutionError, match="Not a file"):
            await ReadFileTool(tmp_path).execute({"path": "."}, CTX)

    @pytest.mark.asyncio
    async def test_write_outside_workspace_denied(self, tmp_path):
        workspace = tmp_path / "ws"
        workspace.mkdir()
        tool = WriteFileTool(workspace, allowed_dir=workspace)

        with pytest.raises(ToolExecutionError, match="Access denied"):
            await tool.execute({"path": str(tmp_path / "escape.txt"), "content": "x"}, CTX)
        assert not (tmp_path / "escape.txt").exists()


class TestEdit:

    @pytest.mark.asyncio
    async def test_unique_replacement(self, tmp_path):
        (tmp_path / "config.ini").write_text("debug=false\nport=80\n")

        result = await EditFileTool(tmp_path).execute(
            {"path": "config.ini", "old_text": "debug=false", "new_text": "debug=true"}, CTX
        )

        assert result.startswith("Successfully edited")
        assert (tmp_path / "config.ini").read_text() == "debug=true\nport=80\n"

    @pytest.mark.asyncio
    async def test_missing_text(self, tmp_path):
        (tmp_path / "a.txt").write_text("hello")

        with pytest.raises(ToolExecutionError, match="old_text not found"):
            await EditFileTool(tmp_path).execute({"path": "a.txt", "old_text": "bye", "new_text": "x"}, CTX)

    @pytest.mark.asyncio
    async def test_ambiguous_text(self, tmp_path):
        (tmp_path / "a.txt").write_text("x x x")

        with pytest.raises(ToolExecutionError, match="appears 3 times"):
            await EditFileTool(tmp_path).execute({"path": "a.txt", "old_text": "x", "new_text": "y"}, CTX)
        assert (tmp_path / "a.txt").read_text() == "x x x"


class TestListDir:

    @pytest.mark.asyncio
    async def test_sorted_listing(self, tmp_path):
        (tmp_path / "b.txt").write_text("")
        (tmp_path / "a.txt").write_text("")
        (tmp_path / "sub").mkdir()

        listing = await ListDirTool(tmp_path).execute({"path": "."}, CTX)

        assert listing.splitlines() == ["📄 a.txt", "📄 b.txt", "📁 sub"]

    @pytest.mark.asyncio
    async def test_empty_directory(self, tmp_path):
        assert "is empty" in await ListDirTool(tmp_path).execute({"path": "."}, CTX)

    @pytest.mark.asyncio
    async def test_not_a_directory(self, tmp_path):
        (tmp_path / "f").write_text("")
        with pytest.raises(ToolExecutionError, match="Not a directory"):
            await ListDirTool(tmp_path).execute({"path": "f"}, CTX)
