"""
Unit Tests for WorkspaceToolset
"""
import pytest

from buildloop.modules.agents.workspace_tools import WORKSPACE_TOOLS, WorkspaceToolset
from buildloop.schemas.session import Framework


class TestToolSchemas:
    """Test the advertised tool list"""

    def test_tool_names(self):
        assert {t["name"] for t in WORKSPACE_TOOLS} == {
            "list_files", "read_file", "write_file", "delete_file", "edit_file", "run_command",
        }


class TestToolExecution:
    """Test tool_use -> tool_result handling"""

    @pytest.mark.asyncio
    async def test_write_then_edit_tracks_created(self, workspace):
        await workspace.create_project("s1", Framework.NEXTJS)
        toolset = WorkspaceToolset(workspace, "s1")

        await toolset.execute("write_file", {"filePath": "/src/lib/util.ts", "content": "export const a = 1"}, "t1")
        await toolset.execute("edit_file", {
            "filePath": "src/lib/util.ts", "searchString": "1", "replaceString": "2"
        }, "t2")
        await toolset.execute("edit_file", {
            "filePath": "src/app/page.tsx", "searchString": "Ready to build", "replaceString": "Hi"
        }, "t3")

        assert toolset.changes() == {"src/lib/util.ts": "created", "src/app/page.tsx": "modified"}
        assert await workspace.read_file("s1", "src/lib/util.ts") == "export const a = 2"

    @pytest.mark.asyncio
    async def test_delete_tracked(self, workspace):
        await workspace.create_project("s1", Framework.NEXTJS)
        toolset = WorkspaceToolset(workspace, "s1")

        result = await toolset.execute("delete_file", {"filePath": "next.config.mjs"}, "t1")

        assert result == {"type": "tool_result", "tool_use_id": "t1", "content": "Deleted next.config.mjs"}
        assert toolset.changes() == {"next.config.mjs": "deleted"}

    @pytest.mark.asyncio
    async def test_errors_become_error_results(self, workspace):
        await workspace.create_project("s1", Framework.NEXTJS)
        toolset = WorkspaceToolset(workspace, "s1")

        traversal = await toolset.execute("read_file", {"filePath": "../../etc/passwd"}, "t1")
        missing = await toolset.execute("read_file", {"filePath": "src/nope.ts"}, "t2")
        blocked = await toolset.execute("run_command", {"command": "sudo rm -rf /"}, "t3")

        assert traversal["is_error"] and "path traversal" in traversal["content"]
        assert missing["is_error"] and "File not found" in missing["content"]
        assert blocked["is_error"]
        assert toolset.changes() == {}

    @pytest.mark.asyncio
    async def test_missing_argument(self, workspace):
        await workspace.create_project("s1", Framework.NEXTJS)
        toolset = WorkspaceToolset(workspace, "s1")

        result = await toolset.execute("write_file", {"content": "x"}, "t1")

        assert result["is_error"]

    @pytest.mark.asyncio
    async def test_list_files(self, workspace):
        await workspace.create_project("s1", Framework.REACT)
        toolset = WorkspaceToolset(workspace, "s1")

        result = await toolset.execute("list_files", {}, "t1")

        assert "src/App.tsx" in result["content"].split("\n")

    @pytest.mark.asyncio
    async def test_run_command(self, workspace):
        await workspace.create_project("s1", Framework.REACT)
        toolset = WorkspaceToolset(workspace, "s1")

        result = await toolset.execute("run_command", {"command": "echo built"}, "t1")

        assert result["content"] == "built"
