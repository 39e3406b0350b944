"""
Workspace tools exposed to the model.

WorkspaceToolset binds the workspace capability to one session and turns
tool_use blocks into tool_result blocks. Paths it touches are recorded so the
caller can update the session's changed-files list.
"""

from typing import Any, Dict, List, Set

from buildloop.core.exceptions import BuildLoopError
from buildloop.core.logging_config import logger
from buildloop.modules.automation.file_manager import WorkspaceManager


WORKSPACE_TOOLS: List[Dict[str, Any]] = [
    {
        "name": "list_files",
        "description": "List all files in the project (node_modules and .git are skipped)",
        "input_schema": {"type": "object", "properties": {}}
    },
    {
        "name": "read_file",
        "description": "Read a file from the project",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": {"type": "string", "description": "Project-relative path"}
            },
            "required": ["filePath"]
        }
    },
    {
        "name": "write_file",
        "description": "Create or overwrite a file with the complete content",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": {"type": "string", "description": "Project-relative path"},
                "content": {"type": "string", "description": "Complete file content"}
            },
            "required": ["filePath", "content"]
        }
    },
    {
        "name": "delete_file",
        "description": "Delete a file from the project",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": {"type": "string", "description": "Project-relative path"}
            },
            "required": ["filePath"]
        }
    },
    {
        "name": "edit_file",
        "description": "Replace the first occurrence of searchString with replaceString",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": {"type": "string", "description": "Project-relative path"},
                "searchString": {"type": "string", "description": "Exact text to find"},
                "replaceString": {"type": "string", "description": "Replacement text"}
            },
            "required": ["filePath", "searchString", "replaceString"]
        }
    },
    {
        "name": "run_command",
        "description": "Run a shell command in the project directory (e.g. pnpm add <pkg>)",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command"}
            },
            "required": ["command"]
        }
    },
]


class WorkspaceToolset:
    """Executes workspace tool calls for one session"""

    def __init__(self, workspace: WorkspaceManager, session_id: str):
        self.workspace = workspace
        self.session_id = session_id
        self.schemas = WORKSPACE_TOOLS
        self.created: Set[str] = set()
        self.modified: Set[str] = set()
        self.deleted: Set[str] = set()

    def changes(self) -> Dict[str, str]:
        """path -> created | modified | deleted"""
        result = {path: "modified" for path in self.modified}
        result.update({path: "created" for path in self.created})
        result.update({path: "deleted" for path in self.deleted})
        return result

    async def execute(self, name: str, tool_input: Dict[str, Any], tool_use_id: str) -> Dict[str, Any]:
        """Execute a tool and return the tool_result block"""
        try:
            content = await self._dispatch(name, tool_input)
            logger.info(f"[Tools:{self.session_id}] {name} {tool_input.get('filePath', tool_input.get('command', ''))[:80]}")
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": content
            }
        except BuildLoopError as e:
            logger.warning(f"[Tools:{self.session_id}] {name} failed: {e.message}")
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": f"Error: {e.message}",
                "is_error": True
            }
        except (OSError, KeyError, UnicodeDecodeError) as e:
            logger.warning(f"[Tools:{self.session_id}] {name} failed: {e}")
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": f"Error: {e}",
                "is_error": True
            }

    async def _dispatch(self, name: str, tool_input: Dict[str, Any]) -> str:
        sid = self.session_id

        if name == "list_files":
            files = await self.workspace.list_files(sid)
            return "\n".join(files) if files else "(no files)"

        if name == "read_file":
            return await self.workspace.read_file(sid, tool_input["filePath"])

        if name == "write_file":
            path = self.workspace.relative_path(sid, tool_input["filePath"])
            created = await self.workspace.write_file(sid, path, tool_input["content"])
            self._record(path, "created" if created else "modified")
            return f"{'Created' if created else 'Updated'} {path}"

        if name == "edit_file":
            path = self.workspace.relative_path(sid, tool_input["filePath"])
            await self.workspace.edit_file(sid, path, tool_input["searchString"], tool_input["replaceString"])
            self._record(path, "modified")
            return f"Edited {path}"

        if name == "delete_file":
            path = self.workspace.relative_path(sid, tool_input["filePath"])
            await self.workspace.delete_file(sid, path)
            self._record(path, "deleted")
            return f"Deleted {path}"

        if name == "run_command":
            result = await self.workspace.run_command(sid, tool_input["command"])
            output = (result.stdout + ("\n" + result.stderr if result.stderr else "")).strip()
            if not result.success:
                return f"Command failed ({result.error}):\n{output[-4000:]}"
            return output[-4000:] or "(no output)"

        return f"Unknown tool: {name}"

    def _record(self, path: str, action: str) -> None:
        if action == "created":
            self.deleted.discard(path)
            self.created.add(path)
        elif action == "modified":
            if path not in self.created:
                self.modified.add(path)
        else:
            self.created.discard(path)
            self.modified.discard(path)
            self.deleted.add(path)
