"""
Repair Loop - turns diagnostics into one corrective generation.

collect_diagnostics() builds the project and merges build errors with the
runtime errors reported by the preview. fix() gathers the manifest plus every
file the errors point at and asks the model to repair them with workspace
tools enabled. fix() is a single pass; callers decide whether to rebuild and
try again.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import List, Optional

from buildloop.core.config import settings
from buildloop.core.exceptions import WorkspaceError
from buildloop.core.logging_config import logger
from buildloop.modules.agents.workspace_tools import WorkspaceToolset
from buildloop.modules.automation.build_validator import BuildResult, BuildValidator
from buildloop.modules.automation.file_manager import WorkspaceManager
from buildloop.modules.orchestrator import prompts
from buildloop.schemas.session import ChatMessage, Framework, MessageRole
from buildloop.services.log_bus import RuntimeLogBus
from buildloop.services.persistence import SessionStore
from buildloop.utils.claude_client import GenerationAdapter


MANIFEST_FILE = "package.json"

RELATIVE_PATH_PATTERN = re.compile(r'(src/[a-zA-Z0-9_\-/]+\.(tsx|ts|js|jsx|css))')
ABSOLUTE_PATH_PATTERN = re.compile(r'(?<![\w.\-/])((?:/[a-zA-Z0-9_\-.]+)+\.(tsx|ts|js|jsx|css))')


@dataclass
class Diagnostics:
    errors: List[str] = field(default_factory=list)
    error_type: str = "build"  # build | runtime
    build: Optional[BuildResult] = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass
class RepairResult:
    success: bool
    error: Optional[str] = None
    files_changed: List[str] = field(default_factory=list)
    output: str = ""


class RepairLoop:
    """Single-pass diagnostics-to-fix loop"""

    def __init__(
        self,
        generator: GenerationAdapter,
        workspace: WorkspaceManager,
        store: SessionStore,
        build_validator: BuildValidator,
        log_bus: RuntimeLogBus
    ):
        self.generator = generator
        self.workspace = workspace
        self.store = store
        self.build_validator = build_validator
        self.log_bus = log_bus

    async def collect_diagnostics(self, session_id: str) -> Diagnostics:
        """Build errors first; runtime errors are appended either way"""
        build = await self.build_validator.validate(session_id)
        runtime = self.log_bus.get_runtime_logs(session_id)

        if build.success:
            return Diagnostics(errors=runtime, error_type="runtime", build=build)
        return Diagnostics(errors=build.errors + runtime, error_type="build", build=build)

    def extract_paths(self, session_id: str, errors: List[str]) -> List[str]:
        """Project-relative paths mentioned in error text, deduplicated, in order"""
        project_path = self.workspace.project_path(session_id).as_posix()
        text = "\n".join(errors)
        paths: List[str] = []

        candidates = [m.group(1) for m in RELATIVE_PATH_PATTERN.finditer(text)]
        candidates += [m.group(1) for m in ABSOLUTE_PATH_PATTERN.finditer(text)]
        for candidate in candidates:
            if candidate.startswith(project_path + "/"):
                candidate = candidate[len(project_path) + 1:]
            candidate = candidate.lstrip("/")
            if candidate not in paths:
                paths.append(candidate)
        return paths

    async def gather_context(self, session_id: str, errors: List[str]) -> str:
        """Manifest plus the contents of every readable file the errors mention"""
        sections = []
        try:
            manifest = await self.workspace.read_file(session_id, MANIFEST_FILE)
            sections.append(f"Current {MANIFEST_FILE}:\n```json\n{manifest}\n```")
        except WorkspaceError:
            logger.warning(f"[Repair:{session_id}] No {MANIFEST_FILE} found")

        for path in self.extract_paths(session_id, errors):
            try:
                content = await self.workspace.read_file(session_id, path)
            except WorkspaceError:
                continue
            sections.append(f"File: {path}\n```\n{content}\n```")

        return "\n\n".join(sections)

    async def fix(self, session_id: str, errors: List[str], error_type: str,
                  framework: Framework) -> RepairResult:
        """One corrective generation. Never raises; failure is success=False."""
        logger.info(f"[Repair:{session_id}] Fixing {len(errors)} {error_type} error(s)")
        toolset = WorkspaceToolset(self.workspace, session_id)
        try:
            context = await self.gather_context(session_id, errors)
            request = ChatMessage(
                role=MessageRole.USER,
                content=prompts.repair_request(context, errors, error_type)
            )
            generation = await self.generator.generate(
                [request],
                prompts.ERROR_FIX_PROMPT,
                tools=toolset
            )
        except Exception as e:
            logger.error(f"[Repair:{session_id}] Auto-fix failed: {e}")
            return RepairResult(success=False, error=str(e), files_changed=sorted(toolset.changes()))

        changes = toolset.changes()
        for path, action in changes.items():
            try:
                await self.store.track_file_change(session_id, path, action)
            except Exception as e:
                logger.warning(f"[Repair:{session_id}] Could not track {path}: {e}")

        logger.info(f"[Repair:{session_id}] Fix applied, {len(changes)} file(s) changed")
        return RepairResult(success=True, files_changed=sorted(changes), output=generation.text)

    async def background_verify(self, session_id: str, framework: Framework,
                                delay: float = None) -> Optional[RepairResult]:
        """
        Settle, rebuild, and repair once if anything is wrong.

        Runs detached after coding; returns None when the project is clean.
        """
        await asyncio.sleep(settings.BACKGROUND_VERIFY_DELAY if delay is None else delay)
        logger.info(f"[Repair:{session_id}] Background verification started")

        diagnostics = await self.collect_diagnostics(session_id)
        if not diagnostics.has_errors:
            logger.info(f"[Repair:{session_id}] Background verification passed")
            return None

        logger.warning(
            f"[Repair:{session_id}] Background verification found "
            f"{len(diagnostics.errors)} {diagnostics.error_type} error(s)"
        )
        return await self.fix(session_id, diagnostics.errors, diagnostics.error_type, framework)
