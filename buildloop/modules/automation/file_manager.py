"""
Workspace Manager - per-session project directories

Every session owns one directory under PROJECTS_PATH, materialized from a
framework scaffold. All file operations resolve paths inside that directory
and reject anything that escapes it. Shell commands issued by the model are
screened against a blocklist and rate limited per session.
"""

import asyncio
import os
import re
import shutil
import signal
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Dict, List, Optional

import aiofiles
import aiofiles.os

from buildloop.core.config import settings
from buildloop.core.exceptions import (
    CommandNotAllowedError,
    CommandRateLimitError,
    PathTraversalError,
    ProjectExistsError,
    ProjectNotFoundError,
    SearchStringNotFoundError,
    TemplateNotFoundError,
    WorkspaceFileNotFoundError,
)
from buildloop.core.logging_config import logger
from buildloop.schemas.session import Framework


LIST_SKIP_DIRS = {"node_modules", ".git"}

# Substring matches, checked against the lowercased command
BLOCKED_COMMANDS = {
    "rm -rf /",
    "rm -rf /*",
    "rm -rf ~",
    "sudo",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",  # Fork bomb
    "chown root",
    "shutdown",
    "reboot",
}

BLOCKED_PATTERNS = [
    re.compile(r'>\s*/dev/sd[a-z]'),
    re.compile(r'curl\s+[^|]*\|\s*(ba)?sh'),
]


@dataclass
class CommandResult:
    """Outcome of a shell command run in a session directory"""
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def output(self) -> str:
        return self.stdout + self.stderr

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "error": self.error,
        }


def signal_process_group(process: asyncio.subprocess.Process, sig: int = signal.SIGKILL) -> None:
    """Signal a process started with start_new_session and everything it spawned"""
    try:
        os.killpg(os.getpgid(process.pid), sig)
    except ProcessLookupError:
        pass


class WorkspaceManager:
    """File and command capability scoped to session directories"""

    def __init__(self, base_path: str = None, templates_path: str = None):
        self.base_path = Path(base_path or settings.projects_dir).resolve()
        self.templates_path = Path(templates_path or settings.templates_dir).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

        self._command_times: Dict[str, Deque[float]] = defaultdict(deque)
        self._rate_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def project_path(self, session_id: str) -> Path:
        path = (self.base_path / session_id).resolve()
        if path.parent != self.base_path:
            raise PathTraversalError(session_id)
        return path

    def project_exists(self, session_id: str) -> bool:
        return self.project_path(session_id).is_dir()

    def _require_project(self, session_id: str) -> Path:
        path = self.project_path(session_id)
        if not path.is_dir():
            raise ProjectNotFoundError(session_id)
        return path

    async def create_project(self, session_id: str, framework: Framework) -> Path:
        """Copy the framework scaffold into a new session directory"""
        project_path = self.project_path(session_id)
        if project_path.exists():
            raise ProjectExistsError(session_id)

        framework = Framework(framework)
        template = self.templates_path / f"{framework.value}-scaffold"
        if not template.is_dir():
            raise TemplateNotFoundError(framework.value)

        await asyncio.to_thread(
            shutil.copytree,
            template,
            project_path,
            ignore=shutil.ignore_patterns(*settings.template_excludes),
        )
        logger.info(f"[Workspace:{session_id}] Created project from {template.name}")
        return project_path

    async def ensure_project(self, session_id: str, framework: Framework) -> Path:
        """Create the project if it does not exist yet"""
        if self.project_exists(session_id):
            return self.project_path(session_id)
        try:
            return await self.create_project(session_id, framework)
        except ProjectExistsError:
            # Created concurrently by another workflow
            return self.project_path(session_id)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def secure_path(self, session_id: str, file_path: str) -> Path:
        """Resolve file_path inside the session directory or raise"""
        project_path = self._require_project(session_id)
        candidate = (project_path / file_path.lstrip("/\\")).resolve()
        if candidate != project_path and project_path not in candidate.parents:
            logger.warning(f"[Workspace:{session_id}] Path traversal blocked: {file_path}")
            raise PathTraversalError(file_path)
        return candidate

    def relative_path(self, session_id: str, file_path: str) -> str:
        """Normalized project-relative form of a path"""
        full = self.secure_path(session_id, file_path)
        return full.relative_to(self.project_path(session_id)).as_posix()

    async def list_files(self, session_id: str) -> List[str]:
        project_path = self._require_project(session_id)

        def walk() -> List[str]:
            files = []
            for root, dirs, names in os.walk(project_path):
                dirs[:] = sorted(d for d in dirs if d not in LIST_SKIP_DIRS)
                for name in sorted(names):
                    files.append((Path(root) / name).relative_to(project_path).as_posix())
            return files

        return await asyncio.to_thread(walk)

    async def read_file(self, session_id: str, file_path: str) -> str:
        full_path = self.secure_path(session_id, file_path)
        if not full_path.is_file():
            raise WorkspaceFileNotFoundError(file_path, session_id)
        async with aiofiles.open(full_path, 'r', encoding='utf-8') as f:
            return await f.read()

    async def write_file(self, session_id: str, file_path: str, content: str) -> bool:
        """Write a file, creating parent directories. Returns True if it was new."""
        full_path = self.secure_path(session_id, file_path)
        created = not full_path.exists()
        await aiofiles.os.makedirs(full_path.parent, exist_ok=True)
        async with aiofiles.open(full_path, 'w', encoding='utf-8') as f:
            await f.write(content)
        logger.debug(f"[Workspace:{session_id}] {'Created' if created else 'Updated'} {file_path}")
        return created

    async def edit_file(self, session_id: str, file_path: str, search: str, replace: str) -> None:
        """Replace the first occurrence of search"""
        content = await self.read_file(session_id, file_path)
        if search not in content:
            raise SearchStringNotFoundError(file_path)
        await self.write_file(session_id, file_path, content.replace(search, replace, 1))

    async def delete_file(self, session_id: str, file_path: str) -> None:
        full_path = self.secure_path(session_id, file_path)
        if not full_path.is_file():
            raise WorkspaceFileNotFoundError(file_path, session_id)
        await aiofiles.os.remove(full_path)
        logger.debug(f"[Workspace:{session_id}] Deleted {file_path}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def check_command(self, command: str) -> None:
        lowered = command.lower().strip()
        for blocked in BLOCKED_COMMANDS:
            if blocked in lowered:
                raise CommandNotAllowedError(command)
        for pattern in BLOCKED_PATTERNS:
            if pattern.search(lowered):
                raise CommandNotAllowedError(command)

    def _check_rate_limit(self, session_id: str) -> None:
        now = time.monotonic()
        window = settings.COMMAND_RATE_WINDOW
        with self._rate_lock:
            times = self._command_times[session_id]
            while times and now - times[0] > window:
                times.popleft()
            if len(times) >= settings.COMMAND_RATE_LIMIT:
                raise CommandRateLimitError(session_id, settings.COMMAND_RATE_LIMIT, window)
            times.append(now)

    async def run_command(self, session_id: str, command: str) -> CommandResult:
        """Run a model-issued command after screening and rate limiting"""
        self.check_command(command)
        self._check_rate_limit(session_id)
        logger.info(f"[Workspace:{session_id}] Running command: {command}")
        return await self.execute(session_id, command, timeout=settings.COMMAND_TIMEOUT)

    async def execute(
        self,
        session_id: str,
        command: str,
        timeout: float,
        env: Optional[Dict[str, str]] = None
    ) -> CommandResult:
        """Run a trusted command in the session directory and capture output"""
        cwd = self._require_project(session_id)
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **(env or {})},
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.CancelledError:
            signal_process_group(process)
            raise
        except asyncio.TimeoutError:
            # Children of the shell hold the pipes open; kill the whole group
            signal_process_group(process)
            stdout, stderr = await process.communicate()
            logger.warning(f"[Workspace:{session_id}] Command timed out after {timeout}s: {command}")
            return CommandResult(
                success=False,
                stdout=stdout.decode('utf-8', errors='ignore'),
                stderr=stderr.decode('utf-8', errors='ignore'),
                exit_code=process.returncode,
                error=f"Command timed out after {timeout}s",
                timed_out=True,
            )

        result = CommandResult(
            success=process.returncode == 0,
            stdout=stdout.decode('utf-8', errors='ignore'),
            stderr=stderr.decode('utf-8', errors='ignore'),
            exit_code=process.returncode,
        )
        if not result.success:
            result.error = f"Command failed with exit code {process.returncode}: {command}"
        return result

    async def reinstall_dependencies(self, session_id: str) -> CommandResult:
        """Remove node_modules and the lockfile, then install again"""
        project_path = self._require_project(session_id)
        await asyncio.to_thread(shutil.rmtree, project_path / "node_modules", True)
        for lockfile in ("pnpm-lock.yaml", "package-lock.json"):
            lock_path = project_path / lockfile
            if lock_path.exists():
                await aiofiles.os.remove(lock_path)
        logger.info(f"[Workspace:{session_id}] Reinstalling dependencies")
        return await self.execute(session_id, settings.INSTALL_COMMAND, timeout=settings.PREVIEW_INSTALL_TIMEOUT)
