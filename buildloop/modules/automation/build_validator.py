"""
Build Validator - runs the production build and parses its errors
"""

import time
from dataclasses import dataclass, field
from typing import List

from buildloop.core.config import settings
from buildloop.core.logging_config import logger
from buildloop.modules.automation.error_detector import BuildErrorParser
from buildloop.modules.automation.file_manager import WorkspaceManager


@dataclass
class BuildResult:
    success: bool
    errors: List[str] = field(default_factory=list)
    output: str = ""


class BuildValidator:
    """Runs BUILD_COMMAND in a session workspace"""

    def __init__(self, workspace: WorkspaceManager, parser: BuildErrorParser = None):
        self.workspace = workspace
        self.parser = parser or BuildErrorParser()

    async def validate(self, session_id: str) -> BuildResult:
        """
        Build the project.

        Parsed error blocks fail the build even on a zero exit code. A failed
        build with nothing parseable reports the command error instead.
        """
        logger.info(f"[Build:{session_id}] Running {settings.BUILD_COMMAND}")
        started = time.perf_counter()
        result = await self.workspace.execute(
            session_id,
            settings.BUILD_COMMAND,
            timeout=settings.BUILD_TIMEOUT,
            env={"NODE_ENV": "production"},
        )
        logger.log_performance(
            "build",
            (time.perf_counter() - started) * 1000,
            threshold_ms=settings.BUILD_TIMEOUT * 1000 / 2,
            timed_out=result.timed_out,
        )
        output = result.output
        errors = self.parser.parse(output)

        if result.success and not errors:
            logger.info(f"[Build:{session_id}] Build successful")
            return BuildResult(success=True, output=output)

        if not errors:
            errors = [result.error or "Build failed"]
        logger.warning(f"[Build:{session_id}] Build failed with {len(errors)} error block(s)")
        return BuildResult(success=False, errors=errors, output=output)
