"""
Preview Server Manager
Owns the pool of live dev servers, one per session.

Lifecycle of a record:

    idle → installing → starting → running
                 ↘           ↘
                  error        error

A record is created by start() and removed by stop(). If the dev server exits
on its own the record goes back to idle so the next start() can retry; error
is kept for spawn/install failures.

Locking: a per-session asyncio.Lock serializes start/stop for one session.
The pool lock guards the record map and is held only while deciding
(duplicate check, capacity, eviction pick, port choice), never across
installs, spawns or terminations. Lock order is always session, then pool.
"""

import asyncio
import os
import re
import signal
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Set

from buildloop.core.background import TaskSupervisor
from buildloop.core.config import settings
from buildloop.core.exceptions import PortAllocationError, PreviewProcessError
from buildloop.core.logging_config import logger
from buildloop.modules.automation.file_manager import WorkspaceManager, signal_process_group
from buildloop.schemas.session import Framework


# Vite: "➜  Local:   http://localhost:5173/"  Next: "- Local:        http://localhost:3000"
READY_PATTERN = re.compile(r'Local:\s+https?://localhost:(\d+)')

# Bundlers print minified stack traces on a single line
OUTPUT_LINE_LIMIT = 1024 * 1024

DEV_COMMANDS = {
    Framework.REACT: "npx vite --port",
    Framework.NEXTJS: "pnpm run dev -- --port",
}


class ProcessStatus(str, Enum):
    """Preview process lifecycle states"""
    IDLE = "idle"
    INSTALLING = "installing"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


PROCESS_TRANSITIONS: Dict[ProcessStatus, Set[ProcessStatus]] = {
    ProcessStatus.IDLE: {ProcessStatus.INSTALLING},
    ProcessStatus.INSTALLING: {ProcessStatus.STARTING, ProcessStatus.ERROR, ProcessStatus.IDLE},
    ProcessStatus.STARTING: {ProcessStatus.RUNNING, ProcessStatus.ERROR, ProcessStatus.IDLE},
    ProcessStatus.RUNNING: {ProcessStatus.IDLE, ProcessStatus.ERROR},
    ProcessStatus.ERROR: set(),
}

ACTIVE_STATUSES = {ProcessStatus.INSTALLING, ProcessStatus.STARTING, ProcessStatus.RUNNING}


@dataclass
class ProcessRecord:
    """Bookkeeping for one session's preview process"""
    session_id: str
    port: int
    framework: Framework
    status: ProcessStatus = ProcessStatus.IDLE
    process: Optional[asyncio.subprocess.Process] = None
    last_activity: datetime = field(default_factory=datetime.utcnow)
    error: Optional[str] = None
    ready_source: Optional[str] = None  # "signal" or "timeout"
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    setup_task: Optional[asyncio.Task] = None

    def transition(self, to_status: ProcessStatus) -> bool:
        if to_status not in PROCESS_TRANSITIONS[self.status]:
            logger.warning(
                f"[Preview:{self.session_id}] Invalid transition: "
                f"{self.status.value} → {to_status.value}"
            )
            return False
        logger.debug(f"[Preview:{self.session_id}] {self.status.value} → {to_status.value}")
        self.status = to_status
        return True

    def touch(self) -> None:
        self.last_activity = datetime.utcnow()

    def to_dict(self) -> Dict:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "port": self.port,
            "framework": self.framework.value,
            "last_activity": self.last_activity.isoformat(),
            "error": self.error,
            "ready_source": self.ready_source,
        }


class PreviewServerManager:
    """Process pool for live preview dev servers"""

    def __init__(
        self,
        workspace: WorkspaceManager,
        supervisor: Optional[TaskSupervisor] = None,
        base_port: int = None,
        port_window: int = None,
        max_servers: int = None,
        ready_timeout: float = None,
        stop_grace: float = None,
        idle_timeout_minutes: int = None,
        sweep_interval_minutes: int = None,
    ):
        self.workspace = workspace
        self.supervisor = supervisor or TaskSupervisor("PreviewPool")
        self.base_port = base_port or settings.PREVIEW_BASE_PORT
        self.port_window = port_window or settings.PREVIEW_PORT_WINDOW
        self.max_servers = max_servers or settings.PREVIEW_MAX_SERVERS
        self.ready_timeout = ready_timeout or settings.PREVIEW_READY_TIMEOUT
        self.stop_grace = stop_grace or settings.PREVIEW_STOP_GRACE
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes or settings.PREVIEW_IDLE_TIMEOUT_MINUTES)
        self.sweep_interval = timedelta(minutes=sweep_interval_minutes or settings.PREVIEW_SWEEP_INTERVAL_MINUTES)

        self._records: Dict[str, ProcessRecord] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._pool_lock = asyncio.Lock()

        self.running = False
        self._sweep_task: Optional[asyncio.Task] = None

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        return self._session_locks.setdefault(session_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_record(self, session_id: str) -> Optional[ProcessRecord]:
        return self._records.get(session_id)

    def records(self) -> List[ProcessRecord]:
        return list(self._records.values())

    def active_count(self) -> int:
        return sum(1 for r in self._records.values() if r.status in ACTIVE_STATUSES)

    def status(self, session_id: str) -> Dict:
        record = self._records.get(session_id)
        if record is None:
            return {"status": ProcessStatus.IDLE.value, "port": None}
        return record.to_dict()

    def touch(self, session_id: str) -> None:
        record = self._records.get(session_id)
        if record is not None:
            record.touch()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, session_id: str, framework: Framework) -> Dict:
        """
        Ensure a preview process exists for the session.

        Returns immediately with {status, port}; installing and spawning
        continue in a supervised task.
        """
        framework = Framework(framework)
        victim: Optional[ProcessRecord] = None
        stale: Optional[ProcessRecord] = None

        async with self._session_lock(session_id):
            async with self._pool_lock:
                existing = self._records.get(session_id)
                if existing is not None:
                    if existing.status == ProcessStatus.RUNNING:
                        existing.touch()
                        return {"status": existing.status.value, "port": existing.port}
                    if existing.status in (ProcessStatus.INSTALLING, ProcessStatus.STARTING):
                        return {"status": existing.status.value, "port": existing.port}
                    # idle/error leftovers from a finished lifecycle
                    stale = existing

                if self.active_count() >= self.max_servers:
                    victim = self._pick_eviction_victim()
                    if victim is None:
                        logger.warning(
                            f"[PreviewPool] At capacity ({self.max_servers}) with no running "
                            f"server to evict; starting {session_id} anyway"
                        )

                # Allocate before dropping anything so a failure leaves the pool untouched
                port = self._allocate_port()
                if stale is not None:
                    self._records.pop(session_id, None)
                if victim is not None:
                    self._records.pop(victim.session_id, None)

                record = ProcessRecord(session_id=session_id, port=port, framework=framework)
                record.transition(ProcessStatus.INSTALLING)
                self._records[session_id] = record

            if stale is not None:
                await self._terminate(stale)
            if victim is not None:
                logger.info(
                    f"[PreviewPool] Evicting {victim.session_id} (idle since "
                    f"{victim.last_activity.isoformat()}) to make room for {session_id}"
                )
                await self._terminate(victim)

            record.setup_task = self.supervisor.spawn(
                self._run_preview(record),
                name=f"preview-{session_id}"
            )

        logger.info(f"[Preview:{session_id}] Starting {framework.value} preview on port {port}")
        return {"status": record.status.value, "port": port}

    def _pick_eviction_victim(self) -> Optional[ProcessRecord]:
        running = [r for r in self._records.values() if r.status == ProcessStatus.RUNNING]
        if not running:
            return None
        return min(running, key=lambda r: r.last_activity)

    def _allocate_port(self) -> int:
        """Linear probe over the port window, skipping ports held by records"""
        used = {r.port for r in self._records.values()}
        for port in range(self.base_port, self.base_port + self.port_window):
            if port in used:
                continue
            if self._is_port_available(port):
                return port
        raise PortAllocationError(self.base_port, self.port_window)

    def _is_port_available(self, port: int) -> bool:
        """Try to bind a throwaway listener on the port"""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((settings.PREVIEW_HOST, port))
            return True
        except OSError:
            return False
        finally:
            sock.close()

    # ------------------------------------------------------------------
    # Setup / spawn
    # ------------------------------------------------------------------

    def _is_current(self, record: ProcessRecord) -> bool:
        return self._records.get(record.session_id) is record

    async def _run_preview(self, record: ProcessRecord) -> None:
        """Install dependencies, spawn the dev server and wait for readiness"""
        session_id = record.session_id
        try:
            await self._ensure_dependencies(record)
            if not self._is_current(record):
                return

            record.transition(ProcessStatus.STARTING)
            command = f"{DEV_COMMANDS[record.framework]} {record.port} --host {settings.PREVIEW_HOST}"
            logger.info(f"[Preview:{session_id}] Spawning: {command}")
            record.process = await self._spawn_process(record, command)
            self.supervisor.spawn(self._watch_process(record), name=f"preview-watch-{session_id}")

            try:
                await asyncio.wait_for(record.ready.wait(), timeout=self.ready_timeout)
            except asyncio.TimeoutError:
                if self._is_current(record) and record.status == ProcessStatus.STARTING:
                    record.ready_source = "timeout"
                    record.transition(ProcessStatus.RUNNING)
                    logger.warning(
                        f"[Preview:{session_id}] No readiness signal after {self.ready_timeout}s; "
                        f"assuming running on port {record.port}",
                        extra={"event_type": "preview_ready_assumed", "port": record.port}
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            record.error = str(e)
            record.transition(ProcessStatus.ERROR)
            logger.error(f"[Preview:{session_id}] Failed to start preview: {e}")

    async def _ensure_dependencies(self, record: ProcessRecord) -> None:
        project_path = self.workspace.project_path(record.session_id)
        if not project_path.is_dir():
            raise PreviewProcessError(f"Project not found: {record.session_id}", record.session_id)
        if (project_path / "node_modules").exists():
            return

        logger.info(f"[Preview:{record.session_id}] Installing dependencies ({record.framework.value})")
        result = await self.workspace.execute(
            record.session_id,
            settings.INSTALL_COMMAND,
            timeout=settings.PREVIEW_INSTALL_TIMEOUT,
            env={"NODE_ENV": "development"},
        )
        if not result.success:
            raise PreviewProcessError(
                f"Dependency install failed: {result.error or result.stderr[-500:]}",
                record.session_id
            )

    async def _spawn_process(self, record: ProcessRecord, command: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.workspace.project_path(record.session_id)),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, "NODE_ENV": "development", "BROWSER": "none"},
            start_new_session=True,
            limit=OUTPUT_LINE_LIMIT,
        )

    async def _watch_process(self, record: ProcessRecord) -> None:
        """Follow output until the process exits, then settle the record"""
        process = record.process
        outcomes = await asyncio.gather(
            self._read_stdout(record, process.stdout),
            self._read_stderr(record, process.stderr),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error(f"[Preview:{record.session_id}] Output reader failed: {outcome}")
        exit_code = await process.wait()
        record.ready.set()

        if self._is_current(record) and record.status != ProcessStatus.ERROR:
            record.transition(ProcessStatus.IDLE)
            logger.info(f"[Preview:{record.session_id}] Dev server exited with code {exit_code}")

    async def _read_lines(self, record: ProcessRecord,
                          stream: Optional[asyncio.StreamReader]) -> AsyncIterator[str]:
        """Decoded output lines until EOF; oversized lines are skipped, not fatal"""
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # StreamReader has already discarded the overlong chunk
                logger.debug(f"[Preview:{record.session_id}] Skipped output line over the read limit")
                continue
            if not line:
                break
            yield line.decode('utf-8', errors='ignore').rstrip()

    async def _read_stdout(self, record: ProcessRecord, stream: Optional[asyncio.StreamReader]) -> None:
        async for text in self._read_lines(record, stream):
            logger.debug(f"[Preview:{record.session_id}] {text}")

            match = READY_PATTERN.search(text)
            if match and record.status == ProcessStatus.STARTING:
                actual_port = int(match.group(1))
                if actual_port != record.port:
                    logger.info(f"[Preview:{record.session_id}] Dev server chose port {actual_port} instead of {record.port}")
                    record.port = actual_port
                record.ready_source = "signal"
                record.transition(ProcessStatus.RUNNING)
                record.touch()
                record.ready.set()
                logger.info(f"[Preview:{record.session_id}] Ready on port {record.port}")

    async def _read_stderr(self, record: ProcessRecord, stream: Optional[asyncio.StreamReader]) -> None:
        async for text in self._read_lines(record, stream):
            if text:
                logger.warning(f"[Preview:{record.session_id}] stderr: {text[:500]}")

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, session_id: str) -> bool:
        """Remove the session's record and terminate its process"""
        async with self._session_lock(session_id):
            async with self._pool_lock:
                record = self._records.pop(session_id, None)
            if record is None:
                return False
            await self._terminate(record)
        logger.info(f"[Preview:{session_id}] Stopped")
        return True

    async def _terminate(self, record: ProcessRecord) -> None:
        """SIGTERM, then SIGKILL after the grace period. Never raises."""
        if record.setup_task is not None and not record.setup_task.done():
            record.setup_task.cancel()

        process = record.process
        if process is None or process.returncode is not None:
            return

        try:
            self._signal(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                logger.warning(f"[Preview:{record.session_id}] Did not exit after {self.stop_grace}s, killing")
                self._signal(process, signal.SIGKILL)
                await process.wait()
        except Exception as e:
            logger.error(f"[Preview:{record.session_id}] Error terminating dev server: {e}")

    def _signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        # The shell and the dev tool share a process group
        signal_process_group(process, sig)

    async def stop_all(self) -> None:
        for session_id in list(self._records.keys()):
            await self.stop(session_id)

    async def reinstall(self, session_id: str) -> Dict:
        """Stop the preview and reinstall dependencies from scratch"""
        await self.stop(session_id)
        try:
            result = await self.workspace.reinstall_dependencies(session_id)
        except Exception as e:
            logger.error(f"[Preview:{session_id}] Reinstall failed: {e}")
            return {"status": "error", "message": str(e)}
        if not result.success:
            return {"status": "error", "message": result.error or result.stderr[-500:]}
        return {"status": "success", "message": "Dependencies reinstalled successfully"}

    # ------------------------------------------------------------------
    # Idle sweep
    # ------------------------------------------------------------------

    async def start_sweeper(self) -> None:
        if self.running:
            logger.warning("[PreviewPool] Sweeper already running")
            return
        self.running = True
        self._sweep_task = self.supervisor.spawn(self._sweep_loop(), name="preview-idle-sweep")
        logger.info(f"[PreviewPool] Started - Idle timeout: {self.idle_timeout}, Interval: {self.sweep_interval}")

    async def _sweep_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.sweep_interval.total_seconds())
            try:
                await self.sweep_idle()
            except Exception as e:
                logger.error(f"[PreviewPool] Error in idle sweep: {e}", exc_info=True)

    async def sweep_idle(self) -> List[str]:
        """Stop running servers idle longer than the timeout"""
        cutoff = datetime.utcnow() - self.idle_timeout
        async with self._pool_lock:
            candidates = [
                r.session_id for r in self._records.values()
                if r.status == ProcessStatus.RUNNING and r.last_activity < cutoff
            ]

        stopped = []
        for session_id in candidates:
            record = self._records.get(session_id)
            # Re-check: the session may have been used since the scan
            if record is None or record.last_activity >= cutoff:
                continue
            if await self.stop(session_id):
                stopped.append(session_id)
        if stopped:
            logger.info(f"[PreviewPool] Stopped {len(stopped)} idle server(s): {stopped}")
        return stopped

    async def shutdown(self) -> None:
        """Stop the sweeper and every preview process"""
        self.running = False
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        await self.stop_all()
        await self.supervisor.drain(timeout=self.stop_grace)
        logger.info("[PreviewPool] Stopped")
