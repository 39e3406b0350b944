"""
Session Orchestrator - planning, coding, verification, fast and repair workflows.

Entry points come in two shapes:
- synchronous (plan, approve_and_code, handle_message) return a result or
  raise a BuildLoopError carrying the user-facing message
- streaming (plan_stream, approve_and_code_stream, fast_mode, repair) return
  an EventChannel right away; the workflow runs as a supervised task and
  always ends the channel with exactly one complete or error event

Workflows for one session never interleave: each holds the session's lock
for its whole run. A consumer that stops reading does not stop the
workflow; it runs to completion and persists its results.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from buildloop.core.background import TaskSupervisor
from buildloop.core.config import settings
from buildloop.core.exceptions import BuildLoopError, PlanNotFoundError, ProjectNotFoundError, error_response
from buildloop.core.logging_config import logger, set_session_id
from buildloop.modules.agents.workspace_tools import WorkspaceToolset
from buildloop.modules.automation.build_validator import BuildValidator
from buildloop.modules.automation.file_manager import WorkspaceManager
from buildloop.modules.automation.preview_server import PreviewServerManager
from buildloop.modules.orchestrator import prompts
from buildloop.modules.orchestrator.event_bus import EventChannel, EventHandler, EventType
from buildloop.modules.orchestrator.plan_parser import build_plan, format_plan
from buildloop.modules.orchestrator.repair_loop import RepairLoop
from buildloop.modules.orchestrator.state_machine import SessionStateMachine
from buildloop.modules.orchestrator.step_executor import StepExecutor, StepResult
from buildloop.schemas.session import ChatMessage, Framework, MessageRole, PlanResult, SessionPhase, SessionPlan
from buildloop.services.log_bus import RuntimeLogBus
from buildloop.services.persistence import InMemorySessionStore, SessionStore
from buildloop.utils.claude_client import ClaudeClient, GenerationAdapter


Workflow = Callable[[EventChannel], Awaitable[None]]


class SessionOrchestrator:
    """Composes workspace, generation, preview pool and diagnostics per session"""

    def __init__(
        self,
        generator: Optional[GenerationAdapter] = None,
        store: Optional[SessionStore] = None,
        workspace: Optional[WorkspaceManager] = None,
        log_bus: Optional[RuntimeLogBus] = None,
        pool: Optional[PreviewServerManager] = None,
        supervisor: Optional[TaskSupervisor] = None,
    ):
        self.supervisor = supervisor or TaskSupervisor("Orchestrator")
        self.generator = generator or ClaudeClient()
        self.store = store or InMemorySessionStore()
        self.workspace = workspace or WorkspaceManager()
        self.log_bus = log_bus or RuntimeLogBus()
        self.pool = pool or PreviewServerManager(self.workspace)

        self.phases = SessionStateMachine(self.store)
        self.build_validator = BuildValidator(self.workspace)
        self.steps = StepExecutor(self.generator, self.workspace, self.store)
        self.repair_loop = RepairLoop(
            self.generator, self.workspace, self.store, self.build_validator, self.log_bus
        )

        self._session_locks: Dict[str, asyncio.Lock] = {}

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        return self._session_locks.setdefault(session_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.pool.start_sweeper()
        logger.info("[Orchestrator] Started")

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Let running workflows finish (up to timeout), then stop every preview"""
        await self.supervisor.drain(timeout=timeout)
        await self.pool.shutdown()
        logger.info("[Orchestrator] Stopped")

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def plan(self, session_id: str, prompt: str, framework: Framework = Framework.NEXTJS) -> PlanResult:
        """Generate a plan and leave the session awaiting approval"""
        async with self._session_lock(session_id):
            set_session_id(session_id)
            return await self._run_planning(session_id, prompt, Framework(framework))

    def plan_stream(
        self,
        session_id: str,
        prompt: str,
        framework: Framework = Framework.NEXTJS,
        on_event: Optional[EventHandler] = None
    ) -> EventChannel:
        async def workflow(channel: EventChannel) -> None:
            result = await self._run_planning(session_id, prompt, Framework(framework), channel)
            channel.complete(phase=result.phase.value, plan=result.plan_text)

        return self._launch(session_id, "plan", workflow, on_event)

    async def _run_planning(
        self,
        session_id: str,
        prompt: str,
        framework: Framework,
        channel: Optional[EventChannel] = None
    ) -> PlanResult:
        self._status(channel, "Initializing project...")
        await self.workspace.ensure_project(session_id, framework)
        await self.store.set_framework(session_id, framework)
        await self.phases.transition(session_id, SessionPhase.PLANNING, reason="planning request")
        await self.store.clear_changed_files(session_id)

        history = await self.store.get_history(session_id)
        messages = [*history, ChatMessage(role=MessageRole.USER, content=prompt)]
        system_prompt = prompts.planning_prompt(framework)

        self._status(channel, "AI is creating a plan...")
        if channel is not None:
            parts: List[str] = []
            async for chunk in self.generator.stream(messages, system_prompt):
                parts.append(chunk)
                channel.chunk(chunk)
            plan_text = "".join(parts)
        else:
            plan_text = (await self.generator.generate(messages, system_prompt)).text

        plan = build_plan(prompt, plan_text)
        await self.store.set_plan(session_id, plan)
        await self.store.add_message(session_id, MessageRole.USER, prompt)
        await self.store.add_message(session_id, MessageRole.ASSISTANT, plan_text)
        await self.phases.transition(session_id, SessionPhase.AWAITING_APPROVAL, reason=f"plan {plan.id}")

        self._status(channel, "Plan ready for approval")
        logger.info(f"[Orchestrator:{session_id}] Plan ready with {len(plan.steps)} step(s)")
        return PlanResult(plan_text=plan_text, phase=SessionPhase.AWAITING_APPROVAL, plan=plan)

    # ------------------------------------------------------------------
    # Coding
    # ------------------------------------------------------------------

    async def approve_and_code(self, session_id: str) -> str:
        """Approve the pending plan, implement it, verify, and return the combined output"""
        async with self._session_lock(session_id):
            set_session_id(session_id)
            plan, framework, results = await self._run_coding(session_id)
            verification = await self._run_verification(session_id, plan, framework)
            await self._finish_coding(session_id, framework)

        code_output = "\n\n".join(r.output for r in results if r.success)
        return f"{code_output}\n\n---\n**Verification:** {verification}"

    def approve_and_code_stream(self, session_id: str, on_event: Optional[EventHandler] = None) -> EventChannel:
        async def workflow(channel: EventChannel) -> None:
            plan, framework, results = await self._run_coding(session_id, channel)

            channel.status("Implementation steps complete, verifying...")
            await self.phases.transition(session_id, SessionPhase.VERIFYING, reason="steps complete")
            channel.status("✅ Generation complete. Running background checks...")
            preview = await self._finish_coding(session_id, framework, channel)

            channel.complete(
                message="Code generated. Verifying in background...",
                steps=len(results),
                failed_steps=[r.index for r in results if not r.success],
                preview=preview,
            )

        return self._launch(session_id, "code", workflow, on_event)

    async def _run_coding(self, session_id: str, channel: Optional[EventChannel] = None):
        plan = await self.store.get_plan(session_id)
        if plan is None:
            raise PlanNotFoundError(session_id)

        self._status(channel, "Plan approved, starting coding...")
        await self.store.approve_plan(session_id)
        await self.phases.transition(session_id, SessionPhase.CODING, reason=f"plan {plan.id} approved")

        framework = await self.store.get_framework(session_id)
        history = await self.store.get_history(session_id)

        self._status(channel, "Starting iterative implementation...")
        results: List[StepResult] = await self.steps.run(session_id, plan, framework, history, channel)
        return plan, framework, results

    async def _run_verification(self, session_id: str, plan: SessionPlan, framework: Framework) -> str:
        """Review the changed files against the plan with one generation"""
        await self.phases.transition(session_id, SessionPhase.VERIFYING, reason="coding complete")

        changed = [c.path for c in await self.store.get_changed_files(session_id) if c.action != "deleted"]
        previews = []
        for path in changed[:settings.VERIFY_MAX_FILES]:
            try:
                content = await self.workspace.read_file(session_id, path)
            except BuildLoopError:
                continue
            previews.append(f"--- {path} ---\n{content[:settings.VERIFY_FILE_PREVIEW_CHARS]}")

        content = "FILES CONTENT (truncated):\n" + ("\n\n".join(previews) or "(no files changed)")
        result = await self.generator.generate(
            [ChatMessage(role=MessageRole.USER, content=content)],
            prompts.verification_prompt(framework, format_plan(plan), changed)
        )
        await self.phases.transition(session_id, SessionPhase.COMPLETE, reason="verification complete")
        return result.text

    async def _finish_coding(self, session_id: str, framework: Framework,
                             channel: Optional[EventChannel] = None) -> Dict:
        """Detach build verification, then make sure a preview is up"""
        self.supervisor.spawn(
            self._background_verify(session_id, framework),
            name=f"verify-{session_id}"
        )
        self._status(channel, "🚀 Starting dev server...")
        return await self._ensure_preview(session_id, framework)

    async def _background_verify(self, session_id: str, framework: Framework) -> None:
        await asyncio.sleep(settings.BACKGROUND_VERIFY_DELAY)
        async with self._session_lock(session_id):
            set_session_id(session_id)
            try:
                result = await self.repair_loop.background_verify(session_id, framework, delay=0)
                if result is not None and not result.success:
                    logger.warning(f"[Orchestrator:{session_id}] Background repair failed: {result.error}")
            finally:
                await self.phases.transition(
                    session_id, SessionPhase.COMPLETE,
                    reason="background verification finished",
                    expected=SessionPhase.VERIFYING
                )

    # ------------------------------------------------------------------
    # Fast mode
    # ------------------------------------------------------------------

    def fast_mode(
        self,
        session_id: str,
        message: str,
        framework: Framework = Framework.NEXTJS,
        on_event: Optional[EventHandler] = None
    ) -> EventChannel:
        """Apply a change directly, without a planning phase"""
        async def workflow(channel: EventChannel) -> None:
            fw = Framework(framework)
            channel.status("⚡ Generating code...")
            await self.workspace.ensure_project(session_id, fw)
            await self.store.set_framework(session_id, fw)
            await self.phases.transition(session_id, SessionPhase.CODING, reason="fast mode")

            history = await self.store.get_history(session_id)
            await self.store.add_message(session_id, MessageRole.USER, message)
            messages = [*history, ChatMessage(role=MessageRole.USER, content=message)]

            toolset = WorkspaceToolset(self.workspace, session_id)
            generation = await self.generator.generate(messages, prompts.fast_mode_prompt(fw), tools=toolset)
            channel.chunk(generation.text)

            await self.store.add_message(session_id, MessageRole.ASSISTANT, generation.text)
            changes = toolset.changes()
            for path, action in changes.items():
                await self.store.track_file_change(session_id, path, action)
            channel.changes(sorted(changes))

            channel.status("🚀 Starting dev server...")
            preview = await self._ensure_preview(session_id, fw)
            await self.phases.transition(session_id, SessionPhase.COMPLETE, reason="fast mode done")
            channel.complete(message="✅ Done!", preview=preview)

        return self._launch(session_id, "fast", workflow, on_event)

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def repair(
        self,
        session_id: str,
        framework: Optional[Framework] = None,
        on_event: Optional[EventHandler] = None
    ) -> EventChannel:
        """Build, collect diagnostics, repair once, re-verify"""
        async def workflow(channel: EventChannel) -> None:
            if not self.workspace.project_exists(session_id):
                raise ProjectNotFoundError(session_id)
            fw = Framework(framework) if framework else await self.store.get_framework(session_id)

            channel.status("🔍 Analyzing project...")
            await self.phases.transition(session_id, SessionPhase.CODING, reason="repair")

            channel.status("🔨 Running build...")
            diagnostics = await self.repair_loop.collect_diagnostics(session_id)
            if diagnostics.build is not None and diagnostics.build.success:
                channel.chunk("✅ Build passed successfully. Checking runtime logs...\n")

            fixed = False
            if not diagnostics.has_errors:
                channel.chunk("✅ No errors found! Project is healthy.\n")
                fixed = True
            else:
                channel.chunk(f"⚠️ **Found {len(diagnostics.errors)} {diagnostics.error_type} errors**\n")
                channel.diagnostics(diagnostics.errors, error_type=diagnostics.error_type)

                channel.status("🔧 Applying fixes...")
                result = await self.repair_loop.fix(session_id, diagnostics.errors, diagnostics.error_type, fw)
                if result.files_changed:
                    channel.changes(result.files_changed)

                if result.success:
                    channel.chunk("✅ Fixes applied. Verifying build...\n")
                    channel.status("🔨 Verifying fix...")
                    rebuild = await self.build_validator.validate(session_id)
                    if rebuild.success:
                        fixed = True
                        channel.chunk("🎉 **Build Fixed!** Project is healthy.\n")
                        channel.status("✅ Fixed")
                    else:
                        channel.chunk("❌ Fix attempt failed. Some errors remain.\n")
                        channel.diagnostics(rebuild.errors, error_type="build", success=False)
                else:
                    channel.chunk("❌ Could not automatically fix errors.\n")
                    channel.diagnostics(diagnostics.errors, error_type=diagnostics.error_type,
                                        success=False, reason=result.error)

            preview = await self._ensure_preview(session_id, fw)
            await self.phases.transition(session_id, SessionPhase.COMPLETE, reason="repair finished")
            channel.complete(message="done", fixed=fixed, preview=preview)

        return self._launch(session_id, "repair", workflow, on_event)

    # ------------------------------------------------------------------
    # Legacy router
    # ------------------------------------------------------------------

    async def handle_message(self, session_id: str, message: str,
                             framework: Framework = Framework.NEXTJS) -> str:
        """
        One-call workflow.

        A session waiting on approval treats any message as approval so the
        pending plan is not replaced; otherwise plan and code in sequence.
        """
        phase = await self.store.get_phase(session_id)
        if phase == SessionPhase.AWAITING_APPROVAL:
            logger.info(f"[Orchestrator:{session_id}] Awaiting approval, routing message to coding")
            return await self.approve_and_code(session_id)

        planned = await self.plan(session_id, message, framework)
        coded = await self.approve_and_code(session_id)
        return f"{planned.plan_text}\n\n{coded}"

    # ------------------------------------------------------------------
    # Runtime diagnostics and preview
    # ------------------------------------------------------------------

    def ingest_runtime_error(self, session_id: str, message: str, stack: Optional[str] = None,
                             error_type: Optional[str] = None) -> bool:
        """Callback for errors reported by the preview page"""
        self.pool.touch(session_id)
        return self.log_bus.add_runtime_error(session_id, message, stack, error_type)

    def get_runtime_logs(self, session_id: str) -> List[str]:
        return self.log_bus.get_runtime_logs(session_id)

    def clear_runtime_logs(self, session_id: str) -> None:
        self.log_bus.clear_runtime_logs(session_id)

    def preview_status(self, session_id: str) -> Dict:
        return self.pool.status(session_id)

    async def stop_preview(self, session_id: str) -> bool:
        return await self.pool.stop(session_id)

    async def reinstall(self, session_id: str) -> Dict:
        """Stop the preview and reinstall dependencies from scratch"""
        async with self._session_lock(session_id):
            set_session_id(session_id)
            return await self.pool.reinstall(session_id)

    async def _ensure_preview(self, session_id: str, framework: Framework) -> Dict:
        try:
            return await self.pool.start(session_id, framework)
        except BuildLoopError as e:
            logger.warning(f"[Orchestrator:{session_id}] Preview not started: {e.message}")
            return {"status": "error", "error": e.message}

    # ------------------------------------------------------------------
    # Stream plumbing
    # ------------------------------------------------------------------

    def _launch(self, session_id: str, name: str, workflow: Workflow,
                on_event: Optional[EventHandler]) -> EventChannel:
        channel = EventChannel(session_id, on_event)
        self.supervisor.spawn(self._produce(session_id, name, workflow, channel), name=f"{name}-{session_id}")
        return channel

    async def _produce(self, session_id: str, name: str, workflow: Workflow, channel: EventChannel) -> None:
        async with self._session_lock(session_id):
            set_session_id(session_id)
            try:
                await workflow(channel)
            except BuildLoopError as e:
                logger.warning(f"[Orchestrator:{session_id}] {name} failed: {e.message}")
                channel.emit(EventType.ERROR, **error_response(e))
            except Exception as e:
                logger.log_error_with_context(e, context=f"{name} workflow", session_id=session_id)
                channel.emit(EventType.ERROR, **error_response(e))
            finally:
                if not channel.closed:
                    channel.error(f"{name} ended without a result")

    @staticmethod
    def _status(channel: Optional[EventChannel], message: str) -> None:
        if channel is not None:
            channel.status(message)
