"""
Unit Tests for SessionOrchestrator

The preview pool is a mock and builds are patched at BuildValidator.validate,
so these tests exercise workflow sequencing, phases and event streams only.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from buildloop.core.exceptions import PlanNotFoundError
from buildloop.modules.automation.build_validator import BuildResult
from buildloop.modules.automation.preview_server import PreviewServerManager
from buildloop.modules.orchestrator.event_bus import EventType
from buildloop.modules.orchestrator.prompts import PLANNING_PROMPT
from buildloop.modules.orchestrator.session_orchestrator import SessionOrchestrator
from buildloop.schemas.session import Framework, SessionPhase


PREVIEW = {"status": "installing", "port": 5173}


def make_orchestrator(workspace, store, generator, build=None):
    pool = MagicMock(spec=PreviewServerManager)
    pool.start = AsyncMock(return_value=dict(PREVIEW))
    pool.stop = AsyncMock(return_value=True)
    pool.reinstall = AsyncMock(return_value={"status": "success", "message": "Dependencies reinstalled successfully"})
    pool.shutdown = AsyncMock()
    pool.start_sweeper = AsyncMock()
    pool.status = MagicMock(return_value={"status": "idle", "port": None})

    orchestrator = SessionOrchestrator(generator=generator, store=store, workspace=workspace, pool=pool)
    orchestrator.build_validator.validate = AsyncMock(return_value=build or BuildResult(success=True))
    return orchestrator


def event_types(events):
    return [e.type for e in events]


class TestPlanning:
    """Test the planning phase"""

    @pytest.mark.asyncio
    async def test_plan_creates_project_and_awaits_approval(self, workspace, store, generator):
        orchestrator = make_orchestrator(workspace, store, generator)

        result = await orchestrator.plan("s1", "Create a todo app", Framework.NEXTJS)

        assert result.plan_text
        assert result.phase == SessionPhase.AWAITING_APPROVAL
        assert workspace.project_exists("s1")
        assert await store.get_phase("s1") == SessionPhase.AWAITING_APPROVAL
        assert (await store.get_plan("s1")).steps[0] == "Create the TodoItem component"
        assert len(await store.get_history("s1")) == 2
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_plan_stream_events(self, workspace, store, generator, plan_text):
        orchestrator = make_orchestrator(workspace, store, generator)

        events = await orchestrator.plan_stream("s1", "Create a todo app", Framework.NEXTJS).collect()

        statuses = [e.data["message"] for e in events if e.type == EventType.STATUS]
        assert statuses == ["Initializing project...", "AI is creating a plan...", "Plan ready for approval"]
        assert "".join(e.data["content"] for e in events if e.type == EventType.CHUNK) == plan_text
        assert events[-1].type == EventType.COMPLETE
        assert events[-1].data == {"phase": "awaiting_approval", "plan": plan_text}
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_replanning_supersedes_pending_plan(self, workspace, store, make_generator, plan_text):
        generator = make_generator(responses=[plan_text, "## Implementation Steps\n1. Only step"])
        orchestrator = make_orchestrator(workspace, store, generator)

        await orchestrator.plan("s1", "first", Framework.NEXTJS)
        await orchestrator.plan("s1", "second", Framework.NEXTJS)

        assert (await store.get_plan("s1")).request == "second"
        await orchestrator.shutdown()


class TestCoding:
    """Test approval, coding and verification"""

    @pytest.mark.asyncio
    async def test_approve_without_plan(self, workspace, store, generator):
        orchestrator = make_orchestrator(workspace, store, generator)

        with pytest.raises(PlanNotFoundError, match="No plan found"):
            await orchestrator.approve_and_code("s1")
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_approve_and_code(self, workspace, store, make_generator, plan_text):
        generator = make_generator(responses=[plan_text, "step 1", "step 2", "step 3", "All checks passed"])
        orchestrator = make_orchestrator(workspace, store, generator)
        await orchestrator.plan("s1", "Create a todo app", Framework.NEXTJS)

        output = await orchestrator.approve_and_code("s1")

        assert output == "step 1\n\nstep 2\n\nstep 3\n\n---\n**Verification:** All checks passed"
        assert await store.get_phase("s1") == SessionPhase.COMPLETE
        assert await store.get_plan("s1") is None
        orchestrator.pool.start.assert_awaited_once_with("s1", Framework.NEXTJS)
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_stream_failure_in_one_step(self, workspace, store, make_generator, plan_text):
        generator = make_generator(responses=[plan_text], fail_on={3})
        orchestrator = make_orchestrator(workspace, store, generator)
        await orchestrator.plan("s1", "Create a todo app", Framework.NEXTJS)

        events = await orchestrator.approve_and_code_stream("s1").collect()

        complete = events[-1]
        assert complete.type == EventType.COMPLETE
        assert complete.data["failed_steps"] == [2]
        assert complete.data["preview"] == PREVIEW
        chunks = "".join(e.data["content"] for e in events if e.type == EventType.CHUNK)
        assert "**Step 3 Complete:**" in chunks
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_stream_leaves_verifying_until_background_check(self, workspace, store, make_generator, plan_text):
        generator = make_generator(responses=[plan_text])
        orchestrator = make_orchestrator(workspace, store, generator)
        await orchestrator.plan("s1", "Create a todo app", Framework.NEXTJS)

        events = await orchestrator.approve_and_code_stream("s1").collect()
        assert events[-1].type == EventType.COMPLETE

        await orchestrator.shutdown()
        assert await store.get_phase("s1") == SessionPhase.COMPLETE
        orchestrator.build_validator.validate.assert_awaited()

    @pytest.mark.asyncio
    async def test_stream_without_plan_ends_with_error(self, workspace, store, generator):
        orchestrator = make_orchestrator(workspace, store, generator)

        events = await orchestrator.approve_and_code_stream("s1").collect()

        assert event_types(events) == [EventType.ERROR]
        assert events[0].data["code"] == "PLAN_NOT_FOUND"
        assert events[0].data["message"] == "No plan found. Run planning phase first."
        await orchestrator.shutdown()


class TestHandleMessage:
    """Test the one-call router"""

    @pytest.mark.asyncio
    async def test_message_while_awaiting_approval_codes_the_plan(self, workspace, store, make_generator, plan_text):
        generator = make_generator(responses=[plan_text])
        orchestrator = make_orchestrator(workspace, store, generator)
        await orchestrator.plan("s1", "Create a todo app", Framework.NEXTJS)

        output = await orchestrator.handle_message("s1", "looks good", Framework.NEXTJS)

        assert "**Verification:**" in output
        assert await store.get_plan("s1") is None
        planning_calls = [c for c in generator.calls if c["system_prompt"].startswith(PLANNING_PROMPT)]
        assert len(planning_calls) == 1
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_message_from_idle_plans_then_codes(self, workspace, store, generator, plan_text):
        orchestrator = make_orchestrator(workspace, store, generator)

        output = await orchestrator.handle_message("s1", "Create a todo app", Framework.NEXTJS)

        assert output.startswith(plan_text)
        assert await store.get_phase("s1") == SessionPhase.COMPLETE
        await orchestrator.shutdown()


class TestFastMode:
    """Test direct changes without a plan"""

    @pytest.mark.asyncio
    async def test_fast_mode_events(self, workspace, store, make_generator):
        generator = make_generator(
            responses=["Header added."],
            tool_calls=[("write_file", {"filePath": "src/components/Header.tsx", "content": "export {}"})],
        )
        orchestrator = make_orchestrator(workspace, store, generator)

        events = await orchestrator.fast_mode("s1", "Add a header", Framework.NEXTJS).collect()

        assert event_types(events) == [
            EventType.STATUS, EventType.CHUNK, EventType.CHANGES, EventType.STATUS, EventType.COMPLETE,
        ]
        assert events[2].data["files"] == ["src/components/Header.tsx"]
        assert events[-1].data == {"message": "✅ Done!", "preview": PREVIEW}
        assert await store.get_phase("s1") == SessionPhase.COMPLETE
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_fast_mode_generation_failure(self, workspace, store, make_generator):
        orchestrator = make_orchestrator(workspace, store, make_generator(fail_on={1}))

        events = await orchestrator.fast_mode("s1", "Add a header", Framework.NEXTJS).collect()

        assert events[-1].type == EventType.ERROR
        assert events[-1].data["code"] == "GENERATION_FAILED"
        assert sum(1 for e in events if e.terminal) == 1
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_on_event_callback_sees_stream(self, workspace, store, make_generator):
        seen = []
        orchestrator = make_orchestrator(workspace, store, make_generator())

        await orchestrator.fast_mode("s1", "Add a header", Framework.NEXTJS, on_event=seen.append).collect()

        assert seen[-1].type == EventType.COMPLETE
        await orchestrator.shutdown()


class TestRepair:
    """Test the repair stream"""

    @pytest.mark.asyncio
    async def test_repair_without_project(self, workspace, store, generator):
        orchestrator = make_orchestrator(workspace, store, generator)

        events = await orchestrator.repair("missing").collect()

        assert event_types(events) == [EventType.ERROR]
        assert events[0].data["code"] == "PROJECT_NOT_FOUND"
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_repair_healthy_project(self, workspace, store, make_generator):
        await workspace.create_project("s1", Framework.NEXTJS)
        generator = make_generator()
        orchestrator = make_orchestrator(workspace, store, generator)

        events = await orchestrator.repair("s1", Framework.NEXTJS).collect()

        assert EventType.DIAGNOSTICS not in event_types(events)
        assert events[-1].data["fixed"] is True
        assert generator.calls == []
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_repair_fixes_build(self, workspace, store, make_generator):
        await workspace.create_project("s1", Framework.NEXTJS)
        orchestrator = make_orchestrator(workspace, store, make_generator())
        broken = BuildResult(success=False, errors=["error TS2304: Cannot find name 'x'."])
        orchestrator.build_validator.validate = AsyncMock(side_effect=[broken, BuildResult(success=True)])

        events = await orchestrator.repair("s1", Framework.NEXTJS).collect()

        [diagnostics] = [e for e in events if e.type == EventType.DIAGNOSTICS]
        assert diagnostics.data["errors"] == broken.errors
        assert diagnostics.data["error_type"] == "build"
        assert events[-1].data["fixed"] is True
        assert await store.get_phase("s1") == SessionPhase.COMPLETE
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_repair_reports_remaining_errors(self, workspace, store, make_generator):
        await workspace.create_project("s1", Framework.NEXTJS)
        orchestrator = make_orchestrator(workspace, store, make_generator())
        broken = BuildResult(success=False, errors=["error TS2304: Cannot find name 'x'."])
        orchestrator.build_validator.validate = AsyncMock(return_value=broken)

        events = await orchestrator.repair("s1", Framework.NEXTJS).collect()

        diagnostics = [e for e in events if e.type == EventType.DIAGNOSTICS]
        assert diagnostics[-1].data["success"] is False
        assert events[-1].type == EventType.COMPLETE
        assert events[-1].data["fixed"] is False
        await orchestrator.shutdown()


class TestSessionIsolation:
    """Test per-session serialization"""

    @pytest.mark.asyncio
    async def test_workflows_for_one_session_do_not_interleave(self, workspace, store, make_generator):
        active = 0
        overlaps = []

        class SlowGenerator(make_generator):
            async def generate(self, history, system_prompt, tools=None):
                nonlocal active
                active += 1
                overlaps.append(active)
                await asyncio.sleep(0.01)
                active -= 1
                return await super().generate(history, system_prompt, tools)

        orchestrator = make_orchestrator(workspace, store, SlowGenerator())

        first = orchestrator.fast_mode("s1", "one", Framework.NEXTJS)
        second = orchestrator.fast_mode("s1", "two", Framework.NEXTJS)
        await asyncio.gather(first.collect(), second.collect())

        assert max(overlaps) == 1
        await orchestrator.shutdown()


class TestRuntimeAndPreview:
    """Test pass-through operations"""

    @pytest.mark.asyncio
    async def test_ingest_and_read_runtime_errors(self, workspace, store, generator):
        orchestrator = make_orchestrator(workspace, store, generator)

        assert orchestrator.ingest_runtime_error("s1", "x is undefined", None, "Uncaught Exception")
        assert not orchestrator.ingest_runtime_error("s1", "x is undefined", None, "Uncaught Exception")

        [line] = orchestrator.get_runtime_logs("s1")
        assert "Uncaught Exception: x is undefined" in line
        orchestrator.clear_runtime_logs("s1")
        assert orchestrator.get_runtime_logs("s1") == []
        orchestrator.pool.touch.assert_called_with("s1")
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_lifecycle(self, workspace, store, generator):
        orchestrator = make_orchestrator(workspace, store, generator)

        await orchestrator.start()
        assert await orchestrator.reinstall("s1") == {
            "status": "success", "message": "Dependencies reinstalled successfully"
        }
        assert await orchestrator.stop_preview("s1") is True
        await orchestrator.shutdown()

        orchestrator.pool.start_sweeper.assert_awaited_once()
        orchestrator.pool.shutdown.assert_awaited_once()
        with pytest.raises(RuntimeError):
            orchestrator.fast_mode("s1", "late", Framework.NEXTJS)
