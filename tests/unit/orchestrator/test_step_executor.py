"""
Unit Tests for StepExecutor
"""
import pytest

from buildloop.modules.orchestrator.event_bus import EventChannel, EventType
from buildloop.modules.orchestrator.plan_parser import build_plan
from buildloop.modules.orchestrator.step_executor import StepExecutor
from buildloop.schemas.session import Framework, MessageRole


class TestStepExecutor:
    """Test sequential step execution"""

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_later_steps(self, workspace, store, plan_text, make_generator):
        generator = make_generator(responses=["step one", "step three"], fail_on={2})
        executor = StepExecutor(generator, workspace, store)
        plan = build_plan("Create a todo app", plan_text)

        results = await executor.run("s1", plan, Framework.NEXTJS, history=[])

        assert [r.success for r in results] == [True, False, True]
        assert results[1].error == "generation 2 failed"
        assert results[2].output == "step three"
        assert len(generator.calls) == 3

    @pytest.mark.asyncio
    async def test_history_accumulates_between_steps(self, workspace, store, plan_text, make_generator):
        generator = make_generator(responses=["one", "two", "three"])
        executor = StepExecutor(generator, workspace, store)
        plan = build_plan("Create a todo app", plan_text)
        history = []

        await executor.run("s1", plan, Framework.NEXTJS, history)

        third_call_history = generator.calls[2]["history"]
        assert [m.content for m in third_call_history] == [
            "Implement Step 1: Create the TodoItem component", "one",
            "Implement Step 2: Create the TodoList component", "two",
            "Implement Step 3: Render TodoList on the home page",
        ]
        stored = await store.get_history("s1")
        assert [m.content for m in stored if m.role == MessageRole.ASSISTANT] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_channel_reports_progress(self, workspace, store, plan_text, make_generator):
        generator = make_generator(fail_on={3})
        executor = StepExecutor(generator, workspace, store)
        plan = build_plan("Create a todo app", plan_text)
        channel = EventChannel("s1")

        await executor.run("s1", plan, Framework.NEXTJS, [], channel)
        channel.complete()
        events = await channel.collect()

        statuses = [e.data["message"] for e in events if e.type == EventType.STATUS]
        chunks = "".join(e.data["content"] for e in events if e.type == EventType.CHUNK)
        assert statuses[0] == "Implementing step 1/3: Create the TodoItem component"
        assert "**Step 1 Complete:** Create the TodoItem component" in chunks
        assert "⚠️ Error in step 3: generation 3 failed" in chunks

    @pytest.mark.asyncio
    async def test_tool_writes_are_tracked(self, workspace, store, make_generator):
        await workspace.create_project("s1", Framework.NEXTJS)
        generator = make_generator(tool_calls=[
            ("write_file", {"filePath": "src/components/Header.tsx", "content": "export default 1"}),
        ])
        executor = StepExecutor(generator, workspace, store)
        plan = build_plan("Add a header", "## Implementation Steps\n1. Add the header")

        [result] = await executor.run("s1", plan, Framework.NEXTJS, [])

        assert result.files == ["src/components/Header.tsx"]
        changes = {c.path: c.action for c in await store.get_changed_files("s1")}
        assert changes == {"src/components/Header.tsx": "created"}
