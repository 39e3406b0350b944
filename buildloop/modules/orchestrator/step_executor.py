"""
Step Executor - drives the coding phase one plan step at a time.

Steps run strictly in order: each step's generation sees the history
produced by the steps before it. A step that raises is recorded as failed
and reported on the channel; the remaining steps still run.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from buildloop.core.logging_config import logger
from buildloop.modules.agents.workspace_tools import WorkspaceToolset
from buildloop.modules.automation.file_manager import WorkspaceManager
from buildloop.modules.orchestrator import prompts
from buildloop.modules.orchestrator.event_bus import EventChannel
from buildloop.modules.orchestrator.plan_parser import extract_file_mentions, format_plan
from buildloop.schemas.session import ChatMessage, Framework, MessageRole, SessionPlan
from buildloop.services.persistence import SessionStore
from buildloop.utils.claude_client import GenerationAdapter


@dataclass
class StepResult:
    index: int
    step: str
    output: str = ""
    success: bool = True
    error: Optional[str] = None
    files: List[str] = field(default_factory=list)


class StepExecutor:
    """Runs plan steps sequentially against the generation adapter"""

    def __init__(self, generator: GenerationAdapter, workspace: WorkspaceManager, store: SessionStore):
        self.generator = generator
        self.workspace = workspace
        self.store = store

    async def run(
        self,
        session_id: str,
        plan: SessionPlan,
        framework: Framework,
        history: List[ChatMessage],
        channel: Optional[EventChannel] = None
    ) -> List[StepResult]:
        """
        Execute every step of the plan.

        history is extended in place with each step's instruction and output.
        """
        plan_summary = format_plan(plan)
        total = len(plan.steps)
        results: List[StepResult] = []

        for index, step in enumerate(plan.steps, start=1):
            if channel is not None:
                channel.status(f"Implementing step {index}/{total}: {step}")

            try:
                result = await self._run_step(session_id, index, step, plan_summary, framework, history)
            except Exception as e:
                logger.error(f"[Steps:{session_id}] Step {index} failed: {e}")
                result = StepResult(index=index, step=step, success=False, error=str(e))
            results.append(result)

            if channel is None:
                continue
            if result.success:
                channel.chunk(result.output)
                channel.chunk(f"\n\n**Step {index} Complete:** {step}\n")
            else:
                channel.chunk(f"\n\n⚠️ Error in step {index}: {result.error}\n")

        failed = sum(1 for r in results if not r.success)
        logger.info(f"[Steps:{session_id}] Finished {total} step(s), {failed} failed")
        return results

    async def _run_step(
        self,
        session_id: str,
        index: int,
        step: str,
        plan_summary: str,
        framework: Framework,
        history: List[ChatMessage]
    ) -> StepResult:
        instruction = ChatMessage(role=MessageRole.USER, content=f"Implement Step {index}: {step}")
        history.append(instruction)
        toolset = WorkspaceToolset(self.workspace, session_id)

        generation = await self.generator.generate(
            history,
            prompts.step_prompt(step, plan_summary, framework),
            tools=toolset
        )

        output = generation.text
        files = await self._track_changes(session_id, toolset, output)

        history.append(ChatMessage(role=MessageRole.ASSISTANT, content=output))
        await self.store.add_message(session_id, MessageRole.ASSISTANT, output)
        return StepResult(index=index, step=step, output=output, files=files)

    async def _track_changes(self, session_id: str, toolset: WorkspaceToolset, output: str) -> List[str]:
        """Record tool writes plus file mentions in the output text. Best effort."""
        changes = toolset.changes()
        for path, action in extract_file_mentions(output):
            changes.setdefault(path, action)

        for path, action in changes.items():
            try:
                await self.store.track_file_change(session_id, path, action)
            except Exception as e:
                logger.warning(f"[Steps:{session_id}] Could not track {path}: {e}")
        return sorted(changes)
