"""
buildloop - Test Configuration and Fixtures
"""
import os

import pytest

# Set testing environment before settings are loaded
os.environ['ENVIRONMENT'] = 'testing'
os.environ['ANTHROPIC_API_KEY'] = 'test-api-key'
os.environ['BACKGROUND_VERIFY_DELAY'] = '0'
os.environ['LOG_FILE'] = ''

from buildloop.core.exceptions import GenerationError
from buildloop.modules.automation.file_manager import WorkspaceManager
from buildloop.services.persistence import InMemorySessionStore
from buildloop.utils.claude_client import GenerationResult


PLAN_TEXT = """## Components to Create
- **TodoList**: renders the list of todos
- `TodoItem`: a single row with a checkbox

## Files to Modify
- src/app/page.tsx: mount the TodoList
- src/components/TodoList.tsx: new component

## Implementation Steps
1. Create the TodoItem component
2. Create the TodoList component
3. Render TodoList on the home page
"""


class FakeGenerator:
    """
    Scripted stand-in for ClaudeClient.

    Responses are consumed in order, then `default` is returned. Every call
    runs `tool_calls` against the toolset it was given, and call numbers
    listed in `fail_on` (1-based) raise GenerationError.
    """

    def __init__(self, responses=None, tool_calls=None, fail_on=None, default="Done."):
        self.responses = list(responses or [])
        self.tool_calls = list(tool_calls or [])
        self.fail_on = set(fail_on or ())
        self.default = default
        self.calls = []

    def _next_text(self):
        return self.responses.pop(0) if self.responses else self.default

    async def generate(self, history, system_prompt, tools=None):
        self.calls.append({"history": list(history), "system_prompt": system_prompt, "tools": tools})
        number = len(self.calls)
        if number in self.fail_on:
            raise GenerationError(f"generation {number} failed")

        if tools is not None:
            for i, (name, tool_input) in enumerate(self.tool_calls):
                await tools.execute(name, tool_input, f"toolu_{number}_{i}")
        return GenerationResult(text=self._next_text(), input_tokens=10, output_tokens=20, stop_reason="end_turn")

    async def stream(self, history, system_prompt):
        self.calls.append({"history": list(history), "system_prompt": system_prompt, "tools": None})
        number = len(self.calls)
        if number in self.fail_on:
            raise GenerationError(f"generation {number} failed")

        text = self._next_text()
        for i in range(0, len(text), 32):
            yield text[i:i + 32]


@pytest.fixture
def workspace(tmp_path):
    """Workspace rooted in a temp directory, using the bundled scaffolds"""
    return WorkspaceManager(base_path=str(tmp_path / "projects"))


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def generator():
    return FakeGenerator(responses=[PLAN_TEXT])


@pytest.fixture
def plan_text():
    return PLAN_TEXT


@pytest.fixture
def make_generator():
    """Factory for generators with custom scripts"""
    return FakeGenerator
