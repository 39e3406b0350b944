"""
Plan text extraction.

Plans are markdown with fixed section headings:

    ## Components to Create
    - Header: top navigation
    ## Files to Modify
    - app/page.tsx: render the list
    ## Implementation Steps
    1. Create the Header component
"""

import re
from typing import Iterable, List

from buildloop.schemas.session import SessionPlan


COMPONENTS_HEADING = "Components to Create"
FILES_HEADING = "Files to Modify"
STEPS_HEADING = "Implementation Steps"

_BULLET = re.compile(r'^-\s*')
_NUMBERED = re.compile(r'^\d+\.\s*')
_MARKUP = re.compile(r'[*`]')

# writeFile("path") / editFile('path') mentions in free text
_WRITE_MENTION = re.compile(r'writeFile\s*\(\s*["\']([^"\']+)["\']')
_EDIT_MENTION = re.compile(r'editFile\s*\(\s*["\']([^"\']+)["\']')


def extract_section(plan_text: str, heading: str) -> str:
    match = re.search(rf'## {re.escape(heading)}\n([\s\S]*?)(?=\n## |$)', plan_text)
    return match.group(1) if match else ""


def _bullets(section: str) -> List[str]:
    items = []
    for line in section.split('\n'):
        if not line.startswith('-'):
            continue
        item = _MARKUP.sub('', _BULLET.sub('', line, count=1)).split(':')[0].strip()
        if item:
            items.append(item)
    return items


def extract_components(plan_text: str) -> List[str]:
    return _bullets(extract_section(plan_text, COMPONENTS_HEADING))


def extract_files(plan_text: str) -> List[str]:
    return _bullets(extract_section(plan_text, FILES_HEADING))


def extract_steps(plan_text: str) -> List[str]:
    steps = []
    for line in extract_section(plan_text, STEPS_HEADING).split('\n'):
        if _NUMBERED.match(line):
            step = _NUMBERED.sub('', line, count=1).strip()
            if step:
                steps.append(step)
    return steps


def build_plan(request: str, plan_text: str) -> SessionPlan:
    """Parse plan text into a pending SessionPlan"""
    steps = extract_steps(plan_text) or [request]
    return SessionPlan(
        request=request,
        plan_text=plan_text,
        components=extract_components(plan_text),
        files=extract_files(plan_text),
        steps=steps,
    )


def format_plan(plan: SessionPlan) -> str:
    """Compact summary passed to step and verification prompts"""
    return (
        f"Request: {plan.request}\n"
        f"Components: {', '.join(plan.components)}\n"
        f"Files: {', '.join(plan.files)}\n"
        f"Steps: {'; '.join(plan.steps)}"
    )


def extract_file_mentions(text: str) -> Iterable[tuple]:
    """(path, action) pairs for writeFile/editFile mentions in model output"""
    for match in _WRITE_MENTION.finditer(text):
        yield match.group(1), "created"
    for match in _EDIT_MENTION.finditer(text):
        yield match.group(1), "modified"
