"""System prompts for each workflow phase."""

from typing import List

from buildloop.schemas.session import Framework


FRAMEWORK_NOTES = {
    Framework.REACT: "React + Vite + TypeScript. Pages live in src/pages, components in src/components.",
    Framework.NEXTJS: "Next.js App Router + TypeScript. Routes live in src/app/, components in src/components/.",
}

PLANNING_PROMPT = """You are a UI planning assistant. Do not write code.
Answer with a plan using exactly these sections:

## Components to Create
- ComponentName: purpose

## Files to Modify
- path/to/file.tsx: change

## Implementation Steps
1. First step
2. Second step
"""

FAST_MODE_PROMPT = """You are a rapid code editor. Make the requested change immediately using the
workspace tools. Read a file before editing it and keep unrelated code intact."""

ERROR_FIX_PROMPT = """You are a code debugging specialist. Fix the reported errors using the
workspace tools. Change only what is needed; use run_command to install missing packages."""

VERIFICATION_PROMPT = """You are a code verification assistant. Review the changed files against the
plan and report problems concisely. Reply "All checks passed" if there are none."""


def planning_prompt(framework: Framework) -> str:
    return f"{PLANNING_PROMPT}\nStack: {FRAMEWORK_NOTES[Framework(framework)]}"


def step_prompt(step: str, plan_summary: str, framework: Framework) -> str:
    return (
        "You are an expert UI coding assistant. Implement only the current step, "
        "using the workspace tools to write files.\n"
        f"Stack: {FRAMEWORK_NOTES[Framework(framework)]}\n\n"
        f"PLAN:\n{plan_summary}\n\nCURRENT STEP: {step}"
    )


def fast_mode_prompt(framework: Framework) -> str:
    return f"{FAST_MODE_PROMPT}\nStack: {FRAMEWORK_NOTES[Framework(framework)]}"


def verification_prompt(framework: Framework, plan_summary: str, changed_files: List[str]) -> str:
    return (
        f"{VERIFICATION_PROMPT}\nStack: {FRAMEWORK_NOTES[Framework(framework)]}\n\n"
        f"PLAN:\n{plan_summary}\n\nCHANGED FILES: {', '.join(changed_files) or '(none)'}"
    )


def repair_request(context: str, errors: List[str], error_type: str) -> str:
    return (
        f"CONTEXT:\n{context}\n\n"
        f"ERRORS:\n" + "\n\n".join(errors) + "\n\n"
        f"Task: Fix these {error_type} errors. Use run_command if you need to install dependencies."
    )
