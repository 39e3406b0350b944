"""
Build output error detection.

Build logs from tsc, vite, esbuild and next are split into error blocks by a
two-state line automaton:

    OUTSIDE --error start--> INSIDE
    INSIDE  --error start--> INSIDE       (previous block flushed)
    INSIDE  --blank line, block >= min--> OUTSIDE (flush)
    INSIDE  --new report section--> OUTSIDE (flush, heading dropped)
    INSIDE  --block > max lines--> OUTSIDE (flush)

Any block still open at end of input is flushed.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Pattern

from buildloop.core.config import settings


class ParserState(str, Enum):
    OUTSIDE = "outside"
    INSIDE = "inside"


@dataclass(frozen=True)
class ErrorSignature:
    """A line pattern that opens an error block"""
    name: str
    pattern: Pattern
    tool: str


ERROR_SIGNATURES: List[ErrorSignature] = [
    ErrorSignature("typescript", re.compile(r'error TS\d+:', re.IGNORECASE), "tsc"),
    ErrorSignature("bundler", re.compile(r'\[vite\].*error', re.IGNORECASE), "vite"),
    ErrorSignature("generic", re.compile(r'^\s*error\s+', re.IGNORECASE), "any"),
    ErrorSignature("boxed", re.compile(r'✘ \[ERROR\]', re.IGNORECASE), "esbuild"),
]

NEW_SECTION_PATTERN = re.compile(r'^(Pages:|Routes:|Warning:)', re.IGNORECASE)


def is_error_start(line: str) -> bool:
    return any(sig.pattern.search(line) for sig in ERROR_SIGNATURES)


def is_new_section(line: str) -> bool:
    return bool(NEW_SECTION_PATTERN.match(line))


def is_blank(line: str) -> bool:
    return line.strip() == ''


class BuildErrorParser:
    """
    Splits raw build output into error blocks.

    Predicates are plain callables so additional tool signatures can be
    registered without touching the transition logic.
    """

    def __init__(
        self,
        max_block_lines: int = None,
        min_block_lines: int = None,
        error_start: Callable[[str], bool] = is_error_start,
        new_section: Callable[[str], bool] = is_new_section,
    ):
        self.max_block_lines = max_block_lines or settings.BUILD_BLOCK_MAX_LINES
        self.min_block_lines = min_block_lines or settings.BUILD_BLOCK_MIN_LINES
        self.error_start = error_start
        self.new_section = new_section

    def parse(self, output: str) -> List[str]:
        blocks: List[str] = []
        current: List[str] = []
        state = ParserState.OUTSIDE

        def flush() -> None:
            text = '\n'.join(current).strip()
            if text:
                blocks.append(text)
            current.clear()

        for line in output.splitlines():
            if self.error_start(line):
                if state == ParserState.INSIDE:
                    flush()
                current.append(line)
                state = ParserState.INSIDE
                continue

            if state == ParserState.OUTSIDE:
                continue

            if self.new_section(line):
                flush()
                state = ParserState.OUTSIDE
                continue

            if is_blank(line) and len(current) >= self.min_block_lines:
                flush()
                state = ParserState.OUTSIDE
                continue

            current.append(line)
            if len(current) > self.max_block_lines:
                flush()
                state = ParserState.OUTSIDE

        if state == ParserState.INSIDE:
            flush()

        return blocks


def parse_build_errors(output: str) -> List[str]:
    """Parse build output with the default signatures"""
    return BuildErrorParser().parse(output)
