#!/usr/bin/env python3
"""
buildloop CLI - Main Entry Point

Usage:
    buildloop plan SESSION "create a todo app"     # Plan, confirm, then code
    buildloop fast SESSION "add a dark mode toggle" # Direct change, no plan
    buildloop repair SESSION                        # Build, diagnose, fix
    buildloop chat SESSION                          # Interactive session

Sessions live in memory for the lifetime of the process; the project files
under PROJECTS_PATH persist between runs.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.prompt import Confirm

from buildloop import __version__
from buildloop.cli.renderer import EventRenderer
from buildloop.core.exceptions import BuildLoopError
from buildloop.modules.orchestrator.event_bus import EventChannel, EventType
from buildloop.modules.orchestrator.session_orchestrator import SessionOrchestrator
from buildloop.schemas.session import Framework, SessionPhase


HISTORY_FILE = Path.home() / ".buildloop" / "history"


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="buildloop",
        description="buildloop - plan, generate, preview and repair web projects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  buildloop plan demo "Create a todo app"          Plan and build a project
  buildloop plan demo "Create a blog" -f react     Use the React scaffold
  buildloop fast demo "Make the header blue"       Apply a change directly
  buildloop repair demo                            Fix build/runtime errors
  buildloop chat demo --serve                      Interactive, keep preview up

Chat Commands:
  /approve        Approve the pending plan and generate code
  /replan <msg>   Discard the pending plan and plan again
  /fast <msg>     Apply a change without planning
  /repair         Run the repair loop
  /logs           Show captured runtime errors
  /preview        Show preview server status
  /quit           Exit
        """
    )
    parser.add_argument("--version", action="version", version=f"buildloop {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Commands")

    for name, help_text in (
        ("plan", "Generate a plan, confirm it, then implement it"),
        ("fast", "Apply a change directly, without planning"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("session", help="Session id (also the project directory name)")
        sub.add_argument("message", help="What to build or change")

    sub = subparsers.add_parser("repair", help="Build, collect diagnostics and repair once")
    sub.add_argument("session", help="Session id")

    sub = subparsers.add_parser("chat", help="Interactive session")
    sub.add_argument("session", help="Session id")

    for sub in subparsers.choices.values():
        sub.add_argument(
            "-f", "--framework",
            choices=[f.value for f in Framework],
            default=None,
            help="Project framework (default: DEFAULT_FRAMEWORK setting)"
        )
        sub.add_argument(
            "-y", "--yes",
            action="store_true",
            help="Approve plans without asking"
        )
        sub.add_argument(
            "--serve",
            action="store_true",
            help="Keep the preview server running until Ctrl+C"
        )
        sub.add_argument(
            "--quiet",
            action="store_true",
            help="Hide streamed model output"
        )

    return parser


async def consume(channel: EventChannel, renderer: EventRenderer) -> bool:
    """Render a channel until its terminal event. Returns True on complete."""
    async for event in channel:
        renderer.render(event)
    renderer.flush_streaming_buffer()
    terminal = channel.terminal_event
    return terminal is not None and terminal.type == EventType.COMPLETE


async def run_plan(orchestrator: SessionOrchestrator, renderer: EventRenderer, console: Console,
                   session_id: str, message: str, framework: Framework, auto_approve: bool) -> bool:
    if not await consume(orchestrator.plan_stream(session_id, message, framework), renderer):
        return False

    if not auto_approve and not Confirm.ask("Approve this plan?", default=True, console=console):
        console.print("[dim]Plan kept for later. Run /approve in chat to continue.[/dim]")
        return True
    return await consume(orchestrator.approve_and_code_stream(session_id), renderer)


async def dispatch_chat_input(orchestrator: SessionOrchestrator, renderer: EventRenderer, console: Console,
                              session_id: str, user_input: str, framework: Framework,
                              auto_approve: bool) -> bool:
    """Handle one chat line. Returns False when the user asks to leave."""
    cmd, _, rest = user_input.partition(" ")
    cmd = cmd.lower()
    rest = rest.strip()

    if cmd in ("/quit", "/exit", "/q"):
        console.print("\n[dim]Goodbye![/dim]")
        return False
    elif cmd == "/help":
        console.print(create_parser().epilog)
    elif cmd == "/approve":
        await consume(orchestrator.approve_and_code_stream(session_id), renderer)
    elif cmd == "/fast":
        if not rest:
            console.print("[yellow]Usage: /fast <message>[/yellow]")
            return True
        await consume(orchestrator.fast_mode(session_id, rest, framework), renderer)
    elif cmd == "/repair":
        await consume(orchestrator.repair(session_id, framework), renderer)
    elif cmd == "/logs":
        logs = orchestrator.get_runtime_logs(session_id)
        if not logs:
            console.print("[dim]No runtime errors captured[/dim]")
        for line in logs:
            console.print(line, markup=False)
    elif cmd == "/preview":
        console.print(orchestrator.preview_status(session_id))
    elif cmd == "/replan":
        if not rest:
            console.print("[yellow]Usage: /replan <message>[/yellow]")
            return True
        await run_plan(orchestrator, renderer, console, session_id, rest, framework, auto_approve)
    elif await orchestrator.store.get_phase(session_id) == SessionPhase.AWAITING_APPROVAL:
        # Free text must not replace the pending plan
        console.print(
            "[yellow]A plan is waiting for approval. Use /approve to build it "
            "or /replan <message> to discard it.[/yellow]"
        )
    else:
        await run_plan(orchestrator, renderer, console, session_id, user_input, framework, auto_approve)
    return True


async def run_chat(orchestrator: SessionOrchestrator, renderer: EventRenderer, console: Console,
                   session_id: str, framework: Framework, auto_approve: bool):
    """Interactive REPL over one session"""
    console.print(f"[bold #7C3AED]buildloop[/bold #7C3AED] [dim]v{__version__} · session {session_id}[/dim]")
    console.print("[dim]Type a request to plan it, /help for commands.[/dim]\n")

    HISTORY_FILE.parent.mkdir(parents=True, exist_ok=True)
    prompt = PromptSession(history=FileHistory(str(HISTORY_FILE)))

    while True:
        try:
            user_input = (await prompt.prompt_async(HTML("<ansipurple><b>></b></ansipurple> "))).strip()
        except KeyboardInterrupt:
            console.print("\n[dim]Cancelled[/dim]")
            continue
        except EOFError:
            break

        if not user_input:
            continue
        if not await dispatch_chat_input(orchestrator, renderer, console, session_id,
                                         user_input, framework, auto_approve):
            break
        console.print()


async def run(args: argparse.Namespace, console: Console) -> int:
    framework = Framework(args.framework) if args.framework else None
    renderer = EventRenderer(console, show_chunks=not args.quiet)
    orchestrator = SessionOrchestrator()
    await orchestrator.start()

    try:
        if framework is None:
            framework = await orchestrator.store.get_framework(args.session)

        if args.command == "plan":
            ok = await run_plan(orchestrator, renderer, console, args.session, args.message, framework, args.yes)
        elif args.command == "fast":
            ok = await consume(orchestrator.fast_mode(args.session, args.message, framework), renderer)
        elif args.command == "repair":
            ok = await consume(orchestrator.repair(args.session, framework), renderer)
        else:
            await run_chat(orchestrator, renderer, console, args.session, framework, args.yes)
            ok = True

        if args.serve and args.command != "chat":
            console.print("[dim]Preview running. Press Ctrl+C to stop.[/dim]")
            await asyncio.Event().wait()
        return 0 if ok else 1
    finally:
        console.print("[dim]Shutting down...[/dim]")
        await orchestrator.shutdown()


def main():
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args()
    console = Console()

    try:
        sys.exit(asyncio.run(run(args, console)))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted[/dim]")
        sys.exit(130)
    except BuildLoopError as e:
        console.print(f"\n[red]✗ {e.message}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
