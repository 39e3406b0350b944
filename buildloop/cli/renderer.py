"""
Event Renderer - prints session workflow events to the terminal
"""

from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from buildloop.modules.orchestrator.event_bus import EventType, SessionEvent


class EventRenderer:
    """Renders a workflow's event stream with rich formatting"""

    def __init__(self, console: Console, show_chunks: bool = True):
        self.console = console
        self.show_chunks = show_chunks
        self._streaming_buffer = ""

    def render(self, event: SessionEvent):
        """Dispatch one event to its renderer"""
        data = event.data
        if event.type == EventType.CHUNK:
            self.render_streaming_content(data.get("content", ""))
            return

        self.flush_streaming_buffer()
        if event.type == EventType.STATUS:
            self.render_status(data.get("message", ""))
        elif event.type == EventType.CHANGES:
            self.render_files_changed(data.get("files", []))
        elif event.type == EventType.DIAGNOSTICS:
            self.render_diagnostics(data.get("errors", []), data.get("error_type", "build"))
        elif event.type == EventType.ERROR:
            self.render_error(data.get("message", "Unknown error"), data.get("code"))
        elif event.type == EventType.COMPLETE:
            self.render_completion(data)

    def render_streaming_content(self, content: str):
        if not self.show_chunks:
            return
        self._streaming_buffer += content
        # Print whole lines as they arrive
        if "\n" in self._streaming_buffer:
            lines, self._streaming_buffer = self._streaming_buffer.rsplit("\n", 1)
            self.console.print(lines, markup=False, highlight=False)

    def flush_streaming_buffer(self):
        if self._streaming_buffer:
            self.console.print(self._streaming_buffer, markup=False, highlight=False)
            self._streaming_buffer = ""

    def render_status(self, message: str):
        self.console.print(f"[dim cyan]● {message}[/dim cyan]")

    def render_files_changed(self, files: List[str]):
        if not files:
            return
        self.console.print("\n[bold green]📁 Files Changed:[/bold green]")
        for f in files:
            self.console.print(f"  [green]✓[/green] {f}")

    def render_diagnostics(self, errors: List[str], error_type: str):
        table = Table(title=f"Diagnostics ({error_type})", show_header=True, header_style="bold yellow")
        table.add_column("#", style="dim", width=4)
        table.add_column("Error", style="white")
        for i, error in enumerate(errors, 1):
            table.add_row(str(i), error)
        self.console.print(table)

    def render_error(self, message: str, code: Optional[str] = None):
        self.console.print(Panel(
            f"[bold red]{message}[/bold red]" + (f"\n\n[dim]{code}[/dim]" if code else ""),
            title="[red]Error[/red]",
            border_style="red"
        ))

    def render_completion(self, data: Dict[str, Any]):
        if data.get("plan"):
            self.console.print(Panel(Markdown(data["plan"]), title="📋 Plan", border_style="cyan"))
        if data.get("message"):
            self.console.print(f"[green]✅ {data['message']}[/green]")

        preview = data.get("preview") or {}
        if preview.get("port"):
            self.console.print(
                f"[blue]🌐 Preview {preview.get('status')}: http://localhost:{preview['port']}[/blue]"
            )
        elif preview.get("error"):
            self.console.print(f"[yellow]⚠️  Preview not started: {preview['error']}[/yellow]")
