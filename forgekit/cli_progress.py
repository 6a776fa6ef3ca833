"""Step-indexed progress output for the deploy command."""
from rich.console import Console
from rich.markup import escape

from forgekit.core.pipeline import EventKind, StepEvent


class ProgressReporter:
    """Render pipeline events as ``[i/n]`` progress lines.

    Subscribe an instance to a :class:`DeploymentPipeline`; it is called once
    per event.
    """

    def __init__(self, console: Console, verbose: bool = False):
        self.console = console
        self.verbose = verbose
        self.failure_shown = False

    def __call__(self, event: StepEvent) -> None:
        handler = getattr(self, f"_on_{event.kind.value}")
        handler(event)

    @staticmethod
    def _prefix(event: StepEvent) -> str:
        return f"[{event.index}/{event.total}]"

    def _on_started(self, event: StepEvent) -> None:
        step = event.step
        self.console.print(f"{escape(self._prefix(event))} {step.icon} {step.message}...")
        if self.verbose:
            self.console.print(f"   [dim]{step.details}[/dim]")

    def _on_updated(self, event: StepEvent) -> None:
        if self.verbose:
            self.console.print(f"   {escape(event.message)}")

    def _on_completed(self, event: StepEvent) -> None:
        message = event.message or event.step.message
        self.console.print(f"{escape(self._prefix(event))} [green]✅ {escape(message)} completed[/green]")

    def _on_failed(self, event: StepEvent) -> None:
        self.failure_shown = True
        self.console.print(
            f"{escape(self._prefix(event))} [red]❌ {event.step.message} failed:[/red] {escape(event.message or '')}"
        )

    def _on_log(self, event: StepEvent) -> None:
        message = escape(event.message or "")
        if event.level == "warning":
            self.console.print(f"   [yellow]⚠️  {message}[/yellow]")
        elif event.level == "info":
            self.console.print(f"   ℹ️  {message}")
        elif self.verbose:
            self.console.print(f"   [dim]🔍 {message}[/dim]")

    def _on_finished(self, event: StepEvent) -> None:
        self.console.print(
            f"\n[bold green]🎉 Deployment completed successfully in {event.elapsed:.1f}s[/bold green]"
        )
