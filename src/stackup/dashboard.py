"""TUI dashboard for a stackup run."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker, WorkerState

from .executor import LOCALHOST, Executor, HostStatus, RunOutcome
from .hosts import Host

if TYPE_CHECKING:
    from .runner import PreparedRun


STATUS_ICONS = {
    HostStatus.PENDING: ("·", "dim"),
    HostStatus.RUNNING: ("▶", "yellow"),
    HostStatus.SUCCESS: ("✓", "green"),
    HostStatus.FAILED: ("✗", "red"),
    HostStatus.SKIPPED: ("-", "dim"),
}

FINISHED = (HostStatus.SUCCESS, HostStatus.FAILED, HostStatus.SKIPPED)


class HostPanel(Static):
    """Output and status of a single host."""

    status: reactive[HostStatus] = reactive(HostStatus.PENDING)
    detail: reactive[str] = reactive("")

    def __init__(self, host: Host, **kwargs) -> None:
        super().__init__(**kwargs)
        self.host = host
        self.header = Label(self._get_header())
        self.log_view = RichLog(highlight=True, markup=True, wrap=True, auto_scroll=True)

    def compose(self) -> ComposeResult:
        yield self.header
        yield self.log_view

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        if self.host is LOCALHOST:
            target = "local"
        else:
            user = f"{self.host.user}@" if self.host.user else ""
            target = f"{user}{self.host.address}:{self.host.port}"
        header = f"[{color}]{icon}[/] [{color}][bold]{self.host.name}[/bold][/] [{color}]{target}[/]"
        if self.detail:
            detail = self.detail.replace("[", r"\[")
            header += f" [dim]{detail}[/dim]"
        return header

    def watch_status(self, status: HostStatus) -> None:
        if not self.is_mounted:
            return
        self.header.update(self._get_header())

    def watch_detail(self, detail: str) -> None:
        if not self.is_mounted:
            return
        self.header.update(self._get_header())

    def append_output(self, line: str, is_stderr: bool = False) -> None:
        """Append a line of output to this panel."""
        if line.startswith("ERROR:"):
            self.log_view.write(f"[bold red]{line}[/bold red]")
        elif is_stderr:
            self.log_view.write(f"[red]{line}[/red]")
        else:
            self.log_view.write(line)


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        failed = f" | [red]{self.failed} failed[/red]" if self.failed else ""
        return f"Progress: {self.completed}/{self.total} steps{failed} | {status} | Press 'q' to quit"


@dataclass
class HostOutput(Message):
    host_name: str
    line: str
    is_stderr: bool


@dataclass
class HostStatusChange(Message):
    host_name: str
    status: HostStatus
    detail: str = ""


def count_steps(prepared: "PreparedRun") -> int:
    """How many host-level steps (uploads and commands) the plan will take."""
    total = 0
    for command in prepared.plan:
        remote = 1 if command.once else len(prepared.hosts)
        total += remote * len(command.upload)
        if command.local:
            total += 1
        elif command.run:
            total += remote
    return total


class Dashboard(App):
    """One panel per host, fed by the executor's callbacks."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    HostPanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    HostPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    HostPanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(self, prepared: "PreparedRun", **kwargs) -> None:
        super().__init__(**kwargs)
        self.prepared = prepared
        self.panels: dict[str, HostPanel] = {}
        self.executor: Executor | None = None
        self.outcome: RunOutcome | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        hosts = list(self.prepared.hosts)
        if any(cmd.local for cmd in self.prepared.plan):
            hosts.append(LOCALHOST)
        for host in hosts:
            panel = HostPanel(host)
            self.panels[host.name] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        from .runner import build_executor

        self.title = f"stackup: {self.prepared.network.name}"
        self.sub_title = " ".join(cmd.name for cmd in self.prepared.plan)
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = count_steps(self.prepared)

        self.executor = build_executor(
            self.prepared,
            on_output=self._on_output,
            on_status=self._on_status,
        )
        self._worker = self.run_worker(self._run_execution(), exclusive=True, thread=True)

    async def _run_execution(self) -> None:
        if self.executor:
            self.outcome = await self.executor.run_all()

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        if event.worker == self._worker and event.state in (WorkerState.SUCCESS, WorkerState.ERROR):
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.running = False

    # Executor callbacks run in the worker thread; hand them to the app.
    def _on_output(self, host_name: str, line: str, is_stderr: bool) -> None:
        self.post_message(HostOutput(host_name, line, is_stderr))

    def _on_status(self, host_name: str, status: HostStatus) -> None:
        state = self.executor.states.get(host_name) if self.executor else None
        self.post_message(HostStatusChange(host_name, status, state.summary if state else ""))

    def on_host_output(self, message: HostOutput) -> None:
        panel = self.panels.get(message.host_name)
        if panel is not None:
            panel.append_output(message.line, message.is_stderr)

    def on_host_status_change(self, message: HostStatusChange) -> None:
        panel = self.panels.get(message.host_name)
        if panel is not None:
            panel.detail = message.detail
            panel.status = message.status

        if message.status in FINISHED:
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.completed += 1
            if message.status == HostStatus.FAILED:
                status_bar.failed += 1

    async def action_quit(self) -> None:
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
