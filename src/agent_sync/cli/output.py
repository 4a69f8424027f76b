"""
Rich Terminal Output for the agent-sync CLI

Tables for sessions and processor results, panels for cursor state,
styled one-line messages. Uses the Rich library for all formatting.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..state.session_store import ActivityStatus, SessionMetadata
from ..sync.orchestrator import SessionSyncResult


def format_ms(ms: Optional[int]) -> str:
    """Unix ms as a local-independent UTC timestamp, '-' when unset."""
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class OutputManager:
    """
    Manages rich terminal output for the agent-sync CLI.

    Provides consistent styling for:
    - Status messages (success, error, warning, info)
    - Session and processor result tables
    - Key/value panels for cursor state
    """

    # Color scheme
    COLORS = {
        "primary": "blue",
        "success": "green",
        "warning": "yellow",
        "error": "red",
        "muted": "dim",
        "highlight": "cyan",
    }

    # Activity status styles
    ACTIVITY_STYLES = {
        ActivityStatus.ACTIVE: "green",
        ActivityStatus.INACTIVE: "yellow",
        ActivityStatus.ENDED: "dim",
        ActivityStatus.FINAL: "blue",
    }

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    # ==================== Basic Output ====================

    def print(self, message: str = "", style: Optional[str] = None) -> None:
        self.console.print(message, style=style)

    def print_header(self, title: str, subtitle: Optional[str] = None) -> None:
        self.console.print()
        self.console.print(f"[bold blue]{title}[/bold blue]")
        if subtitle:
            self.console.print(f"[dim]{subtitle}[/dim]")
        self.console.print()

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]v[/green] {escape(message)}")

    def print_error(self, message: str) -> None:
        self.console.print(f"[red]x[/red] {escape(message)}")

    def print_warning(self, message: str) -> None:
        self.console.print(f"[yellow]![/yellow] {escape(message)}")

    def print_info(self, message: str) -> None:
        self.console.print(f"[blue]i[/blue] {escape(message)}")

    # ==================== Panels ====================

    def key_value_panel(self, values: Dict[str, Any], title: str, border_style: str = "cyan") -> None:
        """
        Display key/value pairs in a panel.

        Args:
            values: Ordered mapping to display
            title: Panel title
            border_style: Border color style
        """
        lines = []
        for key, value in values.items():
            if isinstance(value, bool):
                value_str = "[green]Yes[/green]" if value else "[red]No[/red]"
            elif value is None or value == "":
                value_str = "[dim]-[/dim]"
            else:
                value_str = escape(str(value))
            lines.append(f"[bold]{key}:[/bold] {value_str}")
        self.console.print(Panel("\n".join(lines), title=title, border_style=border_style))

    def config_display(self, config: Dict[str, Any]) -> None:
        table = Table(title="Configuration")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="white")
        for key, value in config.items():
            table.add_row(key, escape(str(value)))
        self.console.print(table)

    # ==================== Tables ====================

    def sessions_table(self, rows: List[Dict[str, Any]]) -> None:
        """
        Display known sessions.

        Args:
            rows: Dicts with "session", "activity" and "pending" keys
        """
        table = Table(title="Sessions")
        table.add_column("Session ID", style="cyan", no_wrap=True)
        table.add_column("Agent")
        table.add_column("Branch")
        table.add_column("Started")
        table.add_column("Correlation")
        table.add_column("Activity")
        table.add_column("Pending", justify="right")

        for row in rows:
            session: SessionMetadata = row["session"]
            activity: ActivityStatus = row["activity"]
            style = self.ACTIVITY_STYLES.get(activity, "white")
            table.add_row(
                session.session_id,
                session.agent_name,
                session.git_branch or "-",
                format_ms(session.start_time),
                session.correlation.status.value,
                f"[{style}]{activity.value}[/{style}]",
                str(row.get("pending", 0)),
            )
        self.console.print(table)

    def sync_result(self, session_id: str, result: SessionSyncResult) -> None:
        """Display the outcome of one orchestrated sync."""
        if result.processor_results:
            table = Table(title=f"Sync {session_id}")
            table.add_column("Processor", style="cyan")
            table.add_column("Result")
            table.add_column("Message")
            for name, processor_result in result.processor_results.items():
                outcome = "[green]ok[/green]" if processor_result.success else "[red]failed[/red]"
                table.add_row(name, outcome, escape(processor_result.message))
            self.console.print(table)

        if result.skipped:
            self.print_warning(result.message)
        elif result.success:
            self.print_success(result.message)
        else:
            self.print_error(result.message)
