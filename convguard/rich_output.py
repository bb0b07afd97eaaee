"""
Rich terminal output for convguard.

Renders health metrics, sweep summaries, repair reports, checkpoint listings
and recovery signals with a small symbol vocabulary (no emoji).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import IO, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .health import HealthMetrics, SweepSummary
from .recovery import RecoverySignal
from .repair import RepairReport

# ============================================================================
# Visual Language
# ============================================================================


class Symbol(str, Enum):
    """Semantic symbols for convguard output."""

    SUCCESS = "✓"
    ERROR = "✗"
    WARNING = "⚠"
    REPAIR = "▶"
    CHECKPOINT = "◇"
    BRANCH = "├"
    GAUGE = "≡"


class Color(str, Enum):
    """Semantic colors for convguard output."""

    SUCCESS = "green"
    ERROR = "red"
    WARNING = "yellow"
    REPAIR = "cyan"
    CHECKPOINT = "blue"
    BRANCH = "magenta"
    GAUGE = "white"
    DIM = "dim"


SYMBOL_COLORS: dict[Symbol, Color] = {
    Symbol.SUCCESS: Color.SUCCESS,
    Symbol.ERROR: Color.ERROR,
    Symbol.WARNING: Color.WARNING,
    Symbol.REPAIR: Color.REPAIR,
    Symbol.CHECKPOINT: Color.CHECKPOINT,
    Symbol.BRANCH: Color.BRANCH,
    Symbol.GAUGE: Color.GAUGE,
}


@dataclass
class OutputConfig:
    """Configuration for Rich output."""

    colors: bool = True
    width: int | None = None  # Auto-detect if None

    @classmethod
    def from_env(cls) -> OutputConfig:
        """Load configuration from NO_COLOR and CONVGUARD_COLORS."""
        no_color = os.environ.get("NO_COLOR") is not None
        colors_env = os.environ.get("CONVGUARD_COLORS", "").lower()
        return cls(colors=not no_color and colors_env != "false")


def score_color(score: float) -> Color:
    """Green when healthy, yellow when degraded, red when broken."""
    if score >= 80:
        return Color.SUCCESS
    if score >= 50:
        return Color.WARNING
    return Color.ERROR


def create_score_gauge(score: float, width: int = 10) -> Text:
    """
    Create a health score gauge.

    Example output:
        ≡ Health: ████████░░ 80/100
    """
    fraction = max(0.0, min(score / 100, 1.0))
    filled = int(width * fraction)

    text = Text()
    text.append(f"{Symbol.GAUGE.value} ", style=Color.GAUGE.value)
    text.append("Health: ", style="bold")
    text.append("█" * filled, style=score_color(score).value)
    text.append("░" * (width - filled), style=Color.DIM.value)
    text.append(f" {score:g}/100")
    return text


class GuardConsole:
    """Rich-formatted console for convguard reports."""

    def __init__(self, config: OutputConfig | None = None, file: IO[str] | None = None):
        """Initialize console with configuration."""
        self.config = config or OutputConfig.from_env()
        self.console = Console(
            file=file,
            no_color=not self.config.colors,
            width=self.config.width,
            highlight=False,
        )

    def _line(self, symbol: Symbol, message: str) -> Text:
        text = Text()
        text.append(f"{symbol.value} ", style=SYMBOL_COLORS[symbol].value)
        text.append(message)
        return text

    def print_health_metrics(self, metrics: HealthMetrics) -> None:
        """Render one conversation's health metrics."""
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("field", style="bold")
        table.add_column("value")
        table.add_row("Turns", str(metrics.turn_count))
        table.add_row("Tool calls", str(metrics.tool_call_count))
        table.add_row("Orphaned tool turns", str(metrics.orphaned_turns))
        table.add_row("Lifecycle", metrics.lifecycle.value)
        table.add_row("Integrity issues", "yes" if metrics.has_integrity_issues else "no")
        table.add_row("Checkpoints", str(len(metrics.available_checkpoints)))

        self.console.print(
            Panel(
                table,
                title=f"Conversation {metrics.conversation_id}",
                border_style=score_color(metrics.health_score).value,
                padding=(0, 1),
            )
        )
        self.console.print(create_score_gauge(metrics.health_score))

    def print_sweep_summary(self, summary: SweepSummary) -> None:
        """Render the counters of a health sweep."""
        table = Table(title="Health sweep", show_lines=False)
        table.add_column("Metric")
        table.add_column("Count", justify="right")
        for key in (
            "checked",
            "healthy",
            "repaired",
            "branched",
            "archived",
            "failed",
            "orphaned_turns_cleaned",
            "checkpoints_deleted",
            "recovery_contexts_deleted",
        ):
            table.add_row(key.replace("_", " "), str(getattr(summary, key)))
        self.console.print(table)

        if summary.alert:
            self.console.print(
                self._line(
                    Symbol.WARNING,
                    f"Health {summary.health_percentage:.2f}% is below "
                    f"{summary.alert_threshold:.2f}%",
                )
            )
        else:
            self.console.print(
                self._line(Symbol.SUCCESS, f"Health {summary.health_percentage:.2f}%")
            )

    def print_repair_report(self, report: RepairReport) -> None:
        """Render what a repair pass changed."""
        if not report.changed and not report.incomplete_exchanges:
            self.console.print(
                self._line(Symbol.SUCCESS, f"{report.conversation_id}: already valid")
            )
            return

        self.console.print(
            self._line(
                Symbol.REPAIR,
                f"{report.conversation_id}: removed {report.removed_total} turns "
                f"({len(report.removed_malformed)} malformed, "
                f"{len(report.removed_orphans)} orphaned, {len(report.truncated)} truncated)",
            )
        )
        if report.incomplete_exchanges:
            self.console.print(
                self._line(
                    Symbol.WARNING,
                    f"{len(report.incomplete_exchanges)} incomplete tool exchange(s) flagged",
                )
            )

    def print_checkpoints(self, conversation_id: str, summaries: list[dict[str, Any]]) -> None:
        """Render checkpoint summaries, newest first."""
        if not summaries:
            self.console.print(
                self._line(Symbol.CHECKPOINT, f"{conversation_id}: no checkpoints")
            )
            return

        table = Table(title=f"Checkpoints for {conversation_id}")
        table.add_column("Name")
        table.add_column("Created")
        table.add_column("Turns", justify="right")
        for summary in summaries:
            table.add_row(
                summary["name"], f"{summary['created_at']:.0f}", str(summary["turn_count"])
            )
        self.console.print(table)

    def print_signal(self, signal: RecoverySignal) -> None:
        """Render a recovery signal."""
        symbol = Symbol.WARNING if signal.recoverable else Symbol.ERROR
        text = self._line(symbol, signal.user_message)
        text.append(f"  [{signal.action.value}]", style=Color.DIM.value)
        self.console.print(text)
        if signal.new_conversation:
            self.console.print(
                self._line(Symbol.BRANCH, f"continuing on {signal.new_conversation}")
            )

    def print_error_panel(
        self, error_type: str, message: str, suggestion: str | None = None
    ) -> None:
        """Print an error panel."""
        text = Text()
        text.append(f"{Symbol.ERROR.value} ", style=f"bold {Color.ERROR.value}")
        text.append(f"{error_type}\n", style=f"bold {Color.ERROR.value}")
        text.append(message)
        if suggestion:
            text.append(f"\n\nSuggestion: {suggestion}", style=Color.SUCCESS.value)
        self.console.print(Panel(text, border_style=Color.ERROR.value, padding=(0, 1)))


__all__ = [
    "Color",
    "GuardConsole",
    "OutputConfig",
    "SYMBOL_COLORS",
    "Symbol",
    "create_score_gauge",
    "score_color",
]
