"""
Tests for rich terminal output.
"""

import io

import pytest

from convguard.health import HealthMetrics, SweepSummary
from convguard.recovery import RecoveryAction, RecoverySignal
from convguard.repair import RepairReport
from convguard.rich_output import (
    SYMBOL_COLORS,
    Color,
    GuardConsole,
    OutputConfig,
    Symbol,
    create_score_gauge,
    score_color,
)
from convguard.types import LifecycleState


@pytest.fixture
def buffer():
    return io.StringIO()


@pytest.fixture
def console(buffer):
    return GuardConsole(OutputConfig(colors=False, width=120), file=buffer)


class TestVisualLanguage:
    """Tests for symbols, colors and gauges."""

    def test_every_symbol_has_a_color(self):
        assert set(SYMBOL_COLORS) == set(Symbol)

    @pytest.mark.parametrize(
        "score,color",
        [
            (100, Color.SUCCESS),
            (80, Color.SUCCESS),
            (79, Color.WARNING),
            (50, Color.WARNING),
            (49, Color.ERROR),
        ],
    )
    def test_score_color(self, score, color):
        assert score_color(score) == color

    def test_gauge(self):
        assert create_score_gauge(80).plain == "≡ Health: ████████░░ 80/100"

    def test_gauge_clamped(self):
        assert create_score_gauge(-5, width=4).plain == "≡ Health: ░░░░ -5/100"


class TestOutputConfig:
    """Tests for environment-driven configuration."""

    def test_no_color(self, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "1")

        assert not OutputConfig.from_env().colors

    def test_colors_disabled_by_flag(self, monkeypatch):
        monkeypatch.delenv("NO_COLOR", raising=False)
        monkeypatch.setenv("CONVGUARD_COLORS", "false")

        assert not OutputConfig.from_env().colors

    def test_colors_by_default(self, monkeypatch):
        monkeypatch.delenv("NO_COLOR", raising=False)
        monkeypatch.delenv("CONVGUARD_COLORS", raising=False)

        assert OutputConfig.from_env().colors


class TestGuardConsole:
    """Tests for rendered reports."""

    def test_health_metrics(self, console, buffer):
        metrics = HealthMetrics(
            conversation_id="conv-1",
            turn_count=4,
            tool_call_count=1,
            orphaned_turns=1,
            lifecycle=LifecycleState.NEEDS_CLEANUP,
            last_stable_at=None,
            has_integrity_issues=True,
            health_score=75,
        )

        console.print_health_metrics(metrics)

        output = buffer.getvalue()
        assert "Conversation conv-1" in output
        assert "Orphaned tool turns" in output
        assert "needs_cleanup" in output
        assert "75/100" in output

    def test_sweep_summary_ok(self, console, buffer):
        console.print_sweep_summary(SweepSummary(checked=2, healthy=2))

        output = buffer.getvalue()
        assert "orphaned turns cleaned" in output
        assert "✓ Health 100.00%" in output

    def test_sweep_summary_alert(self, console, buffer):
        console.print_sweep_summary(SweepSummary(checked=2, healthy=1, archived=1))

        assert "⚠ Health 50.00% is below 95.00%" in buffer.getvalue()

    def test_repair_report_unchanged(self, console, buffer):
        console.print_repair_report(RepairReport(conversation_id="conv-1"))

        assert "✓ conv-1: already valid" in buffer.getvalue()

    def test_repair_report_changed(self, console, buffer):
        report = RepairReport(
            conversation_id="conv-1",
            removed_orphans=[3],
            incomplete_exchanges=[2],
            truncated=[2, 4],
            truncated_after=1,
        )

        console.print_repair_report(report)

        output = buffer.getvalue()
        assert "removed 3 turns (0 malformed, 1 orphaned, 2 truncated)" in output
        assert "1 incomplete tool exchange(s) flagged" in output

    def test_no_checkpoints(self, console, buffer):
        console.print_checkpoints("conv-1", [])

        assert "◇ conv-1: no checkpoints" in buffer.getvalue()

    def test_checkpoint_table(self, console, buffer):
        console.print_checkpoints(
            "conv-1", [{"name": "before-import", "created_at": 1700000000.0, "turn_count": 6}]
        )

        output = buffer.getvalue()
        assert "before-import" in output
        assert "1700000000" in output

    def test_signal_with_branch(self, console, buffer):
        signal = RecoverySignal(
            strategy="conversation_structure",
            action=RecoveryAction.RETRY_NEW_CONVERSATION,
            recoverable=True,
            user_message="Started a fresh conversation.",
            new_conversation="conv-2",
        )

        console.print_signal(signal)

        output = buffer.getvalue()
        assert "⚠ Started a fresh conversation.  [retry_new_conversation]" in output
        assert "├ continuing on conv-2" in output

    def test_error_panel(self, console, buffer):
        console.print_error_panel("CheckpointError", "Checkpoint 'x' not found", "List checkpoints")

        output = buffer.getvalue()
        assert "✗ CheckpointError" in output
        assert "Suggestion: List checkpoints" in output
