"""Review output for Chess Hurdles.

Turns classified moves into the plain-text analysis report and into Rich
renderables for the terminal.
"""

from __future__ import annotations

from typing import Sequence

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from hurdles.config import MATE_SCORE_BASE, MAX_AI_ANALYSIS_PER_GAME, WPL_THRESHOLDS
from hurdles.models import AnalysisItem

_CLASSIFICATION_STYLES = {
    "blunder": "bold red",
    "mistake": "dark_orange",
    "inaccuracy": "yellow",
    "none": "dim",
}

# Mates this close are called out in the report
_SHORT_MATE = 5


def format_eval(cp: int | None) -> str:
    """`+0.35`, `-1.20`, `#3`, `#-2`, or `?` when missing."""
    if cp is None:
        return "?"
    if abs(cp) > MATE_SCORE_BASE:
        sign = 1 if cp > 0 else -1
        return f"#{sign * (abs(cp) - MATE_SCORE_BASE)}"
    return f"{cp / 100:+.2f}"


def _is_hurdle(item: AnalysisItem) -> bool:
    return (
        item.classification != "none"
        and item.wpl is not None
        and item.centipawn_change is not None
    )


def format_analysis_text(
    items: Sequence[AnalysisItem],
    depth: int,
    descriptions: dict[int, str] | None = None,
    max_ai_slots: int = MAX_AI_ANALYSIS_PER_GAME,
) -> str:
    """Build the plain-text report for a reviewed game.

    Args:
        items: Classified moves in game order.
        depth: Search depth used.
        descriptions: Explanation text keyed by batch index.
        max_ai_slots: Per-game explanation budget, shown for throttled moves.

    Returns:
        Report text.
    """
    descriptions = descriptions or {}
    lines = [f"Game Analysis Results (Entire Game) - Depth {depth}:", ""]
    pending = 0

    for index, item in enumerate(items):
        color = "White" if item.is_white_move else "Black"
        lines.append(f"Move {item.move_label} {color} {item.move}")

        if item.pre_move_eval is None:
            lines.append("  Analysis: Failed")
            lines.append("")
            continue

        lines.append(f"  Evaluation: {format_eval(item.pre_move_eval)}")
        lines.append(f"  Best Move: {item.best_move}")
        lines.append(f"  Time: {item.calculation_time_ms or 0}ms")
        if item.from_cache:
            lines.append("  Source: Cached")
        if item.is_book_move:
            lines.append("  Book move")

        if _is_hurdle(item):
            label = item.classification.capitalize()
            lines.append(
                f"  Change: -{item.centipawn_change / 100:.2f} (WPL {item.wpl * 100:.1f}%)"
            )
            lines.append(
                f"  {label} (WPL >= {WPL_THRESHOLDS[item.classification]})"
            )
            if item.principal_variation:
                lines.append(f"  Principal Variation: {item.principal_variation}")

            if index in descriptions:
                lines.append(f"  AI Analysis: {descriptions[index]}")
            elif item.will_use_ai:
                pending += 1
            elif item.is_throttled:
                lines.append(f"  AI Analysis Throttled (Top {max_ai_slots} Priority)")
        elif item.centipawn_change is not None:
            lines.append(f"  Centipawn change: {item.centipawn_change}")

        if item.mate_distance is not None and abs(item.mate_distance) <= _SHORT_MATE:
            sign = "+" if item.mate_distance > 0 else "-"
            lines.append(f"  MATE<=5 DETECTED: {sign}M{abs(item.mate_distance)}")
        lines.append("")

    text = "\n".join(lines) + "\nAnalysis complete!"
    if pending:
        text += f"\n\nFetching AI descriptions for {pending} priority hurdles..."
    return text


def explanation_requests(items: Sequence[AnalysisItem]) -> list[dict]:
    """Hurdles worth saving from a review, most of which are silent.

    Every classified non-book move is listed; will_use_ai marks the ones
    within the explanation budget.

    Returns:
        List of dicts with index, move_number, move, evaluation,
        best_move, pv, centipawn_loss, wpl, is_worthy and will_use_ai.
    """
    requests: list[dict] = []
    for index, item in enumerate(items):
        if item.is_book_move or not _is_hurdle(item):
            continue
        requests.append({
            "index": index,
            "move_number": item.move_number,
            "move": item.move,
            "evaluation": item.pre_move_eval,
            "best_move": item.best_move,
            "pv": item.principal_variation,
            "centipawn_loss": item.centipawn_change,
            "wpl": item.wpl,
            "is_worthy": item.is_ai_worthy,
            "will_use_ai": item.will_use_ai,
        })
    return requests


def build_analysis_table(items: Sequence[AnalysisItem]) -> Table:
    """One row per move: label, move, evals, loss, verdict."""
    table = Table(title="Move review", show_lines=False)
    table.add_column("Move", justify="right")
    table.add_column("Played")
    table.add_column("Eval", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Loss", justify="right")
    table.add_column("WPL", justify="right")
    table.add_column("Verdict")
    table.add_column("Best")

    for item in items:
        if item.is_book_move:
            verdict = Text("book", style="cyan")
        else:
            verdict = Text(item.classification, style=_CLASSIFICATION_STYLES[item.classification])
            if item.will_use_ai:
                verdict.append(" *", style="bold")
        table.add_row(
            item.move_label,
            item.move,
            format_eval(item.pre_move_eval),
            format_eval(item.post_move_eval),
            "" if item.centipawn_change is None else str(item.centipawn_change),
            "" if item.wpl is None else f"{item.wpl * 100:.1f}%",
            verdict,
            item.best_move,
        )
    return table


def build_summary_panel(items: Sequence[AnalysisItem], depth: int) -> Panel:
    """Per-side counts of inaccuracies, mistakes and blunders."""
    parts: list[str] = [f"[bold]Depth:[/bold] {depth}", ""]
    for color, white in (("White", True), ("Black", False)):
        counts = {"inaccuracy": 0, "mistake": 0, "blunder": 0}
        for item in items:
            if item.is_white_move == white and item.classification in counts:
                counts[item.classification] += 1
        parts.append(f"[bold]{color}:[/bold]")
        for name, count in counts.items():
            parts.append(f"  {name.capitalize()}: {count}")
    explained = sum(1 for item in items if item.will_use_ai)
    throttled = sum(1 for item in items if item.is_throttled)
    parts.append("")
    parts.append(f"Explained: {explained}  Throttled: {throttled}")
    return Panel("\n".join(parts), title="Summary", border_style="green")
