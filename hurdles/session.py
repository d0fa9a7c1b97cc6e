"""Analysis session: the caller-facing API of Chess Hurdles.

A session owns one engine transport and wires it to the cache, the
orchestrator, the opening book, the explainer and the hurdle store.

Usage:
    async with AnalysisSession() as session:
        depth = await session.calibrate()
        review = await session.review_game(["e4", "e5", "Qh5", "Nc6", "Bc4", "Nf6", "Qxf7#"])
        print(review.report)

CLI:
    python -m hurdles.session calibrate
    python -m hurdles.session review e4 e5 Qh5 Nc6 Bc4 Nf6 Qxf7# [--depth N] [--last N] [--json]
    python -m hurdles.session clear-cache
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from typing import Callable, Sequence

import chess
from rich.console import Console

from hurdles.cache import EvaluationCache
from hurdles.calibration import calibrate_depth
from hurdles.classifier import classify
from hurdles.config import (
    BOOK_CHECK_FULL_MOVES,
    DEFAULT_ANALYSIS_DEPTH,
    Settings,
    configure_logging,
)
from hurdles.engine import EngineTransport
from hurdles.errors import EngineError
from hurdles.explain import MoveExplainer
from hurdles.hurdle_store import HurdleStore
from hurdles.models import AnalysisItem, AnalysisState, EngineEvaluation
from hurdles.opening_book import OpeningBook
from hurdles.orchestrator import AnalysisCallbacks, AnalysisOrchestrator
from hurdles.report import (
    build_analysis_table,
    build_summary_panel,
    explanation_requests,
    format_analysis_text,
)

logger = logging.getLogger(__name__)


@dataclass
class GameReview:
    """Everything produced by reviewing one game."""

    items: list[AnalysisItem]
    evaluations: list[EngineEvaluation | None]
    depth: int
    state: AnalysisState
    fens: list[str] = field(default_factory=list)
    book_move_indices: set[int] = field(default_factory=set)
    descriptions: dict[int, str] = field(default_factory=dict)
    hurdles: list[dict] = field(default_factory=list)
    report: str = ""

    def to_dict(self) -> dict:
        return {
            "depth": self.depth,
            "state": self.state.value,
            "items": [asdict(item) for item in self.items],
            "fens": list(self.fens),
            "book_move_indices": sorted(self.book_move_indices),
            "descriptions": {str(k): v for k, v in self.descriptions.items()},
            "hurdle_ids": [h["id"] for h in self.hurdles],
            "report": self.report,
        }


def parse_moves(
    moves: Sequence[str], starting_board: chess.Board | None = None
) -> tuple[list[chess.Board], list[str], list[str]]:
    """Replay moves given in SAN or UCI.

    Returns:
        (positions, san_moves, uci_moves). positions holds the board
        before each move followed by the final board.

    Raises:
        ValueError: If a move is illegal or unparseable.
    """
    board = starting_board.copy(stack=False) if starting_board is not None else chess.Board()
    positions = [board.copy(stack=False)]
    sans: list[str] = []
    ucis: list[str] = []
    for ply, text in enumerate(moves):
        try:
            move = board.parse_san(text)
        except ValueError:
            try:
                move = board.parse_uci(text)
            except ValueError as exc:
                raise ValueError(f"Illegal move at ply {ply + 1}: {text}") from exc
        sans.append(board.san(move))
        ucis.append(move.uci())
        board.push(move)
        positions.append(board.copy(stack=False))
    return positions, sans, ucis


class AnalysisSession:
    """One engine plus the collaborators a game review needs."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: EngineTransport | None = None,
        cache: EvaluationCache | None = None,
        book: OpeningBook | None = None,
        explainer: MoveExplainer | None = None,
        store: HurdleStore | None = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.transport = transport or EngineTransport(self.settings.stockfish_path)
        self.cache = cache if cache is not None else EvaluationCache(self.settings.cache_path)
        self.book = book if book is not None else OpeningBook(token=self.settings.lichess_token)
        self.explainer = explainer if explainer is not None else MoveExplainer(
            self.settings.gemini_api_key, self.settings.gemini_model
        )
        self.store = store if store is not None else HurdleStore(self.settings.hurdles_path)
        self.orchestrator = AnalysisOrchestrator(self.transport, self.cache)
        self.depth: int | None = None

    async def __aenter__(self) -> AnalysisSession:
        await self.transport.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.orchestrator.cancel()
        await self.transport.terminate()

    async def calibrate(self, on_progress: Callable[[int, int], None] | None = None) -> int:
        """Calibrate and remember the analysis depth for this session."""
        result = await calibrate_depth(self.transport, on_progress=on_progress)
        self.depth = result.depth
        return result.depth

    def analyze_batch(
        self,
        moves: Sequence[str],
        positions: Sequence[chess.Board],
        move_numbers: Sequence[int],
        depth: int,
        callbacks: AnalysisCallbacks | None = None,
    ) -> Callable[[], None]:
        """Start a run and return its cancel function.

        The driving task is available as `session.orchestrator.task`.
        """
        self.orchestrator.callbacks = callbacks or AnalysisCallbacks()
        self.orchestrator.start(moves, positions, move_numbers, depth)
        return self.orchestrator.cancel

    async def review_game(
        self,
        moves: Sequence[str],
        starting_board: chess.Board | None = None,
        depth: int | None = None,
        max_moves: int | None = None,
        on_progress: Callable[[str], None] | None = None,
        save_hurdles: bool = True,
    ) -> GameReview:
        """Analyse, classify and report on a game.

        The most recent moves are evaluated first; results are put back
        into game order before classification.

        Args:
            moves: Moves in SAN or UCI from starting_board.
            starting_board: Initial position. Defaults to the standard start.
            depth: Search depth. Defaults to the calibrated depth, if any.
            max_moves: Only review the last N moves.
            on_progress: Receives progress text.
            save_hurdles: Write classified moves to the hurdle store.

        Returns:
            GameReview. If the run was cancelled or the engine failed, the
            moves without evaluations are left unclassified.

        Raises:
            ValueError: If a move is illegal or max_moves is negative.
            AnalysisInProgressError: If another run is still active.
        """
        if max_moves is not None and max_moves < 0:
            raise ValueError(f"max_moves must be zero or more, got {max_moves}")
        depth = depth or self.depth or DEFAULT_ANALYSIS_DEPTH
        positions, sans, ucis = parse_moves(moves, starting_board)

        start = 0
        if max_moves is not None and max_moves < len(sans):
            start = max(0, len(sans) - max_moves)
        batch_positions = positions[start:]
        batch_sans = sans[start:]
        batch_ucis = ucis[start:]
        # The final position has no move of its own; it scores the last move
        display_moves = batch_sans + [""]
        move_numbers = [board.fullmove_number for board in batch_positions]

        def _progress(text: str) -> None:
            if on_progress is not None:
                on_progress(text)

        total = len(batch_positions)

        def _on_evaluation(index: int, evaluation: EngineEvaluation, from_cache: bool) -> None:
            source = "cache" if from_cache else f"{evaluation.calculation_time_ms}ms"
            _progress(f"Analyzed position {index + 1}/{total} ({source})")

        self.orchestrator.callbacks = AnalysisCallbacks(
            on_progress=_progress, on_evaluation=_on_evaluation
        )
        task = self.orchestrator.start(
            list(reversed(display_moves)),
            list(reversed(batch_positions)),
            list(reversed(move_numbers)),
            depth,
        )
        await task
        run = self.orchestrator.run
        evaluations = list(reversed(run.results))
        cached = list(reversed(run.from_cache))

        first = batch_positions[0]
        book_indices: set[int] = set()
        if batch_sans:
            book_indices = await asyncio.to_thread(
                self.book.book_move_indices,
                batch_positions[:-1],
                batch_ucis,
                BOOK_CHECK_FULL_MOVES,
            )

        items = classify(
            batch_sans,
            evaluations,
            ai_worthy_threshold=self.settings.ai_worthy_threshold,
            max_ai_slots=self.settings.max_ai_slots,
            start_move_number=first.fullmove_number,
            start_with_white=first.turn == chess.WHITE,
            book_move_indices=frozenset(book_indices),
            start_absolute_index=first.ply(),
            from_cache=cached,
        )

        requests = explanation_requests(items)
        approved = [r for r in requests if r["will_use_ai"]]
        if approved:
            _progress(f"Fetching AI descriptions for {len(approved)} priority hurdles...")
        descriptions: dict[int, str] = {}
        for request in approved:
            index = request["index"]
            text = await asyncio.to_thread(
                self.explainer.describe, items[index], batch_positions[index].fen()
            )
            if text:
                descriptions[index] = text

        hurdles: list[dict] = []
        if save_hurdles:
            for request in requests:
                index = request["index"]
                hurdles.append(self.store.add_from_item(
                    items[index],
                    fen=batch_positions[index].fen(),
                    depth=depth,
                    ai_description=descriptions.get(index),
                ))

        report = format_analysis_text(
            items, depth, descriptions, max_ai_slots=self.settings.max_ai_slots
        )
        return GameReview(
            items=items,
            evaluations=evaluations,
            depth=depth,
            state=run.state,
            fens=[board.fen() for board in batch_positions[:-1]],
            book_move_indices=book_indices,
            descriptions=descriptions,
            hurdles=hurdles,
            report=report,
        )


# ---------------------------------------------------------------------------
# CLI interface
# ---------------------------------------------------------------------------


async def _cli_calibrate(settings: Settings, console: Console) -> None:
    def _on_trial(depth: int, elapsed_ms: int) -> None:
        console.print(f"  depth {depth}: {elapsed_ms}ms")

    async with AnalysisSession(settings) as session:
        depth = await session.calibrate(on_progress=_on_trial)
    console.print(f"[bold]Calibrated depth:[/bold] {depth}")


async def _cli_review(
    settings: Settings,
    console: Console,
    moves: list[str],
    fen: str | None,
    depth: int | None,
    last: int | None,
    as_json: bool,
) -> None:
    board = chess.Board(fen) if fen else None
    async with AnalysisSession(settings) as session:
        review = await session.review_game(
            moves,
            starting_board=board,
            depth=depth,
            max_moves=last,
            on_progress=None if as_json else (lambda text: console.print(f"[dim]{text}[/dim]")),
        )

    if as_json:
        print(json.dumps(review.to_dict(), indent=2, ensure_ascii=False))
        return
    console.print(build_analysis_table(review.items))
    console.print(build_summary_panel(review.items, review.depth))
    console.print(review.report)


def main() -> None:
    """CLI entry point for session.py."""
    parser = argparse.ArgumentParser(
        description="Chess Hurdles - engine-backed game review"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("calibrate", help="Find the depth this machine handles in ~3s")

    review_parser = subparsers.add_parser("review", help="Review a game")
    review_parser.add_argument("moves", nargs="+", help="Moves in SAN or UCI")
    review_parser.add_argument("--fen", type=str, default=None, help="Starting position")
    review_parser.add_argument("--depth", type=int, default=None, help="Search depth")
    review_parser.add_argument("--last", type=int, default=None, help="Only the last N moves")
    review_parser.add_argument("--json", action="store_true", help="Print JSON instead of tables")

    subparsers.add_parser("clear-cache", help="Delete cached opening evaluations")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    console = Console()

    try:
        if args.command == "calibrate":
            asyncio.run(_cli_calibrate(settings, console))
        elif args.command == "review":
            asyncio.run(_cli_review(
                settings, console, args.moves, args.fen, args.depth, args.last, args.json
            ))
        elif args.command == "clear-cache":
            removed = EvaluationCache(settings.cache_path).clear()
            print(json.dumps({"removed": removed}))
    except (EngineError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
