"""Stockfish transport for Chess Hurdles.

Owns exactly one engine process, driven through python-chess's asyncio
UCI protocol. Provides:
- Process start, handshake and option setup (Hash, MultiPV, Threads when safe)
- Depth-limited analysis requests; a new request supersedes the running one
- White-relative evaluations with best move and PV in numbered SAN
- CLI for quick single-position analysis
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shutil
import sys
import time
from pathlib import Path
from typing import AsyncIterator, Callable

import chess
import chess.engine

from hurdles.config import (
    DEFAULT_ANALYSIS_DEPTH,
    ENGINE_DEFAULT_OPTIONS,
    ENGINE_INIT_TIMEOUT_S,
    ENGINE_QUIT_TIMEOUT_S,
    configure_logging,
)
from hurdles.errors import EngineError, EngineTimeoutError, EngineUnavailableError
from hurdles.models import BestMove, DepthInfo, EngineEvaluation, EngineEvent
from hurdles.uci import (
    depth_info_from,
    format_best_move,
    format_principal_variation,
    to_white_perspective,
)

logger = logging.getLogger(__name__)

# Stockfish search paths in priority order
_STOCKFISH_PATHS = [
    "/opt/homebrew/bin/stockfish",
    "/usr/local/bin/stockfish",
    "/usr/bin/stockfish",
    "/usr/games/stockfish",
]

_ANALYSIS_INFO = chess.engine.INFO_BASIC | chess.engine.INFO_SCORE | chess.engine.INFO_PV


def _find_stockfish() -> str:
    """Auto-detect Stockfish binary path.

    Checks known install paths, then falls back to PATH lookup.

    Returns:
        Path to Stockfish binary.

    Raises:
        FileNotFoundError: If Stockfish is not found anywhere.
    """
    for path_str in _STOCKFISH_PATHS:
        if Path(path_str).is_file():
            return path_str

    which_result = shutil.which("stockfish")
    if which_result is not None:
        return which_result

    raise FileNotFoundError(
        "Stockfish not found. Install it or set CHESS_HURDLES_STOCKFISH."
    )


class EngineTransport:
    """One UCI engine process and the request/response cycle around it."""

    def __init__(
        self,
        engine_path: str | None = None,
        options: dict[str, int | str] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        init_timeout: float = ENGINE_INIT_TIMEOUT_S,
    ) -> None:
        """Configure the transport. The process is started by initialize().

        Args:
            engine_path: Explicit path to the engine binary. If None,
                auto-detects Stockfish from known locations.
            options: UCI options to apply after the handshake. MultiPV is
                passed with each search since python-chess manages it.
            clock: Monotonic clock in seconds, used for timing searches.
            init_timeout: Seconds allowed for the handshake and option setup.
        """
        self._engine_path = engine_path
        self._options: dict[str, int | str] = dict(
            ENGINE_DEFAULT_OPTIONS if options is None else options
        )
        self._clock = clock
        self._init_timeout = init_timeout
        self._transport: asyncio.SubprocessTransport | None = None
        self._protocol: chess.engine.UciProtocol | None = None
        self._applied: dict[str, int | str] = {}
        self.engine_name: str | None = None

        # Current request
        self._analysis: chess.engine.AnalysisResult | None = None
        self._board: chess.Board | None = None
        self._depth = 0
        self._started_at = 0.0

    # -- lifecycle ----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._protocol is not None and not self._protocol.returncode.done()

    @property
    def fingerprint(self) -> str:
        """Identity of the evaluation settings, used in cache keys."""
        return (
            f"Hash={self._options.get('Hash')}|MultiPV={self._options.get('MultiPV')}"
        )

    @property
    def applied_options(self) -> dict[str, int | str]:
        return dict(self._applied)

    @property
    def _multipv(self) -> int:
        return int(self._options.get("MultiPV", 1))

    async def initialize(self) -> EngineTransport:
        """Start the engine process, complete the handshake and apply options.

        Returns:
            self, so `transport = await EngineTransport().initialize()` works.

        Raises:
            EngineUnavailableError: If the binary is missing, fails to
                start, exits, or does not finish the handshake in time.
        """
        if self.is_running:
            return self

        try:
            path = self._engine_path or _find_stockfish()
        except FileNotFoundError as exc:
            raise EngineUnavailableError(str(exc)) from exc

        try:
            self._transport, self._protocol = await asyncio.wait_for(
                chess.engine.popen_uci(path), timeout=self._init_timeout
            )
        except asyncio.TimeoutError as exc:
            raise EngineUnavailableError(
                f"Engine handshake timed out after {self._init_timeout}s"
            ) from exc
        except (OSError, chess.engine.EngineError) as exc:
            raise EngineUnavailableError(f"Could not start engine at {path}: {exc}") from exc

        self.engine_name = self._protocol.id.get("name")
        try:
            await asyncio.wait_for(self._configure(), timeout=self._init_timeout)
        except (asyncio.TimeoutError, chess.engine.EngineError) as exc:
            await self.terminate()
            raise EngineUnavailableError(f"Engine setup failed: {exc!r}") from exc

        logger.info(
            "Engine ready: %s (%s)", self.engine_name or path, self._applied
        )
        return self

    async def _configure(self) -> None:
        protocol = self._protocol
        config: dict[str, int | str] = {}
        for name, value in self._options.items():
            if name.lower() in chess.engine.MANAGED_OPTIONS:
                continue
            if name not in protocol.options:
                logger.warning("Engine has no option %s, skipping", name)
                continue
            config[name] = value

        threads = self._thread_count()
        if threads > 1:
            config["Threads"] = threads

        await protocol.configure(config)
        await protocol.ping()
        self._applied = dict(config)
        self._applied["MultiPV"] = self._multipv

    def _thread_count(self) -> int:
        """Threads to enable, 1 unless both engine and host support more.

        The engine must advertise a Threads spin option allowing more than
        one thread, and the host must have more than one CPU. One CPU is
        left for the caller's event loop.
        """
        option = self._protocol.options.get("Threads")
        cpus = os.cpu_count() or 1
        if option is None or option.type != "spin" or cpus <= 1:
            return 1
        if option.max is None or option.max <= 1:
            return 1
        return max(1, min(option.max, cpus - 1))

    async def terminate(self) -> None:
        """Shut the engine down. Safe to call any number of times."""
        protocol, transport = self._protocol, self._transport
        self._protocol = None
        self._transport = None
        self._analysis = None
        if protocol is None:
            return

        try:
            if not protocol.returncode.done():
                await asyncio.wait_for(protocol.quit(), timeout=ENGINE_QUIT_TIMEOUT_S)
        except (asyncio.TimeoutError, chess.engine.EngineError) as exc:
            logger.debug("Engine did not quit cleanly: %r", exc)
        finally:
            # Kills the process if it is still alive
            transport.close()

    async def __aenter__(self) -> EngineTransport:
        return await self.initialize()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate()

    def stop(self) -> None:
        """Ask the engine to stop searching. Best-effort."""
        if self._analysis is None or not self.is_running:
            return
        self._analysis.stop()

    # -- analysis -----------------------------------------------------------

    async def request_analysis(
        self, board: chess.Board, depth: int, sync: bool = False
    ) -> None:
        """Start a fresh depth-limited search on board.

        Any in-flight search is stopped and its remaining output discarded;
        python-chess holds the new search back until the old one ends.

        Args:
            board: Position to analyse.
            depth: Target search depth.
            sync: Wait for readyok before starting, so the search clock
                starts once the engine is idle.
        """
        if not self.is_running:
            raise EngineUnavailableError("Engine process is not running")
        self.stop()

        protocol = self._protocol
        try:
            if sync:
                await protocol.ping()
            # A fresh game object makes python-chess send ucinewgame
            self._analysis = await protocol.analysis(
                board,
                chess.engine.Limit(depth=depth),
                multipv=self._multipv,
                game=object(),
                info=_ANALYSIS_INFO,
            )
        except chess.engine.EngineTerminatedError as exc:
            raise EngineUnavailableError(f"Engine process exited: {exc}") from exc
        except chess.engine.EngineError as exc:
            raise EngineError(f"Analysis request failed: {exc}") from exc

        self._board = board.copy(stack=False)
        self._depth = depth
        self._started_at = self._clock()

    async def events(self) -> AsyncIterator[EngineEvent]:
        """Events of the current search: DepthInfo updates, then one BestMove.

        Updates without a depth and a score are skipped.

        Raises:
            EngineUnavailableError: The process exited mid-search.
        """
        analysis = self._analysis
        if analysis is None:
            raise EngineError("No analysis has been requested")
        try:
            async for info in analysis:
                event = depth_info_from(info)
                if event is not None:
                    yield event
            best = await analysis.wait()
        except chess.engine.EngineTerminatedError as exc:
            raise EngineUnavailableError(f"Engine process exited: {exc}") from exc
        except chess.engine.EngineError as exc:
            raise EngineError(f"Search failed: {exc}") from exc
        yield BestMove(move=best.move.uci() if best.move else "")

    async def wait_for_result(self, timeout: float | None = None) -> EngineEvaluation:
        """Wait for the current request's bestmove.

        Args:
            timeout: Seconds to wait, or None for no limit.

        Returns:
            The evaluation for the current request.

        Raises:
            EngineTimeoutError: No bestmove within timeout (stop is sent).
            EngineError: The search ended without any evaluation.
            EngineUnavailableError: The process exited.
        """
        if self._analysis is None:
            raise EngineError("No analysis has been requested")
        try:
            return await asyncio.wait_for(self._collect_result(), timeout)
        except asyncio.TimeoutError as exc:
            self.stop()
            raise EngineTimeoutError(
                f"No bestmove within {timeout}s at depth {self._depth}"
            ) from exc

    async def analyse(
        self,
        board: chess.Board,
        depth: int,
        timeout: float | None = None,
        sync: bool = False,
    ) -> EngineEvaluation:
        """Request analysis of board and wait for the result.

        The timeout covers the whole round-trip, including the readyok
        wait when sync is set.
        """
        async def _round_trip() -> EngineEvaluation:
            await self.request_analysis(board, depth, sync=sync)
            return await self._collect_result()

        try:
            return await asyncio.wait_for(_round_trip(), timeout)
        except asyncio.TimeoutError as exc:
            self.stop()
            raise EngineTimeoutError(
                f"No bestmove within {timeout}s at depth {depth}"
            ) from exc

    async def _collect_result(self) -> EngineEvaluation:
        target: DepthInfo | None = None
        deepest: DepthInfo | None = None

        async for event in self.events():
            if isinstance(event, BestMove):
                info = target or deepest
                if info is None:
                    raise EngineError(
                        f"Engine returned bestmove {event.move or '(none)'} without an evaluation"
                    )
                return self._to_evaluation(info, event)

            if event.multipv != 1 or event.bound is not None:
                continue
            if deepest is None or event.depth >= deepest.depth:
                deepest = event
            # The first update at or past the requested depth is the evaluation
            if target is None and event.depth >= self._depth:
                target = event

        raise EngineError("Search ended without a bestmove")

    def _to_evaluation(self, info: DepthInfo, bestmove: BestMove) -> EngineEvaluation:
        board = self._board
        elapsed_ms = int(round((self._clock() - self._started_at) * 1000))
        best_uci = info.pv[0] if info.pv else bestmove.move

        return EngineEvaluation(
            evaluation_cp=to_white_perspective(info.score, board.turn),
            best_move=format_best_move(best_uci, board),
            principal_variation=format_principal_variation(info.pv, board),
            depth=info.depth,
            calculation_time_ms=max(0, elapsed_ms),
        )


# ---------------------------------------------------------------------------
# CLI interface
# ---------------------------------------------------------------------------


async def _cli_analyze(fen: str, depth: int, engine_path: str | None) -> None:
    """Analyze a FEN position and print the evaluation.

    Args:
        fen: FEN string of the position to analyze.
        depth: Search depth.
        engine_path: Optional explicit engine binary.
    """
    board = chess.Board(fen)
    async with EngineTransport(engine_path) as transport:
        evaluation = await transport.analyse(board, depth)

    print(f"Position: {fen}")
    print(f"Side to move: {'White' if board.turn else 'Black'}")
    print()
    cp = evaluation.evaluation_cp
    if abs(cp) > 5000:
        sign = 1 if cp > 0 else -1
        score_str = f"#{sign * (abs(cp) - 5000)}"
    else:
        score_str = f"{cp / 100.0:+.2f}"
    print(f"  Evaluation (White): {score_str}  depth {evaluation.depth}")
    print(f"  Best move: {evaluation.best_move}")
    print(f"  Line: {evaluation.principal_variation}")
    print(f"  Time: {evaluation.calculation_time_ms}ms")


def main() -> None:
    """CLI entry point for engine.py."""
    parser = argparse.ArgumentParser(
        description="Engine transport - analyze a single position"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze a FEN position")
    analyze_parser.add_argument("fen", type=str, help="FEN string to analyze")
    analyze_parser.add_argument(
        "--depth", type=int, default=DEFAULT_ANALYSIS_DEPTH, help="Search depth"
    )
    analyze_parser.add_argument(
        "--engine", type=str, default=None, help="Path to a UCI engine binary"
    )

    args = parser.parse_args()
    configure_logging(os.environ.get("CHESS_HURDLES_LOG_LEVEL", "WARNING"))

    if args.command == "analyze":
        try:
            asyncio.run(_cli_analyze(args.fen, args.depth, args.engine))
        except (EngineError, ValueError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
