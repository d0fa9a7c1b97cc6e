"""Sequential analysis of a batch of positions.

The orchestrator walks an AnalysisRun one position at a time: cache hits
are reported without touching the engine, misses go through a single
engine round-trip and are written back to the cache. Results are reported
strictly in the order positions were supplied.

States: IDLE -> RUNNING -> COMPLETED | CANCELLED | FAILED. FAILED means
the engine became unavailable mid-run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import chess

from hurdles.cache import EvaluationCache
from hurdles.config import CACHE_HIT_DELAY_S
from hurdles.engine import EngineTransport
from hurdles.errors import AnalysisInProgressError, EngineError, EngineUnavailableError
from hurdles.models import AnalysisRun, AnalysisState, CacheEntry, EngineEvaluation

logger = logging.getLogger(__name__)


@dataclass
class AnalysisCallbacks:
    """Hooks the orchestrator reports through. All are optional."""

    on_progress: Callable[[str], None] | None = None
    on_evaluation: Callable[[int, EngineEvaluation, bool], None] | None = None
    on_complete: Callable[[list[EngineEvaluation | None]], None] | None = None
    on_status_change: Callable[[bool], None] | None = None


class AnalysisOrchestrator:
    """Drives one AnalysisRun at a time over a single engine transport."""

    def __init__(
        self,
        transport: EngineTransport,
        cache: EvaluationCache | None = None,
        callbacks: AnalysisCallbacks | None = None,
        *,
        cache_hit_delay: float = CACHE_HIT_DELAY_S,
        request_timeout: float | None = None,
    ) -> None:
        """
        Args:
            transport: Initialized engine transport. Only this orchestrator
                should issue requests on it while a run is active.
            cache: Opening-window evaluation cache, or None to disable.
            callbacks: Reporting hooks.
            cache_hit_delay: Seconds to pause after each cache hit.
            request_timeout: Seconds allowed per engine round-trip, or None.
        """
        self.transport = transport
        self.cache = cache
        self.callbacks = callbacks or AnalysisCallbacks()
        self.cache_hit_delay = cache_hit_delay
        self.request_timeout = request_timeout
        self.run: AnalysisRun | None = None
        self.task: asyncio.Task | None = None

    @property
    def state(self) -> AnalysisState:
        return self.run.state if self.run is not None else AnalysisState.IDLE

    # -- reporting ----------------------------------------------------------

    def _progress(self, text: str) -> None:
        if self.callbacks.on_progress is not None:
            self.callbacks.on_progress(text)

    def _status(self, is_running: bool) -> None:
        if self.callbacks.on_status_change is not None:
            self.callbacks.on_status_change(is_running)

    def _evaluation(self, index: int, evaluation: EngineEvaluation, from_cache: bool) -> None:
        if self.callbacks.on_evaluation is not None:
            self.callbacks.on_evaluation(index, evaluation, from_cache)

    def _finish(self, run: AnalysisRun, state: AnalysisState) -> None:
        run.state = state
        logger.info("Analysis run %s at index %d", state.value, run.cursor)
        self._status(False)

    def _cancelled(self, run: AnalysisRun) -> None:
        self._progress("Analysis cancelled")
        self._finish(run, AnalysisState.CANCELLED)

    # -- run control --------------------------------------------------------

    def start(
        self,
        moves: Sequence[str],
        positions: Sequence[chess.Board],
        move_numbers: Sequence[int],
        depth: int,
    ) -> asyncio.Task:
        """Begin analysing positions in order. Must be called inside a running loop.

        Args:
            moves: Move played from each position (display only).
            positions: Boards to evaluate, in processing order.
            move_numbers: Full move number for each position.
            depth: Target search depth.

        Returns:
            The task driving the run. It resolves once the run ends.

        Raises:
            AnalysisInProgressError: If a run is already RUNNING.
            ValueError: If the three lists differ in length.
        """
        if self.state is AnalysisState.RUNNING:
            raise AnalysisInProgressError("An analysis run is already in progress")
        if not len(moves) == len(positions) == len(move_numbers):
            raise ValueError(
                f"moves ({len(moves)}), positions ({len(positions)}) and "
                f"move_numbers ({len(move_numbers)}) must have the same length"
            )

        run = AnalysisRun(
            moves=list(moves),
            positions=list(positions),
            move_numbers=list(move_numbers),
            depth=depth,
        )
        run.state = AnalysisState.RUNNING
        self.run = run
        self._progress("Starting analysis...")
        self._status(True)
        self.task = asyncio.get_running_loop().create_task(self._drive(run))
        return self.task

    async def _drive(self, run: AnalysisRun) -> None:
        index: int | None = 0
        try:
            while index is not None:
                index = await self.process_next(index)
        except asyncio.CancelledError:
            if run.state is AnalysisState.RUNNING:
                run.cancelled = True
                self.transport.stop()
                self._finish(run, AnalysisState.CANCELLED)
            raise
        except Exception:
            if run.state is AnalysisState.RUNNING:
                self._finish(run, AnalysisState.FAILED)
            raise

    async def process_next(self, index: int) -> int | None:
        """Process position index of the current run.

        Returns:
            The next index to process, or None once the run has ended.
        """
        run = self.run
        if run is None:
            raise RuntimeError("No analysis run has been started")

        # Completion takes precedence over a pending cancel
        if index >= len(run.positions):
            run.state = AnalysisState.COMPLETED
            if self.callbacks.on_complete is not None:
                self.callbacks.on_complete(list(run.results))
            logger.info("Analysis run completed: %d positions", len(run.results))
            self._status(False)
            return None

        if run.cancelled:
            return self._cancelled(run)

        run.cursor = index
        board = run.positions[index]
        fen = board.fen()
        fingerprint = self.transport.fingerprint

        entry = None
        if self.cache is not None:
            entry = self.cache.lookup_for_depth(
                fen, fingerprint, run.depth, board.fullmove_number
            )
        if entry is not None:
            evaluation = EngineEvaluation(
                evaluation_cp=entry.centipawns,
                best_move=entry.best_move,
                principal_variation="",
                depth=entry.depth,
                calculation_time_ms=0,
            )
            run.results[index] = evaluation
            run.from_cache[index] = True
            self._evaluation(index, evaluation, True)
            await asyncio.sleep(self.cache_hit_delay)
            return index + 1

        try:
            evaluation = await self.transport.analyse(
                board, run.depth, timeout=self.request_timeout
            )
        except EngineUnavailableError as exc:
            logger.error("Engine unavailable at position %d: %s", index, exc)
            self._progress(f"Engine unavailable: {exc}")
            self._finish(run, AnalysisState.FAILED)
            return None
        except EngineError as exc:
            # The slot stays empty; the classifier degrades that move only
            logger.warning("No evaluation for position %d (%s): %s", index, fen, exc)
            evaluation = None

        if run.cancelled:
            logger.debug("Dropping result for position %d after cancel", index)
            return self._cancelled(run)
        if evaluation is None:
            return index + 1

        run.results[index] = evaluation
        if self.cache is not None:
            self.cache.store(
                fen,
                fingerprint,
                CacheEntry(
                    centipawns=evaluation.evaluation_cp,
                    depth=evaluation.depth,
                    best_move=evaluation.best_move,
                    timestamp=int(time.time() * 1000),
                ),
                board.fullmove_number,
            )
        self._evaluation(index, evaluation, False)
        return index + 1

    def cancel(self) -> None:
        """Request cancellation. Takes effect at the next decision point."""
        run = self.run
        if run is None or run.state is not AnalysisState.RUNNING:
            return
        run.cancelled = True
        self.transport.stop()
