"""Depth calibration.

Finds the deepest search depth the local engine finishes within a time
budget on a fixed middlegame position. Trials run one at a time from
depth 1 upward; search time grows with depth, so calibration stops at the
first trial that runs over.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

import chess

from hurdles.config import (
    CALIBRATION_TARGET_MS,
    CALIBRATION_TEST_FEN,
    CALIBRATION_TIMEOUT_MS,
    DEFAULT_ANALYSIS_DEPTH,
    MAX_ANALYSIS_DEPTH,
    MIN_ANALYSIS_DEPTH,
)
from hurdles.engine import EngineTransport
from hurdles.errors import EngineError, EngineTimeoutError, EngineUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationTrial:
    depth: int
    elapsed_ms: int


@dataclass(frozen=True)
class CalibrationResult:
    """Chosen depth plus the trials it was chosen from."""

    depth: int
    trials: list[CalibrationTrial] = field(default_factory=list)
    target_ms: int = CALIBRATION_TARGET_MS
    fallback: bool = False


def _clamp(depth: int, min_depth: int, max_depth: int) -> int:
    return max(min_depth, min(max_depth, depth))


async def calibrate_depth(
    transport: EngineTransport,
    fen: str = CALIBRATION_TEST_FEN,
    target_ms: int = CALIBRATION_TARGET_MS,
    min_depth: int = MIN_ANALYSIS_DEPTH,
    max_depth: int = MAX_ANALYSIS_DEPTH,
    timeout_per_run_ms: int = CALIBRATION_TIMEOUT_MS,
    on_progress: Callable[[int, int], None] | None = None,
) -> CalibrationResult:
    """Pick the deepest depth whose search fits within target_ms.

    Each trial is timed from the engine's readyok to its bestmove.

    Args:
        transport: An initialized engine transport.
        fen: Benchmark position.
        target_ms: Time budget per search in milliseconds.
        min_depth: Lower clamp for the result.
        max_depth: Deepest trial and upper clamp for the result.
        timeout_per_run_ms: Safety timeout for a single trial.
        on_progress: Called with (depth, elapsed_ms) after each successful trial.

    Returns:
        CalibrationResult. fallback is True when no trial stayed within
        target and the depth came from the closest trial or the default.

    Raises:
        EngineUnavailableError: If the engine dies during calibration.
    """
    board = chess.Board(fen)
    trials: list[CalibrationTrial] = []

    for depth in range(1, max_depth + 1):
        try:
            evaluation = await transport.analyse(
                board, depth, timeout=timeout_per_run_ms / 1000, sync=True
            )
        except EngineUnavailableError:
            raise
        except EngineTimeoutError as exc:
            logger.warning("Calibration trial at depth %d timed out: %s", depth, exc)
            break
        except EngineError as exc:
            logger.warning("Calibration trial at depth %d failed: %s", depth, exc)
            continue

        trial = CalibrationTrial(depth=depth, elapsed_ms=evaluation.calculation_time_ms)
        trials.append(trial)
        logger.debug("Calibration depth %d: %dms", depth, trial.elapsed_ms)
        if on_progress is not None:
            on_progress(depth, trial.elapsed_ms)
        if trial.elapsed_ms > target_ms:
            break

    within = [p for p in trials if p.elapsed_ms <= target_ms]
    if within:
        chosen = max(p.depth for p in within)
        fallback = False
    elif trials:
        closest = min(trials, key=lambda p: (abs(p.elapsed_ms - target_ms), p.depth))
        chosen = closest.depth
        fallback = True
    else:
        chosen = DEFAULT_ANALYSIS_DEPTH
        fallback = True

    depth = _clamp(chosen, min_depth, max_depth)
    logger.info("Calibrated analysis depth: %d (target %dms)", depth, target_ms)
    return CalibrationResult(
        depth=depth, trials=trials, target_ms=target_ms, fallback=fallback
    )
