"""MCP server for Chess Hurdles.

Exposes game review and hurdle practice tools via FastMCP. Each tool call
that needs the engine opens its own AnalysisSession (one Stockfish process
per call); the evaluation cache and the hurdle store are shared by the
whole process.
"""

from __future__ import annotations

import sys
from dataclasses import asdict
from pathlib import Path

# Add project root and mcp-server dir to path for imports
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_MCP_SERVER_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(_PROJECT_ROOT))
sys.path.insert(0, str(_MCP_SERVER_DIR))

import chess
from mcp.server.fastmcp import FastMCP

from hurdles import calibration
from hurdles.cache import EvaluationCache
from hurdles.config import Settings, configure_logging
from hurdles.errors import AnalysisInProgressError, EngineError
from hurdles.hurdle_store import HurdleStore
from hurdles.session import AnalysisSession

from response_schemas import (  # noqa: E402
    minify_calibration,
    minify_hurdle,
    minify_review,
)

mcp = FastMCP("chess-hurdles")

_settings = Settings.from_env()
configure_logging(_settings.log_level)

# Process-wide shared state
_cache = EvaluationCache(_settings.cache_path)
_store = HurdleStore(_settings.hurdles_path)
_calibrated: dict[str, int] = {}


def _new_session() -> AnalysisSession:
    """Build a session bound to the shared cache and store."""
    return AnalysisSession(_settings, cache=_cache, store=_store)


@mcp.tool()
async def calibrate_depth() -> dict:
    """Measure how deep this machine's Stockfish can search in about 3 seconds.

    The result becomes the default depth for later review_game calls.

    Returns:
        Dict with depth, target_ms, fallback and per-depth trial timings.
    """
    try:
        async with _new_session() as session:
            result = await calibration.calibrate_depth(session.transport)
    except EngineError as exc:
        return {"error": f"Calibration failed: {exc}"}

    _calibrated["depth"] = result.depth
    return minify_calibration(asdict(result))


@mcp.tool()
async def review_game(
    moves: list[str],
    fen: str | None = None,
    depth: int | None = None,
    last_moves: int | None = None,
    save_hurdles: bool = True,
) -> dict:
    """Review a game move by move and flag inaccuracies, mistakes and blunders.

    Args:
        moves: Moves in SAN or UCI, in game order.
        fen: Starting position (default: standard start).
        depth: Search depth (default: calibrated depth, else 8).
        last_moves: Only review the last N moves.
        save_hurdles: Store flagged moves for spaced-repetition practice.

    Returns:
        Minified review: PGN move string, flagged moves with loss
        figures and explanations, and counts.
    """
    starting_board = None
    if fen is not None:
        try:
            starting_board = chess.Board(fen)
            if not starting_board.is_valid():
                return {"error": f"Invalid FEN position: {fen}"}
        except ValueError as exc:
            return {"error": f"Invalid FEN: {exc}"}

    try:
        async with _new_session() as session:
            review = await session.review_game(
                moves,
                starting_board=starting_board,
                depth=depth or _calibrated.get("depth"),
                max_moves=last_moves,
                save_hurdles=save_hurdles,
            )
    except ValueError as exc:
        return {"error": str(exc)}
    except (EngineError, AnalysisInProgressError) as exc:
        return {"error": f"Review failed: {exc}"}

    return minify_review(review.to_dict())


@mcp.tool()
def get_due_hurdles(limit: int = 10) -> dict:
    """List hurdles due for practice, oldest first.

    Args:
        limit: Maximum number of hurdles to return.

    Returns:
        Dict with the due count and minified hurdles.
    """
    due = _store.get_due_hurdles()
    return {
        "due": len(due),
        "hurdles": [minify_hurdle(h) for h in due[:max(0, limit)]],
    }


@mcp.tool()
def review_hurdle(hurdle_id: str, quality: int) -> dict:
    """Record a practice attempt for a hurdle (SM-2 quality 0-5).

    Args:
        hurdle_id: UUID of the hurdle.
        quality: 0 = complete blackout ... 5 = perfect recall.

    Returns:
        The rescheduled hurdle, minified.
    """
    try:
        updated = _store.review_hurdle(hurdle_id, quality)
    except ValueError as exc:
        return {"error": str(exc)}
    return minify_hurdle(updated)


@mcp.tool()
def hurdle_stats() -> dict:
    """Summary of the hurdle collection: totals, due count, ease, classifications."""
    return _store.get_stats()


@mcp.tool()
def clear_analysis_cache() -> dict:
    """Delete all cached opening evaluations.

    Returns:
        Dict with the number of entries removed.
    """
    return {"removed": _cache.clear()}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    mcp.run()
