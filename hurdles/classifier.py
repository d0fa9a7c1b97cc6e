"""Move classification from a chronological batch of evaluations.

evaluations[i] is the position before moves[i] and evaluations[i + 1] the
position after it, both White-relative. Loss is measured from the mover's
side: White wants the score to rise, Black wants it to fall.

Severity uses win-probability loss (WPL) on a logistic curve, so a swing
near equality weighs more than the same swing in a won position.
"""

from __future__ import annotations

import math
from typing import Sequence

from hurdles.config import (
    AI_WORTHY_THRESHOLD,
    MAX_AI_ANALYSIS_PER_GAME,
    WIN_PROBABILITY_SCALE,
    WPL_THRESHOLDS,
)
from hurdles.models import AnalysisItem, EngineEvaluation
from hurdles.uci import mate_distance as _mate_distance


def win_probability(cp: int | float) -> float:
    """White's expected score in [0, 1] for a White-relative evaluation."""
    return 1.0 / (1.0 + math.exp(-WIN_PROBABILITY_SCALE * cp))


def centipawn_change(pre: int, post: int, white: bool) -> int:
    """Centipawns lost by the mover. Never negative."""
    return max(0, pre - post) if white else max(0, post - pre)


def win_probability_loss(pre: int, post: int, white: bool) -> float:
    """Drop in the mover's win probability, in [0, 1]."""
    before = win_probability(pre)
    after = win_probability(post)
    return max(0.0, before - after) if white else max(0.0, after - before)


def classify_wpl(wpl: float) -> str:
    if wpl >= WPL_THRESHOLDS["blunder"]:
        return "blunder"
    if wpl >= WPL_THRESHOLDS["mistake"]:
        return "mistake"
    if wpl >= WPL_THRESHOLDS["inaccuracy"]:
        return "inaccuracy"
    return "none"


def is_white_move(index: int, start_with_white: bool = True) -> bool:
    return index % 2 == 0 if start_with_white else index % 2 == 1


def classify(
    moves: Sequence[str],
    evaluations: Sequence[EngineEvaluation | None],
    ai_worthy_threshold: float = AI_WORTHY_THRESHOLD,
    max_ai_slots: int = MAX_AI_ANALYSIS_PER_GAME,
    start_move_number: int = 1,
    start_with_white: bool = True,
    book_move_indices: frozenset[int] | set[int] = frozenset(),
    start_absolute_index: int = 0,
    from_cache: Sequence[bool] = (),
) -> list[AnalysisItem]:
    """Classify every move in a batch.

    Args:
        moves: Played moves in game order.
        evaluations: Evaluation of the position before each move, plus the
            position after the last move when available. Entries may be
            None where the engine produced nothing.
        ai_worthy_threshold: Minimum WPL for a move to deserve an explanation.
        max_ai_slots: How many of the worthy moves get one.
        start_move_number: Full move number of moves[0].
        start_with_white: Whether moves[0] was played by White.
        book_move_indices: Batch indices of moves found in the opening book.
        start_absolute_index: Ply offset of moves[0] within the whole game.
        from_cache: Per evaluation, whether it was served from the cache.

    Returns:
        One AnalysisItem per move, in the same order.
    """
    fields: list[dict] = []
    for i, move in enumerate(moves):
        white = is_white_move(i, start_with_white)
        item: dict = {
            "move": move,
            "move_number": start_move_number + (i + (0 if start_with_white else 1)) // 2,
            "is_white_move": white,
            "absolute_move_index": start_absolute_index + i,
            "is_book_move": i in book_move_indices,
        }

        pre_eval = evaluations[i] if i < len(evaluations) else None
        post_eval = evaluations[i + 1] if i + 1 < len(evaluations) else None

        if pre_eval is not None:
            item["pre_move_eval"] = pre_eval.evaluation_cp
            item["best_move"] = pre_eval.best_move
            item["principal_variation"] = pre_eval.principal_variation
            item["calculation_time_ms"] = pre_eval.calculation_time_ms
            item["from_cache"] = i < len(from_cache) and bool(from_cache[i])

        if pre_eval is not None and post_eval is not None:
            pre = pre_eval.evaluation_cp
            post = post_eval.evaluation_cp
            wpl = win_probability_loss(pre, post, white)
            item["post_move_eval"] = post
            item["centipawn_change"] = centipawn_change(pre, post, white)
            item["wpl"] = wpl
            item["mate_distance"] = _mate_distance(post)
            if not item["is_book_move"]:
                item["classification"] = classify_wpl(wpl)
                item["is_ai_worthy"] = wpl >= ai_worthy_threshold

        fields.append(item)

    # Most severe first; equal WPL keeps game order
    worthy = sorted(
        (i for i, item in enumerate(fields) if item.get("is_ai_worthy")),
        key=lambda i: (-fields[i]["wpl"], i),
    )
    for i in worthy[: max(0, max_ai_slots)]:
        fields[i]["will_use_ai"] = True

    return [AnalysisItem(**item) for item in fields]
