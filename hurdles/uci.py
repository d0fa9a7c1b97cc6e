"""Score and notation helpers for engine output.

Turns python-chess analysis info into DepthInfo events, normalizes scores
to White's perspective, and converts engine (UCI) moves into move-numbered
SAN using the position the request was made for. A move that does not fit
the position is passed through raw instead of raising.
"""

from __future__ import annotations

import chess
import chess.engine

from hurdles.config import MATE_SCORE_BASE
from hurdles.models import DepthInfo, MoveText, RawFallback, Validated


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


def mate_to_score(mate: int) -> int:
    """Encode a mate-in-N value as sign * (5000 + |N|).

    mate 0 means the side to move is already checkmated, which is scored
    as a loss at the mate base.
    """
    if mate > 0:
        return MATE_SCORE_BASE + mate
    if mate < 0:
        return -(MATE_SCORE_BASE - mate)
    return -MATE_SCORE_BASE


def score_to_cp(score: chess.engine.Score) -> int:
    """Centipawns for a python-chess score, mate-coded when it is a mate."""
    if score.is_mate():
        return mate_to_score(score.mate())
    return score.score()


def to_white_perspective(score: int, turn: chess.Color) -> int:
    """Flip a side-to-move score so that positive favors White."""
    return score if turn == chess.WHITE else -score


def is_mate_score(evaluation: int) -> bool:
    return abs(evaluation) > MATE_SCORE_BASE


def mate_distance(evaluation: int) -> int | None:
    """Signed mate distance for a mate-coded score, None otherwise."""
    if not is_mate_score(evaluation):
        return None
    sign = 1 if evaluation > 0 else -1
    return sign * (abs(evaluation) - MATE_SCORE_BASE)


# ---------------------------------------------------------------------------
# Analysis info
# ---------------------------------------------------------------------------


def depth_info_from(info: chess.engine.InfoDict) -> DepthInfo | None:
    """Build a DepthInfo from one python-chess analysis update.

    Returns:
        The event, or None for updates without both a depth and a score
        (currmove updates, `info string`, ...).
    """
    depth = info.get("depth")
    score = info.get("score")
    if depth is None or score is None:
        return None

    bound = None
    if info.get("lowerbound"):
        bound = "lowerbound"
    elif info.get("upperbound"):
        bound = "upperbound"

    relative = score.relative
    return DepthInfo(
        depth=depth,
        score=score_to_cp(relative),
        is_mate=relative.is_mate(),
        pv=tuple(move.uci() for move in info.get("pv", [])),
        multipv=info.get("multipv", 1),
        bound=bound,
    )


# ---------------------------------------------------------------------------
# Notation
# ---------------------------------------------------------------------------


def uci_to_san(uci_move: str, board: chess.Board) -> MoveText:
    """Validate a UCI move against a position and convert it to SAN.

    Returns:
        Validated(san) if the move is legal in board, else RawFallback
        carrying the original text.
    """
    try:
        move = chess.Move.from_uci(uci_move)
    except (chess.InvalidMoveError, ValueError):
        return RawFallback(uci_move)
    if not board.is_legal(move):
        return RawFallback(uci_move)
    return Validated(board.san(move))


def _numbered(san: str, board: chess.Board, first: bool) -> str:
    if board.turn == chess.WHITE:
        return f"{board.fullmove_number}.{san}"
    if first:
        return f"{board.fullmove_number}...{san}"
    return san


def format_best_move(uci_move: str, board: chess.Board) -> str:
    """Best move as `12.Nf3` / `12...Nf6`, or the raw engine text."""
    if not uci_move:
        return ""
    result = uci_to_san(uci_move, board)
    if isinstance(result, RawFallback):
        return result.text
    return _numbered(result.san, board, first=True)


def format_principal_variation(uci_moves: list[str] | tuple[str, ...], board: chess.Board) -> str:
    """Convert a PV to numbered SAN, e.g. `12...Nf6 13.Bb5 a6`.

    Conversion stops at the first move that does not fit the line; that
    move and everything after it are appended in raw engine notation.
    """
    temp = board.copy(stack=False)
    parts: list[str] = []
    for i, uci_move in enumerate(uci_moves):
        result = uci_to_san(uci_move, temp)
        if isinstance(result, RawFallback):
            parts.extend(uci_moves[i:])
            break
        parts.append(_numbered(result.san, temp, first=(i == 0)))
        temp.push_uci(uci_move)
    return " ".join(parts)
