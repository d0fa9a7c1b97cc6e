"""Shared data models for Chess Hurdles.

EngineEvaluation and AnalysisItem are the contract between the engine
transport, the orchestrator, the classifier and everything that displays
or persists results. DepthInfo and BestMove are the events the transport
builds from python-chess analysis output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

import chess


@dataclass(frozen=True)
class EngineEvaluation:
    """Result of analysing one position to a target depth.

    evaluation_cp is always from White's point of view. Mate scores are
    encoded as sign * (5000 + N).
    """

    evaluation_cp: int
    best_move: str
    principal_variation: str
    depth: int
    calculation_time_ms: int


@dataclass(frozen=True)
class CacheEntry:
    """A cached evaluation. timestamp is epoch milliseconds."""

    centipawns: int
    depth: int
    best_move: str
    timestamp: int


@dataclass(frozen=True)
class AnalysisItem:
    """Classified result for one played move."""

    move: str
    move_number: int
    is_white_move: bool
    absolute_move_index: int
    pre_move_eval: int | None = None
    post_move_eval: int | None = None
    best_move: str = ""
    centipawn_change: int | None = None
    wpl: float | None = None
    classification: str = "none"
    mate_distance: int | None = None
    is_book_move: bool = False
    is_ai_worthy: bool = False
    will_use_ai: bool = False
    principal_variation: str = ""
    calculation_time_ms: int | None = None
    from_cache: bool = False

    @property
    def is_throttled(self) -> bool:
        """Worth an explanation but outside the per-game AI budget."""
        return self.is_ai_worthy and not self.will_use_ai

    @property
    def move_label(self) -> str:
        return f"{self.move_number}{'.' if self.is_white_move else '...'}"


class AnalysisState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class AnalysisRun:
    """Working state of one orchestrator run. Owned by the orchestrator."""

    moves: list[str]
    positions: list[chess.Board]
    move_numbers: list[int]
    depth: int
    results: list[EngineEvaluation | None] = field(default_factory=list)
    # Whether each result came from the evaluation cache
    from_cache: list[bool] = field(default_factory=list)
    cursor: int = 0
    cancelled: bool = False
    state: AnalysisState = AnalysisState.IDLE

    def __post_init__(self) -> None:
        if not self.results:
            self.results = [None] * len(self.positions)
        if not self.from_cache:
            self.from_cache = [False] * len(self.positions)


# ---------------------------------------------------------------------------
# Engine analysis events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DepthInfo:
    """One analysis update carrying a depth and a score.

    score is relative to the side to move and already mate-coded; pv is
    in UCI notation.
    """

    depth: int
    score: int
    is_mate: bool
    pv: tuple[str, ...] = ()
    multipv: int = 1
    bound: str | None = None


@dataclass(frozen=True)
class BestMove:
    """End of a search. move is UCI, or empty when the engine had none."""

    move: str


EngineEvent = Union[DepthInfo, BestMove]


# ---------------------------------------------------------------------------
# Move notation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Validated:
    """An engine move that was legal in the position, as SAN."""

    san: str


@dataclass(frozen=True)
class RawFallback:
    """An engine move that could not be validated; passed through as-is."""

    text: str


MoveText = Union[Validated, RawFallback]
