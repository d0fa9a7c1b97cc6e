"""Configuration for Chess Hurdles.

Thresholds, calibration settings and engine defaults live here so the
classifier, orchestrator and report agree on the same numbers. Runtime
settings (paths, API keys, AI throttling) come from environment variables
via Settings.from_env().
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Mapping

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_DEFAULT_DATA_DIR = _PROJECT_ROOT / "data"

# Win-probability-loss tiers used for classification
WPL_THRESHOLDS: Final[dict[str, float]] = {
    "inaccuracy": 0.05,
    "mistake": 0.10,
    "blunder": 0.20,
}

# Logistic slope for centipawn -> win probability (Lichess accuracy model)
WIN_PROBABILITY_SCALE: Final[float] = 0.00368208

# Mate scores are encoded as sign * (MATE_SCORE_BASE + N)
MATE_SCORE_BASE: Final[int] = 5000

# Depth calibration: target wall-clock per trial and per-trial safety timeout
CALIBRATION_TARGET_MS: Final[int] = 3 * 1000
CALIBRATION_TIMEOUT_MS: Final[int] = 21 * 1000
# Stable middlegame benchmark with a moderate branching factor
CALIBRATION_TEST_FEN: Final[str] = (
    "r2q1rk1/1bpp1ppp/p1n1pn2/8/3P4/2P2N2/PP3PPP/R1BQ1RK1 w - - 0 10"
)

MIN_ANALYSIS_DEPTH: Final[int] = 1
MAX_ANALYSIS_DEPTH: Final[int] = 34
DEFAULT_ANALYSIS_DEPTH: Final[int] = 8

# Positions at or before this full move are cached (13 full moves = 26 plies)
ANALYSIS_CACHE_FULL_MOVES_LIMIT: Final[int] = 13

# Pause after a cache hit before moving to the next position
CACHE_HIT_DELAY_S: Final[float] = 0.05

ENGINE_DEFAULT_OPTIONS: Final[dict[str, int]] = {
    "Hash": 64,
    "MultiPV": 1,
}
ENGINE_INIT_TIMEOUT_S: Final[float] = 10.0
ENGINE_QUIT_TIMEOUT_S: Final[float] = 2.0

# Book detection only looks at the first N full moves of a game
BOOK_CHECK_FULL_MOVES: Final[int] = 12
BOOK_LOOKUP_TIMEOUT_S: Final[float] = 2.0
LICHESS_MASTERS_URL: Final[str] = "https://explorer.lichess.ovh/masters"

# AI explanation throttling
AI_WORTHY_THRESHOLD: Final[float] = 0.15
MAX_AI_ANALYSIS_PER_GAME: Final[int] = 5
DEFAULT_GEMINI_MODEL: Final[str] = "gemini-2.5-flash"


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the environment."""

    stockfish_path: str | None = None
    ai_worthy_threshold: float = AI_WORTHY_THRESHOLD
    max_ai_slots: int = MAX_AI_ANALYSIS_PER_GAME
    data_dir: Path = _DEFAULT_DATA_DIR
    gemini_api_key: str | None = None
    gemini_model: str = DEFAULT_GEMINI_MODEL
    lichess_token: str | None = None
    log_level: str = "WARNING"

    @property
    def cache_path(self) -> Path:
        return self.data_dir / "analysis_cache.json"

    @property
    def hurdles_path(self) -> Path:
        return self.data_dir / "hurdles.json"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from environment variables.

        Unparseable numeric values fall back to the defaults.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Returns:
            A Settings instance.
        """
        env = os.environ if environ is None else environ
        data_dir = env.get("CHESS_HURDLES_DATA_DIR")
        return cls(
            stockfish_path=env.get("CHESS_HURDLES_STOCKFISH") or None,
            ai_worthy_threshold=_float_env(
                env, "CHESS_HURDLES_AI_WORTHY_THRESHOLD", AI_WORTHY_THRESHOLD
            ),
            max_ai_slots=_int_env(env, "CHESS_HURDLES_MAX_AI", MAX_AI_ANALYSIS_PER_GAME),
            data_dir=Path(data_dir) if data_dir else _DEFAULT_DATA_DIR,
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            gemini_model=env.get("CHESS_HURDLES_GEMINI_MODEL") or DEFAULT_GEMINI_MODEL,
            lichess_token=env.get("LICHESS_TOKEN") or None,
            log_level=env.get("CHESS_HURDLES_LOG_LEVEL", "WARNING").upper(),
        )


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def configure_logging(level: str = "WARNING") -> None:
    """Send package logs to stderr so CLI stdout stays machine-readable."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
