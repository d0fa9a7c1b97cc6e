"""Shared test fixtures with dual-mode support (scripted vs real Stockfish).

Usage:
    uv run pytest tests/                  # Fast, scripted engine (no Stockfish)
    uv run pytest tests/ --e2e            # Also run tests against real Stockfish

Fixtures:
    fake_uci_protocol  - Factory for a scripted chess.engine.UciProtocol,
                         returned from a patched chess.engine.popen_uci.
    fake_subprocess_transport - The transport half of that pair.
    fake_transport     - Factory for an in-memory EngineTransport stand-in.
    isolated_settings  - Settings pointing at a tmp data dir, no API keys.
    enable_validation  - Sets CHESS_HURDLES_VALIDATE=1 for schema validation.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from typing import Callable

import chess
import chess.engine
import pytest

from hurdles.config import Settings
from hurdles.errors import EngineError, EngineTimeoutError, EngineUnavailableError
from hurdles.models import EngineEvaluation


# ---------------------------------------------------------------------------
# CLI option and marker registration
# ---------------------------------------------------------------------------


def pytest_addoption(parser):
    """Register --e2e CLI flag for real Stockfish tests."""
    parser.addoption(
        "--e2e",
        action="store_true",
        default=False,
        help="Run with real Stockfish engine (no mocks).",
    )


def pytest_configure(config):
    """Register the e2e marker."""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end (requires real Stockfish)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip e2e tests unless --e2e is passed."""
    if config.getoption("--e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="needs --e2e and a Stockfish binary")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)




# ---------------------------------------------------------------------------
# Scripted UCI protocol
# ---------------------------------------------------------------------------


class FakeSubprocessTransport:
    """Records close(), which is how the real transport kills the process."""

    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeUciProtocol:
    """Stand-in for chess.engine.UciProtocol that answers from a script.

    Searches hand back real chess.engine.AnalysisResult objects. evals maps
    FEN -> (side-to-move cp, pv as UCI list); mate_fens maps FEN -> mate
    distance. Unknown positions score default_cp with the first legal move
    as PV. With hang_on_go set, a search posts nothing until it is stopped,
    which ends it with a bare bestmove. Create inside the running loop.
    """

    def __init__(
        self,
        evals: dict[str, tuple[int, list[str]]] | None = None,
        default_cp: int = 20,
        threads_max: int | None = 1024,
        hang_on_go: bool = False,
        mate_fens: dict[str, int] | None = None,
    ) -> None:
        self.id = {"name": "FakeFish 1.0", "author": "Tests"}
        self.options = {
            "Hash": chess.engine.Option(
                name="Hash", type="spin", default=16, min=1, max=33554432, var=[]
            ),
            "MultiPV": chess.engine.Option(
                name="MultiPV", type="spin", default=1, min=1, max=500, var=[]
            ),
        }
        if threads_max is not None:
            self.options["Threads"] = chess.engine.Option(
                name="Threads", type="spin", default=1, min=1, max=threads_max, var=[]
            )
        self.returncode: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self.evals = evals or {}
        self.mate_fens = mate_fens or {}
        self.default_cp = default_cp
        self.hang_on_go = hang_on_go
        self.calls: list[tuple] = []
        self.configured: dict[str, object] = {}
        self.current: chess.engine.AnalysisResult | None = None
        self.board: chess.Board | None = None

    async def configure(self, options) -> None:
        self.calls.append(("configure", dict(options)))
        self.configured.update(options)

    async def ping(self) -> None:
        self._check_alive()
        self.calls.append(("ping",))

    async def analysis(self, board, limit=None, *, multipv=None, game=None, info=None, **kwargs):
        self._check_alive()
        self.calls.append(("analysis", board.fen(), limit.depth, multipv))
        result = chess.engine.AnalysisResult(stop=lambda: self._stop(result))
        self.current = result
        self.board = board.copy(stack=False)
        if not self.hang_on_go:
            self._search(result, limit.depth)
        return result

    async def quit(self) -> None:
        self.calls.append(("quit",))
        if not self.returncode.done():
            self.returncode.set_result(0)

    # -- scripting helpers --------------------------------------------------

    def post(self, depth: int, cp: int, pv: list[str], **extra) -> None:
        """Post one update for the current search, scored for the side to move."""
        info = {
            "depth": depth,
            "score": chess.engine.PovScore(chess.engine.Cp(cp), self.board.turn),
            "pv": [chess.Move.from_uci(m) for m in pv],
        }
        info.update(extra)
        self.current.post(info)

    def finish(self, uci_move: str | None) -> None:
        move = chess.Move.from_uci(uci_move) if uci_move else None
        self.current.set_finished(chess.engine.BestMove(move, None))

    def die(self) -> None:
        """Simulate the engine process exiting mid-search."""
        self.returncode.set_result(-9)
        if self.current is not None:
            self.current.set_exception(
                chess.engine.EngineTerminatedError("engine process died unexpectedly (exit code: -9)")
            )

    def _check_alive(self) -> None:
        if self.returncode.done():
            raise chess.engine.EngineTerminatedError(
                f"engine process dead (exit code: {self.returncode.result()})"
            )

    def _pv(self) -> list[chess.Move]:
        fen = self.board.fen()
        if fen in self.evals:
            return [chess.Move.from_uci(m) for m in self.evals[fen][1]]
        legal = list(self.board.legal_moves)
        return legal[:1]

    def _search(self, result: chess.engine.AnalysisResult, depth: int) -> None:
        fen = self.board.fen()
        if fen in self.mate_fens:
            score = chess.engine.Mate(self.mate_fens[fen])
        else:
            score = chess.engine.Cp(self.evals[fen][0] if fen in self.evals else self.default_cp)
        pv = self._pv()
        for d in range(1, depth + 1):
            result.post({
                "depth": d,
                "seldepth": d + 2,
                "multipv": 1,
                "score": chess.engine.PovScore(score, self.board.turn),
                "nodes": d * 100,
                "pv": list(pv),
            })
        result.set_finished(chess.engine.BestMove(pv[0] if pv else None, None))

    def _stop(self, result: chess.engine.AnalysisResult) -> None:
        self.calls.append(("stop",))
        pv = self._pv()
        result.set_finished(chess.engine.BestMove(pv[0] if pv else None, None))


@pytest.fixture()
def fake_uci_protocol() -> Callable[..., FakeUciProtocol]:
    """Factory for scripted protocols. Create inside the running loop."""
    return FakeUciProtocol


@pytest.fixture()
def fake_subprocess_transport() -> Callable[[], FakeSubprocessTransport]:
    return FakeSubprocessTransport


# ---------------------------------------------------------------------------
# In-memory transport
# ---------------------------------------------------------------------------


class FakeTransport:
    """Stand-in for EngineTransport with scripted evaluations.

    evals maps FEN -> White-relative cp. times_by_depth maps depth ->
    reported calculation_time_ms. on_request(i) runs before request i is
    answered, so tests can cancel mid-flight.
    """

    fingerprint = "Hash=64|MultiPV=1"

    def __init__(
        self,
        evals: dict[str, int] | None = None,
        default_cp: int = 0,
        times_by_depth: dict[int, int] | None = None,
        error_fens: set[str] | None = None,
        timeout_fens: set[str] | None = None,
        unavailable_fens: set[str] | None = None,
        timeout_depths: set[int] | None = None,
        error_depths: set[int] | None = None,
        on_request: Callable[[int], None] | None = None,
    ) -> None:
        self.evals = evals or {}
        self.default_cp = default_cp
        self.times_by_depth = times_by_depth or {}
        self.error_fens = error_fens or set()
        self.timeout_fens = timeout_fens or set()
        self.unavailable_fens = unavailable_fens or set()
        self.timeout_depths = timeout_depths or set()
        self.error_depths = error_depths or set()
        self.on_request = on_request
        self.requests: list[tuple[str, int]] = []
        self.sync_flags: list[bool] = []
        self.stop_calls = 0
        self.initialized = False
        self.terminated = False

    async def initialize(self) -> FakeTransport:
        self.initialized = True
        return self

    async def terminate(self) -> None:
        self.terminated = True

    def stop(self) -> None:
        self.stop_calls += 1

    async def analyse(
        self,
        board: chess.Board,
        depth: int,
        timeout: float | None = None,
        sync: bool = False,
    ) -> EngineEvaluation:
        fen = board.fen()
        index = len(self.requests)
        self.requests.append((fen, depth))
        self.sync_flags.append(sync)
        if self.on_request is not None:
            self.on_request(index)
        await asyncio.sleep(0)

        if fen in self.unavailable_fens:
            raise EngineUnavailableError("Engine process exited")
        if fen in self.timeout_fens or depth in self.timeout_depths:
            raise EngineTimeoutError(f"No bestmove within {timeout}s at depth {depth}")
        if fen in self.error_fens or depth in self.error_depths:
            raise EngineError("Engine returned bestmove without an evaluation")

        legal = list(board.legal_moves)
        best = board.san(legal[0]) if legal else ""
        return EngineEvaluation(
            evaluation_cp=self.evals.get(fen, self.default_cp),
            best_move=best,
            principal_variation=best,
            depth=depth,
            calculation_time_ms=self.times_by_depth.get(depth, 10),
        )


@pytest.fixture()
def fake_transport() -> Callable[..., FakeTransport]:
    """Factory for in-memory transports."""
    return FakeTransport


# ---------------------------------------------------------------------------
# Settings and validation
# ---------------------------------------------------------------------------


@pytest.fixture()
def isolated_settings(tmp_path) -> Settings:
    """Settings with a tmp data dir and no external credentials."""
    return replace(
        Settings.from_env({}),
        data_dir=tmp_path / "data",
    )


@pytest.fixture(autouse=True)
def enable_validation():
    """Set CHESS_HURDLES_VALIDATE=1 for the test session.

    Restores the original env var value after the test.
    """
    original = os.environ.get("CHESS_HURDLES_VALIDATE")
    os.environ["CHESS_HURDLES_VALIDATE"] = "1"
    yield
    if original is None:
        os.environ.pop("CHESS_HURDLES_VALIDATE", None)
    else:
        os.environ["CHESS_HURDLES_VALIDATE"] = original
