"""Pytest tests for EngineTransport.

Tests patch chess.engine.popen_uci with a scripted protocol so they don't
require the actual binary. Covers: binary discovery, handshake and options,
the Threads capability check, analysis requests, score normalization,
timeouts, superseded searches and shutdown.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import chess
import chess.engine
import pytest

from hurdles.engine import EngineTransport, _find_stockfish
from hurdles.errors import EngineError, EngineTimeoutError, EngineUnavailableError
from hurdles.models import BestMove, DepthInfo


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _start(protocol, transport=None, cpus: int = 1, **kwargs) -> EngineTransport:
    """Initialize an EngineTransport wired to a scripted protocol."""
    pair = (transport or _Closable(), protocol)
    with patch("chess.engine.popen_uci", new=AsyncMock(return_value=pair)), \
         patch("hurdles.engine.os.cpu_count", return_value=cpus):
        return await EngineTransport("/fake/stockfish", **kwargs).initialize()


class _Closable:
    closed = False

    def close(self) -> None:
        self.closed = True


def _after(*uci_moves: str) -> chess.Board:
    board = chess.Board()
    for move in uci_moves:
        board.push_uci(move)
    return board


def _call_names(protocol) -> list[str]:
    return [call[0] for call in protocol.calls]


# ---------------------------------------------------------------------------
# Binary discovery
# ---------------------------------------------------------------------------


class TestFindStockfish:

    def test_stockfish_not_found(self):
        with patch("hurdles.engine.Path.is_file", return_value=False), \
             patch("hurdles.engine.shutil.which", return_value=None):
            with pytest.raises(FileNotFoundError, match="Stockfish not found"):
                _find_stockfish()

    def test_stockfish_found_via_which(self):
        with patch("hurdles.engine.Path.is_file", return_value=False), \
             patch("hurdles.engine.shutil.which", return_value="/usr/local/bin/stockfish"):
            assert _find_stockfish() == "/usr/local/bin/stockfish"

    def test_stockfish_found_via_path(self):
        with patch("hurdles.engine.Path.is_file", return_value=True), \
             patch("hurdles.engine.shutil.which", return_value=None):
            assert _find_stockfish() == "/opt/homebrew/bin/stockfish"


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------


class TestInitialization:

    def test_handshake_and_default_options(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol()
            transport = await _start(protocol)
            return protocol, transport

        protocol, transport = asyncio.run(_run())
        # MultiPV is managed by python-chess and goes with each search
        assert protocol.calls == [("configure", {"Hash": 64}), ("ping",)]
        assert transport.applied_options == {"Hash": 64, "MultiPV": 1}
        assert transport.engine_name == "FakeFish 1.0"
        assert transport.is_running

    def test_popen_called_with_path(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol()
            popen = AsyncMock(return_value=(_Closable(), protocol))
            with patch("chess.engine.popen_uci", new=popen), \
                 patch("hurdles.engine.os.cpu_count", return_value=1):
                await EngineTransport("/fake/stockfish").initialize()
            return popen

        popen = asyncio.run(_run())
        popen.assert_awaited_once_with("/fake/stockfish")

    def test_fingerprint(self):
        transport = EngineTransport("/fake/stockfish")
        assert transport.fingerprint == "Hash=64|MultiPV=1"
        custom = EngineTransport("/fake/stockfish", options={"Hash": 128, "MultiPV": 1})
        assert custom.fingerprint == "Hash=128|MultiPV=1"

    def test_threads_enabled_on_multicore_host(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol()
            transport = await _start(protocol, cpus=8)
            return protocol, transport

        protocol, transport = asyncio.run(_run())
        assert protocol.configured["Threads"] == 7
        assert transport.applied_options["Threads"] == 7

    def test_threads_capped_by_engine_max(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(threads_max=2)
            await _start(protocol, cpus=16)
            return protocol

        assert asyncio.run(_run()).configured["Threads"] == 2

    def test_threads_skipped_on_single_cpu(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol()
            transport = await _start(protocol, cpus=1)
            return protocol, transport

        protocol, transport = asyncio.run(_run())
        assert "Threads" not in protocol.configured
        assert "Threads" not in transport.applied_options

    def test_threads_skipped_without_engine_option(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(threads_max=None)
            await _start(protocol, cpus=8)
            return protocol

        assert "Threads" not in asyncio.run(_run()).configured

    def test_unadvertised_option_skipped(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol()
            await _start(protocol, options={"Hash": 32, "MultiPV": 1, "Contempt": 10})
            return protocol

        assert asyncio.run(_run()).configured == {"Hash": 32}

    def test_spawn_failure_is_unavailable(self):
        async def _run():
            with patch("chess.engine.popen_uci",
                       new=AsyncMock(side_effect=FileNotFoundError("no such file"))):
                await EngineTransport("/missing/stockfish").initialize()

        with pytest.raises(EngineUnavailableError, match="Could not start engine"):
            asyncio.run(_run())

    def test_missing_binary_is_unavailable(self):
        async def _run():
            with patch("hurdles.engine.Path.is_file", return_value=False), \
                 patch("hurdles.engine.shutil.which", return_value=None):
                await EngineTransport().initialize()

        with pytest.raises(EngineUnavailableError, match="Stockfish not found"):
            asyncio.run(_run())

    def test_handshake_timeout_is_unavailable(self):
        async def _never(*args, **kwargs):
            await asyncio.sleep(10)

        async def _run():
            with patch("chess.engine.popen_uci", new=_never):
                await EngineTransport("/fake/stockfish", init_timeout=0.05).initialize()

        with pytest.raises(EngineUnavailableError, match="timed out"):
            asyncio.run(_run())

    def test_setup_failure_shuts_engine_down(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol()
            protocol.configure = AsyncMock(side_effect=chess.engine.EngineError("bad value"))
            closable = _Closable()
            with pytest.raises(EngineUnavailableError, match="setup failed"):
                await _start(protocol, transport=closable)
            return protocol, closable

        protocol, closable = asyncio.run(_run())
        assert ("quit",) in protocol.calls
        assert closable.closed


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class TestAnalyse:

    def test_white_to_move(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(evals={chess.STARTING_FEN: (35, ["e2e4", "e7e5", "g1f3"])})
            transport = await _start(protocol)
            return await transport.analyse(chess.Board(), 8)

        evaluation = asyncio.run(_run())
        assert evaluation.evaluation_cp == 35
        assert evaluation.best_move == "1.e4"
        assert evaluation.principal_variation == "1.e4 e5 2.Nf3"
        assert evaluation.depth == 8

    def test_black_to_move_is_flipped(self, fake_uci_protocol):
        board = _after("e2e4")

        async def _run():
            protocol = fake_uci_protocol(evals={board.fen(): (50, ["e7e5", "g1f3"])})
            transport = await _start(protocol)
            return await transport.analyse(board, 6)

        evaluation = asyncio.run(_run())
        assert evaluation.evaluation_cp == -50
        assert evaluation.best_move == "1...e5"
        assert evaluation.principal_variation == "1...e5 2.Nf3"

    def test_mate_score_encoded(self, fake_uci_protocol):
        board = chess.Board("6k1/5ppp/8/8/8/8/5PPP/3R2K1 w - - 0 1")

        async def _run():
            protocol = fake_uci_protocol(
                evals={board.fen(): (0, ["d1d8"])}, mate_fens={board.fen(): 1}
            )
            transport = await _start(protocol)
            return await transport.analyse(board, 4)

        evaluation = asyncio.run(_run())
        assert evaluation.evaluation_cp == 5001
        assert evaluation.best_move == "1.Rd8#"

    def test_mated_side_to_move_black(self, fake_uci_protocol):
        board = _after("f2f3", "e7e5", "g2g4")

        async def _run():
            protocol = fake_uci_protocol(
                evals={board.fen(): (0, ["d8h4"])}, mate_fens={board.fen(): 1}
            )
            transport = await _start(protocol)
            return await transport.analyse(board, 4)

        # Black mates in one: negative from White's side
        assert asyncio.run(_run()).evaluation_cp == -5001

    def test_request_goes_through_analysis(self, fake_uci_protocol):
        board = chess.Board()

        async def _run():
            protocol = fake_uci_protocol()
            transport = await _start(protocol)
            protocol.calls.clear()
            await transport.analyse(board, 5)
            return protocol

        protocol = asyncio.run(_run())
        assert protocol.calls == [("analysis", board.fen(), 5, 1)]

    def test_sync_waits_for_ready_before_search(self, fake_uci_protocol):
        board = chess.Board()

        async def _run():
            protocol = fake_uci_protocol()
            transport = await _start(protocol)
            protocol.calls.clear()
            await transport.analyse(board, 3, sync=True)
            return protocol

        protocol = asyncio.run(_run())
        assert protocol.calls == [("ping",), ("analysis", board.fen(), 3, 1)]

    def test_calculation_time_from_clock(self, fake_uci_protocol):
        ticks = iter([100.0, 100.25])

        async def _run():
            protocol = fake_uci_protocol()
            transport = await _start(protocol, clock=lambda: next(ticks))
            return await transport.analyse(chess.Board(), 2)

        assert asyncio.run(_run()).calculation_time_ms == 250

    def test_shallower_bestmove_uses_deepest_info(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True)
            transport = await _start(protocol)
            await transport.request_analysis(chess.Board(), 10)
            protocol.post(2, 5, ["d2d4"])
            protocol.post(3, 12, ["e2e4"])
            protocol.finish("e2e4")
            return await transport.wait_for_result(timeout=1)

        evaluation = asyncio.run(_run())
        assert evaluation.depth == 3
        assert evaluation.evaluation_cp == 12

    def test_first_update_at_target_depth_wins(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True)
            transport = await _start(protocol)
            await transport.request_analysis(chess.Board(), 8)
            protocol.post(8, 30, ["e2e4"])
            protocol.post(9, 44, ["d2d4"])
            protocol.finish("d2d4")
            return await transport.wait_for_result(timeout=1)

        evaluation = asyncio.run(_run())
        assert evaluation.depth == 8
        assert evaluation.evaluation_cp == 30
        assert evaluation.best_move == "1.e4"

    def test_bound_and_secondary_lines_ignored(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True)
            transport = await _start(protocol)
            await transport.request_analysis(chess.Board(), 8)
            protocol.post(8, 90, ["d2d4"], lowerbound=True)
            protocol.post(8, -15, ["a2a3"], multipv=2)
            protocol.post(8, 30, ["e2e4"], multipv=1)
            protocol.finish("e2e4")
            return await transport.wait_for_result(timeout=1)

        assert asyncio.run(_run()).evaluation_cp == 30

    def test_events_stream(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True)
            transport = await _start(protocol)
            await transport.request_analysis(chess.Board(), 2)
            protocol.current.post({"currmove": chess.Move.from_uci("e2e4")})
            protocol.post(1, 10, ["e2e4"])
            protocol.finish("e2e4")
            return [event async for event in transport.events()]

        events = asyncio.run(_run())
        assert events == [
            DepthInfo(depth=1, score=10, is_mate=False, pv=("e2e4",)),
            BestMove(move="e2e4"),
        ]

    def test_bestmove_without_info_is_error(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True)
            transport = await _start(protocol)
            await transport.request_analysis(chess.Board(), 5)
            transport.stop()
            await transport.wait_for_result(timeout=1)

        with pytest.raises(EngineError, match="without an evaluation"):
            asyncio.run(_run())

    def test_wait_without_request_is_error(self, fake_uci_protocol):
        async def _run():
            transport = await _start(fake_uci_protocol())
            await transport.wait_for_result(timeout=1)

        with pytest.raises(EngineError, match="No analysis"):
            asyncio.run(_run())

    def test_process_exit_is_unavailable(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True)
            transport = await _start(protocol)
            await transport.request_analysis(chess.Board(), 5)
            protocol.die()
            await transport.wait_for_result(timeout=1)

        with pytest.raises(EngineUnavailableError, match="exited"):
            asyncio.run(_run())

    def test_request_after_exit_is_unavailable(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol()
            transport = await _start(protocol)
            protocol.die()
            await transport.analyse(chess.Board(), 5)

        with pytest.raises(EngineUnavailableError, match="not running"):
            asyncio.run(_run())


class TestTimeoutsAndSupersededSearches:

    def test_timeout_stops_search(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True)
            transport = await _start(protocol)
            with pytest.raises(EngineTimeoutError):
                await transport.analyse(chess.Board(), 20, timeout=0.05)
            return protocol

        protocol = asyncio.run(_run())
        assert protocol.calls[-1] == ("stop",)

    def test_next_request_after_timeout_reads_its_own_search(self, fake_uci_protocol):
        target = _after("d2d4")

        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True, evals={target.fen(): (-25, ["g8f6"])})
            transport = await _start(protocol)
            with pytest.raises(EngineTimeoutError):
                await transport.analyse(chess.Board(), 20, timeout=0.05)
            protocol.hang_on_go = False
            return await transport.analyse(target, 4, timeout=1)

        evaluation = asyncio.run(_run())
        assert evaluation.evaluation_cp == 25
        assert evaluation.best_move == "1...Nf6"

    def test_new_request_supersedes_running_search(self, fake_uci_protocol):
        target = _after("e2e4")

        async def _run():
            protocol = fake_uci_protocol(hang_on_go=True, evals={target.fen(): (10, ["c7c5"])})
            transport = await _start(protocol)
            await transport.request_analysis(chess.Board(), 30)
            protocol.hang_on_go = False
            evaluation = await transport.analyse(target, 3, timeout=1)
            return protocol, evaluation

        protocol, evaluation = asyncio.run(_run())
        assert _call_names(protocol)[-3:] == ["analysis", "stop", "analysis"]
        assert evaluation.best_move == "1...c5"
        assert evaluation.evaluation_cp == -10


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:

    def test_terminate_is_idempotent(self, fake_uci_protocol, fake_subprocess_transport):
        async def _run():
            protocol = fake_uci_protocol()
            closable = fake_subprocess_transport()
            transport = await _start(protocol, transport=closable)
            await transport.terminate()
            await transport.terminate()
            return protocol, closable, transport

        protocol, closable, transport = asyncio.run(_run())
        assert _call_names(protocol).count("quit") == 1
        assert closable.closed
        assert not transport.is_running

    def test_hung_quit_still_closes(self, fake_uci_protocol, fake_subprocess_transport):
        async def _hang():
            await asyncio.sleep(10)

        async def _run():
            protocol = fake_uci_protocol()
            protocol.quit = _hang
            closable = fake_subprocess_transport()
            transport = await _start(protocol, transport=closable)
            with patch("hurdles.engine.ENGINE_QUIT_TIMEOUT_S", 0.01):
                await transport.terminate()
            return closable

        assert asyncio.run(_run()).closed

    def test_terminate_before_initialize(self):
        asyncio.run(EngineTransport("/fake/stockfish").terminate())

    def test_stop_is_best_effort(self):
        EngineTransport("/fake/stockfish").stop()

    def test_async_context_manager(self, fake_uci_protocol):
        async def _run():
            protocol = fake_uci_protocol()
            pair = (_Closable(), protocol)
            with patch("chess.engine.popen_uci", new=AsyncMock(return_value=pair)), \
                 patch("hurdles.engine.os.cpu_count", return_value=1):
                async with EngineTransport("/fake/stockfish") as transport:
                    evaluation = await transport.analyse(chess.Board(), 2)
            return protocol, evaluation

        protocol, evaluation = asyncio.run(_run())
        assert evaluation.depth == 2
        assert ("quit",) in protocol.calls


# ---------------------------------------------------------------------------
# Real Stockfish
# ---------------------------------------------------------------------------


@pytest.mark.e2e
class TestRealStockfish:

    def test_start_position_is_roughly_equal(self):
        async def _run():
            async with EngineTransport() as transport:
                return await transport.analyse(chess.Board(), 10, timeout=30)

        evaluation = asyncio.run(_run())
        assert abs(evaluation.evaluation_cp) < 100
        assert evaluation.best_move.startswith("1.")
