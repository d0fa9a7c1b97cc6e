"""Opening book detection via the Lichess masters explorer.

Answers one question for the classifier's caller: was the move played
from this position seen in master games? Lookups fail open, so any
network trouble just means "not a book move".

Usage:
    from hurdles.opening_book import OpeningBook
    book = OpeningBook()
    book.is_book_move(fen, "e2e4")
"""

import logging

import requests

from hurdles.config import BOOK_CHECK_FULL_MOVES, BOOK_LOOKUP_TIMEOUT_S, LICHESS_MASTERS_URL

logger = logging.getLogger(__name__)


class OpeningBook:
    """Memoized masters-explorer client.

    Each FEN is fetched at most once per instance, including failed
    lookups.
    """

    def __init__(self, url=LICHESS_MASTERS_URL, timeout=BOOK_LOOKUP_TIMEOUT_S,
                 token=None, session=None):
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"
        self._memo = {}

    def candidate_moves(self, fen):
        """Moves played from fen in master games.

        Returns:
            List of move dicts (uci, san, white, draws, black), or None
            if the lookup failed.
        """
        if fen in self._memo:
            return self._memo[fen]

        moves = None
        try:
            resp = self._session.get(self._url, params={"fen": fen}, timeout=self._timeout)
            if resp.status_code == 200:
                data = resp.json()
                if isinstance(data, dict) and isinstance(data.get("moves"), list):
                    moves = data["moves"]
                else:
                    logger.warning("Unexpected book response for %s", fen)
            else:
                logger.warning("Book lookup returned HTTP %s for %s", resp.status_code, fen)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Book lookup failed for %s: %s", fen, exc)

        self._memo[fen] = moves
        return moves

    def is_book_move(self, fen, move):
        """Whether move (UCI or SAN) was played from fen in master games."""
        moves = self.candidate_moves(fen)
        if not moves:
            return False
        return any(move in (m.get("uci"), m.get("san")) for m in moves if isinstance(m, dict))

    def book_move_indices(self, positions, moves, max_full_moves=BOOK_CHECK_FULL_MOVES):
        """Indices of moves that are book moves from their position.

        Args:
            positions: Boards before each move.
            moves: Played moves (UCI or SAN), aligned with positions.
            max_full_moves: Only positions up to this full move are checked.

        Returns:
            Set of batch indices.
        """
        indices = set()
        for i, (board, move) in enumerate(zip(positions, moves)):
            if board.fullmove_number > max_full_moves:
                continue
            if self.is_book_move(board.fen(), move):
                indices.add(i)
        return indices
