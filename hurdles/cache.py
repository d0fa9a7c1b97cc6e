"""Evaluation cache for opening positions.

Engine results for positions inside the opening window are kept keyed by
engine configuration and FEN, so re-reviewing games that share an opening
skips the engine. Later positions are never cached.

The cache is an in-memory dict mirrored to a JSON file. Writes are atomic
(temp file + os.replace); a corrupt file is backed up as .bak and the
cache starts empty.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import asdict
from pathlib import Path

from hurdles.config import ANALYSIS_CACHE_FULL_MOVES_LIMIT
from hurdles.models import CacheEntry

logger = logging.getLogger(__name__)

_KEY_PREFIX = "analysis"


def make_key(fingerprint: str, fen: str) -> str:
    """Cache key for a position under an engine configuration."""
    return f"{_KEY_PREFIX}::{fingerprint}::{fen}"


def fullmove_from_fen(fen: str) -> int:
    """Sixth FEN field, or 1 when the FEN omits or garbles it."""
    fields = fen.split()
    if len(fields) < 6:
        return 1
    try:
        return int(fields[5])
    except ValueError:
        return 1


def in_opening_window(
    fullmove_number: int, limit: int = ANALYSIS_CACHE_FULL_MOVES_LIMIT
) -> bool:
    return fullmove_number <= limit


class EvaluationCache:
    """Keyed store of CacheEntry values restricted to the opening window."""

    def __init__(
        self,
        path: str | Path | None = None,
        full_moves_limit: int = ANALYSIS_CACHE_FULL_MOVES_LIMIT,
    ) -> None:
        """Create the cache and load any persisted entries.

        Args:
            path: JSON file to mirror entries to. None keeps the cache in
                memory only.
            full_moves_limit: Last full move number that is cached.
        """
        self._path = Path(path) if path is not None else None
        self.full_moves_limit = full_moves_limit
        self._entries: dict[str, CacheEntry] = {}
        self.load()

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def _window_ok(self, fen: str, fullmove_number: int | None) -> bool:
        number = fullmove_from_fen(fen) if fullmove_number is None else fullmove_number
        return in_opening_window(number, self.full_moves_limit)

    def lookup(
        self, fen: str, fingerprint: str, fullmove_number: int | None = None
    ) -> CacheEntry | None:
        """Return the cached entry for fen, or None.

        Positions outside the opening window always miss.
        """
        if not self._window_ok(fen, fullmove_number):
            return None
        return self._entries.get(make_key(fingerprint, fen))

    def lookup_for_depth(
        self,
        fen: str,
        fingerprint: str,
        depth: int,
        fullmove_number: int | None = None,
    ) -> CacheEntry | None:
        """Return the cached entry only if it was searched at least to depth."""
        entry = self.lookup(fen, fingerprint, fullmove_number)
        if entry is None or entry.depth < depth:
            return None
        return entry

    def store(
        self,
        fen: str,
        fingerprint: str,
        entry: CacheEntry,
        fullmove_number: int | None = None,
    ) -> bool:
        """Write entry for fen, replacing any previous one.

        Returns:
            True if written, False if the position is outside the window.
        """
        if not self._window_ok(fen, fullmove_number):
            return False
        self._entries[make_key(fingerprint, fen)] = entry
        self._save()
        return True

    def clear(self) -> int:
        """Remove every entry.

        Returns:
            Number of entries removed.
        """
        removed = len(self._entries)
        self._entries = {}
        self._save()
        logger.info("Cleared %d cached evaluations", removed)
        return removed

    def load(self) -> int:
        """(Re)load entries from disk, replacing the in-memory contents.

        Returns:
            Number of entries loaded.
        """
        self._entries = {}
        if self._path is None or not self._path.exists():
            return 0

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("Cache file must contain a JSON object")
            entries = {
                key: CacheEntry(
                    centipawns=int(value["centipawns"]),
                    depth=int(value["depth"]),
                    best_move=str(value["best_move"]),
                    timestamp=int(value["timestamp"]),
                )
                for key, value in data.items()
            }
        except (json.JSONDecodeError, ValueError, KeyError, TypeError) as exc:
            backup_path = self._path.with_suffix(".bak")
            shutil.copy2(self._path, backup_path)
            logger.warning(
                "Corrupt cache file %s (%s); backed up to %s", self._path, exc, backup_path
            )
            return 0

        self._entries = entries
        logger.debug("Loaded %d cached evaluations from %s", len(entries), self._path)
        return len(entries)

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps(
                {key: asdict(entry) for key, entry in self._entries.items()},
                indent=2,
                ensure_ascii=False,
            ),
            encoding="utf-8",
        )
        os.replace(tmp_path, self._path)
