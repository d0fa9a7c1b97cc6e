"""Hurdle store for Chess Hurdles.

A hurdle is a position where the player went wrong, saved together with
the engine's verdict so it can be practised later. Reviews are scheduled
with the SM-2 algorithm.

CLI interface outputs JSON to stdout.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

from hurdles.config import Settings
from hurdles.models import AnalysisItem

logger = logging.getLogger(__name__)

# SM-2 interval progression in hours
_INTERVAL_HOURS = [4, 24, 72, 168, 336, 720]

_MIN_EASE_FACTOR = 1.3


class HurdleStore:
    """Persists hurdles and schedules their review with SM-2."""

    def __init__(self, path: str | Path) -> None:
        """Load hurdles from a JSON file.

        If the file is corrupted, backs it up as .bak and starts fresh.

        Args:
            path: Path to the JSON file storing hurdles.
        """
        self._path = Path(path)
        self._hurdles: list[dict] = self._load()

    def __len__(self) -> int:
        return len(self._hurdles)

    def _load(self) -> list[dict]:
        if not self._path.exists():
            return []

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise ValueError("Hurdles file must contain a JSON array")
            return data
        except (json.JSONDecodeError, ValueError) as exc:
            backup_path = self._path.with_suffix(".bak")
            shutil.copy2(self._path, backup_path)
            logger.warning("Corrupt hurdles file %s (%s); backed up to %s",
                           self._path, exc, backup_path)
            return []

    def _save(self) -> None:
        """Save hurdles to JSON file with atomic write."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps(self._hurdles, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        os.replace(tmp_path, self._path)

    def add_hurdle(
        self,
        fen: str,
        side: str,
        move_number: int,
        played_move: str,
        best_move: str,
        evaluation: int | None,
        centipawn_loss: int,
        wpl: float,
        classification: str,
        depth: int,
        mate_in: int | None = None,
        calculation_time_ms: int | None = None,
        ai_description: str | None = None,
    ) -> dict:
        """Add a new hurdle.

        Args:
            fen: Position before the move.
            side: "white" or "black", the side that moved.
            move_number: Full move number of the move.
            played_move: Move the player made (SAN).
            best_move: Engine's preferred move, move-numbered SAN.
            evaluation: White-relative evaluation after the move.
            centipawn_loss: Mover-relative centipawn loss.
            wpl: Win-probability loss in [0, 1].
            classification: inaccuracy, mistake or blunder.
            depth: Search depth the verdict came from.
            mate_in: Signed mate distance after the move, if any.
            calculation_time_ms: Engine time for the position.
            ai_description: Optional explanation text.

        Returns:
            The newly created hurdle dict.
        """
        now = datetime.now(timezone.utc)
        hurdle: dict = {
            "id": str(uuid.uuid4()),
            "fen": fen,
            "side": side,
            "move_number": move_number,
            "played_move": played_move,
            "best_move": best_move,
            "evaluation": evaluation,
            "centipawn_loss": centipawn_loss,
            "wpl": round(wpl, 4),
            "classification": classification,
            "depth": depth,
            "mate_in": mate_in,
            "calculation_time_ms": calculation_time_ms,
            "ai_description": ai_description,
            "created_at": now.isoformat(),
            "next_review": (now + timedelta(hours=_INTERVAL_HOURS[0])).isoformat(),
            "interval_hours": _INTERVAL_HOURS[0],
            "ease_factor": 2.5,
            "repetitions": 0,
            "quality_history": [],
        }
        self._hurdles.append(hurdle)
        self._save()
        return hurdle

    def add_from_item(
        self,
        item: AnalysisItem,
        fen: str,
        depth: int,
        ai_description: str | None = None,
    ) -> dict:
        """Add a hurdle for a classified move.

        Raises:
            ValueError: If the item has no loss figures (engine gave nothing).
        """
        if item.centipawn_change is None or item.wpl is None:
            raise ValueError(f"Move {item.move_label}{item.move} has no evaluation")
        return self.add_hurdle(
            fen=fen,
            side="white" if item.is_white_move else "black",
            move_number=item.move_number,
            played_move=item.move,
            best_move=item.best_move,
            evaluation=item.post_move_eval,
            centipawn_loss=item.centipawn_change,
            wpl=item.wpl,
            classification=item.classification,
            depth=depth,
            mate_in=item.mate_distance,
            calculation_time_ms=item.calculation_time_ms,
            ai_description=ai_description,
        )

    def get_due_hurdles(self) -> list[dict]:
        """Return all hurdles whose next_review is at or before now.

        Returns:
            List of due hurdle dicts, sorted by next_review ascending.
        """
        now = datetime.now(timezone.utc)
        due = [
            h for h in self._hurdles
            if datetime.fromisoformat(h["next_review"]) <= now
        ]
        due.sort(key=lambda h: h["next_review"])
        return due

    def review_hurdle(self, hurdle_id: str, quality: int) -> dict:
        """Record a review and reschedule the hurdle.

        Args:
            hurdle_id: UUID of the hurdle.
            quality: Review quality score (0-5).

        Returns:
            The updated hurdle dict.

        Raises:
            ValueError: If hurdle_id is not found or quality is out of range.
        """
        if not isinstance(quality, int) or quality < 0 or quality > 5:
            raise ValueError(
                f"Quality must be an integer between 0 and 5, got {quality}"
            )

        hurdle = self._find(hurdle_id)
        updated = self._sm2_update(hurdle, quality)
        self._hurdles = [
            updated if h["id"] == hurdle_id else h for h in self._hurdles
        ]
        self._save()
        return updated

    def get_stats(self) -> dict:
        """Return summary statistics.

        Returns:
            Dict with keys: total, due, avg_ease, by_classification.
        """
        now = datetime.now(timezone.utc)
        due_count = 0
        ease_sum = 0.0
        by_classification: dict[str, int] = {}

        for hurdle in self._hurdles:
            if datetime.fromisoformat(hurdle["next_review"]) <= now:
                due_count += 1
            ease_sum += hurdle["ease_factor"]
            cls = hurdle["classification"]
            by_classification[cls] = by_classification.get(cls, 0) + 1

        total = len(self._hurdles)
        return {
            "total": total,
            "due": due_count,
            "avg_ease": round(ease_sum / total, 3) if total > 0 else 0.0,
            "by_classification": by_classification,
        }

    def _find(self, hurdle_id: str) -> dict:
        for hurdle in self._hurdles:
            if hurdle["id"] == hurdle_id:
                return hurdle
        raise ValueError(f"Hurdle not found: {hurdle_id}")

    def _sm2_update(self, hurdle: dict, quality: int) -> dict:
        """Apply SM-2 to compute new scheduling. Returns a new dict."""
        now = datetime.now(timezone.utc)
        updated = {**hurdle}
        updated["quality_history"] = [*hurdle["quality_history"], quality]

        ef = hurdle["ease_factor"]
        ef = ef + (0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02))
        ef = max(_MIN_EASE_FACTOR, ef)
        updated["ease_factor"] = round(ef, 4)

        if quality < 3:
            # Failed: back to the first interval
            updated["interval_hours"] = _INTERVAL_HOURS[0]
            updated["repetitions"] = 0
        else:
            reps = hurdle["repetitions"]
            if reps < len(_INTERVAL_HOURS):
                new_interval = _INTERVAL_HOURS[reps]
            else:
                new_interval = round(hurdle["interval_hours"] * ef)
            updated["interval_hours"] = new_interval
            updated["repetitions"] = reps + 1

        updated["next_review"] = (
            now + timedelta(hours=updated["interval_hours"])
        ).isoformat()
        return updated


# ---------------------------------------------------------------------------
# CLI interface
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point for hurdle_store.py."""
    parser = argparse.ArgumentParser(
        description="Hurdle store - spaced repetition for analysed mistakes"
    )
    parser.add_argument(
        "--path", type=str, default=None, help="Hurdles JSON file (default: data dir)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("due", help="List due hurdles")

    review_parser = subparsers.add_parser("review", help="Review a hurdle")
    review_parser.add_argument("hurdle_id", type=str, help="Hurdle UUID")
    review_parser.add_argument("quality", type=int, help="Quality score 0-5")

    subparsers.add_parser("stats", help="Show hurdle statistics")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    store = HurdleStore(args.path or Settings.from_env().hurdles_path)

    if args.command == "due":
        result: object = store.get_due_hurdles()
    elif args.command == "review":
        try:
            result = store.review_hurdle(args.hurdle_id, args.quality)
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
    else:
        result = store.get_stats()
    print(json.dumps(result, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
