"""Response schemas and minification for MCP tool responses.

Minifies MCP tool return values to reduce LLM context token waste.
The hurdle store on disk is NOT affected; only MCP return values are.

Reviewed moves are compacted to a PGN-style string (12.Nf3 Nf6 13.e4 ...)
plus a list of the moves that actually need attention.
"""

from __future__ import annotations

import os


# ---------------------------------------------------------------------------
# Minification functions
# ---------------------------------------------------------------------------


def minify_review(review: dict) -> dict:
    """Minify a GameReview dict for MCP response.

    Keeps only classified or book-flagged moves in detail; the full move
    sequence is compacted to a PGN string. The report text is dropped
    since the structured fields carry the same information.

    Args:
        review: Full review dict (as produced by GameReview.to_dict).

    Returns:
        Minified dict with reduced token footprint.
    """
    items = review.get("items", [])
    descriptions = review.get("descriptions", {})
    fens = review.get("fens", [])

    hurdles = []
    for index, item in enumerate(items):
        if item.get("classification", "none") == "none":
            continue
        entry = {
            "move": _label(item) + item["move"],
            "best_move": item.get("best_move", ""),
            "classification": item["classification"],
            "cp_loss": item.get("centipawn_change"),
            "wpl": round(item["wpl"], 3) if item.get("wpl") is not None else None,
            "eval_after": item.get("post_move_eval"),
            "will_use_ai": item.get("will_use_ai", False),
        }
        if index < len(fens):
            entry["fen"] = fens[index]
        if item.get("mate_distance") is not None:
            entry["mate_in"] = item["mate_distance"]
        if str(index) in descriptions:
            entry["explanation"] = descriptions[str(index)]
        hurdles.append(entry)

    failed = sum(1 for item in items if item.get("pre_move_eval") is None)

    return {
        "depth": review.get("depth"),
        "state": review.get("state"),
        "moves": _items_to_pgn_string(items),
        "book_moves": len(review.get("book_move_indices", [])),
        "failed_positions": failed,
        "hurdles": hurdles,
        "saved_hurdles": len(review.get("hurdle_ids", [])),
    }


def minify_hurdle(hurdle: dict) -> dict:
    """Minify a stored hurdle dict for MCP response.

    Drops review history and timestamps except next_review.

    Args:
        hurdle: Hurdle dict from HurdleStore.

    Returns:
        Minified dict.
    """
    result = {}
    for key in (
        "id", "fen", "side", "move_number", "played_move", "best_move",
        "classification", "centipawn_loss", "wpl", "mate_in",
        "ai_description", "next_review",
    ):
        if key in hurdle:
            result[key] = hurdle[key]
    return result


def minify_calibration(result: dict) -> dict:
    """Minify a calibration result: keep the depth and trial timings only.

    Args:
        result: Dict with depth, trials, target_ms and fallback.

    Returns:
        Minified dict; trials become a {depth: elapsed_ms} mapping.
    """
    trials = result.get("trials", [])
    return {
        "depth": result.get("depth"),
        "target_ms": result.get("target_ms"),
        "fallback": result.get("fallback", False),
        "trials": {str(p["depth"]): p["elapsed_ms"] for p in trials},
    }


# ---------------------------------------------------------------------------
# Helper: reviewed items to PGN string
# ---------------------------------------------------------------------------


def _label(item: dict) -> str:
    suffix = "." if item.get("is_white_move", True) else "..."
    return f"{item.get('move_number', 1)}{suffix}"


def _items_to_pgn_string(items: list[dict]) -> str:
    """Convert reviewed items to a PGN move string.

    E.g. items for e4, e5, Nf3 -> '1.e4 e5 2.Nf3'. A batch starting with
    Black's move opens with '12...Nf6'.

    Args:
        items: Review item dicts in game order.

    Returns:
        PGN-formatted move string.
    """
    parts = []
    for i, item in enumerate(items):
        if item.get("is_white_move", True) or i == 0:
            parts.append(_label(item) + item["move"])
        else:
            parts.append(item["move"])
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Validation schemas (dict-based)
# ---------------------------------------------------------------------------

REVIEW_SCHEMA = {
    "depth": int,
    "state": str,
    "moves": str,
    "book_moves": int,
    "failed_positions": int,
    "hurdles": list,
    "saved_hurdles": int,
}

HURDLE_SCHEMA = {
    "id": str,
    "fen": str,
    "side": str,
    "move_number": int,
    "played_move": str,
    "best_move": str,
    "classification": str,
    "centipawn_loss": int,
    "wpl": (int, float),
    "next_review": str,
}

CALIBRATION_SCHEMA = {
    "depth": int,
    "target_ms": int,
    "fallback": bool,
    "trials": dict,
}

STATS_SCHEMA = {
    "total": int,
    "due": int,
    "avg_ease": (int, float),
    "by_classification": dict,
}

ERROR_SCHEMA = {
    "error": str,
}


def validate_response(response: dict, schema: dict) -> list[str]:
    """Validate a response dict against a schema.

    Only runs when CHESS_HURDLES_VALIDATE=1 env var is set.

    Args:
        response: Response dict to validate.
        schema: Dict mapping key names to expected types (or tuple of types).

    Returns:
        List of validation error strings (empty = valid).
    """
    if os.environ.get("CHESS_HURDLES_VALIDATE") != "1":
        return []

    errors = []

    if not isinstance(response, dict):
        errors.append(f"Response is not a dict: {type(response).__name__}")
        return errors

    for key, expected_types in schema.items():
        if key not in response:
            errors.append(f"Missing key: {key}")
            continue

        value = response[key]
        if isinstance(expected_types, tuple):
            if not isinstance(value, expected_types):
                type_names = ", ".join(t.__name__ for t in expected_types)
                errors.append(
                    f"Key '{key}': expected ({type_names}), "
                    f"got {type(value).__name__}"
                )
        else:
            if not isinstance(value, expected_types):
                errors.append(
                    f"Key '{key}': expected {expected_types.__name__}, "
                    f"got {type(value).__name__}"
                )

    return errors
