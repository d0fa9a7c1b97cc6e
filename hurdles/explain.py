"""Natural-language explanations for the worst moves of a game.

Wraps a Gemini client. Explanations are optional garnish on top of the
engine analysis: a missing key or a failed call yields None and the
review carries on without text.
"""

from __future__ import annotations

import logging
import textwrap

from google import genai

from hurdles.config import DEFAULT_GEMINI_MODEL
from hurdles.models import AnalysisItem

logger = logging.getLogger(__name__)

_PROMPT_TEMPLATE = textwrap.dedent(
    """\
    You are an expert chess coach. Analyze this specific move in a game.
    Position FEN: {fen}
    Player Move: {move}
    Engine Best Move: {best_move}
    Centipawn Loss: {cp_loss}
    Principal Variation (Best Line): {pv}

    Explain briefly (max 2 sentences) why the player's move was a mistake compared to the best move.
    Focus on the strategic, positional or tactical consequences, or the deviation from a workable plan.
    Do not mention centipawn values directly.
    Be constructive but clear.
    """
)


class MoveExplainer:
    """Asks Gemini why a played move fell short of the engine's choice."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_GEMINI_MODEL,
        client: genai.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self._api_key)

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def build_prompt(self, item: AnalysisItem, fen: str) -> str:
        return _PROMPT_TEMPLATE.format(
            fen=fen,
            move=item.move,
            best_move=item.best_move or "unknown",
            cp_loss=item.centipawn_change if item.centipawn_change is not None else "unknown",
            pv=item.principal_variation or "n/a",
        )

    def describe(self, item: AnalysisItem, fen: str) -> str | None:
        """Explanation text for item, or None if unavailable.

        Args:
            item: Classified move to explain.
            fen: Position before the move was played.
        """
        if not self.available:
            logger.info("No Gemini API key configured; skipping explanation for %s", item.move)
            return None

        try:
            response = self._get_client().models.generate_content(
                model=self._model,
                contents=[self.build_prompt(item, fen)],
            )
        except Exception as exc:
            logger.warning("Explanation request failed for %s: %s", item.move, exc)
            return None

        text = getattr(response, "text", None)
        if not text:
            logger.warning("Empty explanation returned for %s", item.move)
            return None
        return text.strip()
