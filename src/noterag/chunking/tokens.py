"""Token estimation strategies used for chunk and context budgets."""

from __future__ import annotations

import logging
import math
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class TokenEstimator(Protocol):
    """Protocol describing token counting behaviour."""

    def estimate(self, text: str) -> int:
        """Return the (estimated) number of tokens in ``text``."""


class CharRatioTokenEstimator:
    """Crude estimate of one token per ``chars_per_token`` characters."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self._chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        return math.ceil(len(text) / self._chars_per_token)


class HuggingFaceTokenEstimator:
    """Counts tokens with a Transformers tokenizer, falling back to the char ratio."""

    def __init__(self, model: str, fallback: TokenEstimator | None = None) -> None:
        self._fallback = fallback or CharRatioTokenEstimator()
        self._tokenizer = None
        try:
            from transformers import AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(model)
            LOGGER.info("Loaded tokenizer %s", model)
        except Exception as exc:  # pragma: no cover - defensive import/runtime guard
            LOGGER.warning("Falling back to char-ratio token estimates: %s", exc)
            self._tokenizer = None

    def estimate(self, text: str) -> int:
        if self._tokenizer is None:
            return self._fallback.estimate(text)
        return len(self._tokenizer.encode(text, add_special_tokens=False))


DEFAULT_ESTIMATOR = CharRatioTokenEstimator()
