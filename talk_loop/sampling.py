"""Token sampling over raw logits."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class SamplingParams:
    temperature: float = 0.30
    top_k: int = 5
    top_p: float = 0.80
    seed: Optional[int] = 0


class Sampler:
    """
    Greedy when temperature <= 0, otherwise top-k -> top-p -> temperature ->
    weighted draw from a seeded generator. A top_k of 0 keeps every token.
    """

    def __init__(self, params: Optional[SamplingParams] = None):
        self.params = params or SamplingParams()
        self._rng = np.random.default_rng(self.params.seed)

    def sample(self, logits) -> int:
        logits = np.asarray(logits, dtype=np.float64).reshape(-1)
        if logits.size == 0:
            raise ValueError("empty logits")

        p = self.params
        if p.temperature <= 0:
            return int(np.argmax(logits))

        # Candidates sorted by descending logit
        order = np.argsort(-logits, kind="stable")
        if p.top_k > 0:
            order = order[: p.top_k]
        cand = logits[order]

        if p.top_p < 1.0:
            probs = _softmax(cand)
            cumulative = np.cumsum(probs)
            keep = int(np.searchsorted(cumulative, p.top_p) + 1)
            keep = max(1, min(keep, cand.size))
            order = order[:keep]
            cand = cand[:keep]

        probs = _softmax(cand / p.temperature)
        choice = self._rng.choice(order.size, p=probs)
        return int(order[choice])


def _softmax(x: np.ndarray) -> np.ndarray:
    z = np.exp(x - np.max(x))
    return z / z.sum()
