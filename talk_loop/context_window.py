"""
Context window bookkeeping.

Tracks what the language model has evaluated in this process (`n_past`),
the full conversation history, and the session cache of previously
evaluated tokens (`session_cache[:n_consumed]` is confirmed to match the
live window). No model calls happen here; the generation loop asks this
manager what to evaluate and reports back what it evaluated.

Invariants:
- 0 <= n_past <= n_ctx after every evaluation that fits the window
- n_consumed <= len(session_cache)
- the keep-prefix (first n_keep tokens) is never evicted
- once the window overflows, the session cache stops growing for the run
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from logging_setup import get_logger, Component

logger = get_logger(Component.CONTEXT)


def common_prefix_length(a: Sequence[int], b: Sequence[int]) -> int:
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


class ContextWindowManager:
    """Decides what must be evaluated, what is a cache hit, and when to evict."""

    def __init__(
        self,
        n_ctx: int,
        n_keep: int = 0,
        n_prev: int = 64,
        session_cache: Optional[Iterable[int]] = None,
        persist_session: bool = False,
    ):
        if n_ctx <= 0:
            raise ValueError("n_ctx must be positive")
        self.n_ctx = n_ctx
        self.n_keep = n_keep
        self.n_prev = n_prev
        self.session_cache: List[int] = list(session_cache or [])
        self.persist_session = persist_session

        self.n_past = 0
        self.n_consumed = 0
        self.history: List[int] = []
        self.evictions = 0

    @property
    def overflowed(self) -> bool:
        return self.evictions > 0

    def prepare_for_overflow(self, pending_tokens: Sequence[int]) -> List[int]:
        """
        Return the batch to evaluate, evicting first if it would not fit.

        On overflow the window restarts right after the keep-prefix and the
        last n_prev tokens of history are re-fed ahead of the pending batch.
        Everything between the keep-prefix and that tail is dropped from the
        live window. Session persistence is switched off for the rest of the
        run, since the window no longer mirrors a prefix of the prompt.
        """
        pending = list(pending_tokens)
        if self.n_past + len(pending) <= self.n_ctx:
            return pending

        tail = self.tail(self.n_prev)

        logger.info(
            "Context window full, evicting",
            n_past=self.n_past,
            n_pending=len(pending),
            n_ctx=self.n_ctx,
            n_keep=self.n_keep,
            n_prev=len(tail),
            persistence_disabled=self.persist_session,
        )

        self.n_past = self.n_keep
        self.persist_session = False
        self.evictions += 1
        return tail + pending

    def reconcile_with_cache(self, pending_tokens: Sequence[int]) -> List[int]:
        """
        Skip the leading tokens that the session cache already holds.

        Walks the batch and session_cache[n_consumed:] in lock-step; every
        match advances n_past and n_consumed. The first mismatch truncates
        the cache to n_consumed. Returns the residual batch to evaluate.
        """
        pending = list(pending_tokens)
        if self.n_consumed >= len(self.session_cache):
            return pending

        i = 0
        while i < len(pending):
            if pending[i] != self.session_cache[self.n_consumed]:
                logger.debug(
                    "Session cache mismatch, truncating",
                    n_consumed=self.n_consumed,
                    n_dropped=len(self.session_cache) - self.n_consumed,
                )
                self.truncate_cache()
                break
            self.n_past += 1
            self.n_consumed += 1
            i += 1
            if self.n_consumed >= len(self.session_cache):
                break

        return pending[i:]

    def truncate_cache(self) -> None:
        """Drop cached tokens past n_consumed; the model no longer holds them."""
        if len(self.session_cache) > self.n_consumed:
            logger.debug(
                "Dropping unconfirmed session cache suffix",
                n_consumed=self.n_consumed,
                n_dropped=len(self.session_cache) - self.n_consumed,
            )
            del self.session_cache[self.n_consumed:]

    def commit_evaluated(self, tokens: Sequence[int]) -> None:
        """Append freshly evaluated tokens to the cache while persistence is on."""
        if not tokens or not self.persist_session:
            return
        # Anything past n_consumed is stale once new tokens land there
        del self.session_cache[self.n_consumed:]
        self.session_cache.extend(tokens)
        self.n_consumed = len(self.session_cache)

    def advance(self, evaluated: Sequence[int], appended: Sequence[int]) -> None:
        """
        Record a completed evaluation.

        `evaluated` is the batch the model actually consumed (moves n_past);
        `appended` is the new conversation content it carried (extends history).
        """
        self.n_past += len(evaluated)
        self.history.extend(appended)

    def tail(self, n: int) -> List[int]:
        return self.history[-n:] if n > 0 else []

    def snapshot(self) -> dict:
        return {
            "n_ctx": self.n_ctx,
            "n_keep": self.n_keep,
            "n_prev": self.n_prev,
            "n_past": self.n_past,
            "n_consumed": self.n_consumed,
            "session_cache_size": len(self.session_cache),
            "history_size": len(self.history),
            "persist_session": self.persist_session,
            "evictions": self.evictions,
        }
