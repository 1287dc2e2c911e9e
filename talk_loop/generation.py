"""
Incremental decoding for one dialogue turn.

Per turn: Evaluating -> Sampling -> CheckStop -> (Evaluating | Done).

Every batch that reaches the model goes through the context window manager
first (eviction, then session-cache reconciliation), so n_past and the
session cache cannot drift from what the model has actually seen. A turn
ends on an antiprompt suffix, on cancellation, or on the optional reply
length limit. End-of-sequence alone never ends a turn.
"""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from logging_setup import get_logger, Component
from .cancellation import CancellationToken
from .context_window import ContextWindowManager
from .errors import SessionCorrupt, SessionNotFound
from .language_model import LanguageModel
from .observability import TurnObserver
from .prompt import format_user_turn
from .sampling import Sampler
from .session_store import ReuseReport, SessionStore, classify_reuse

logger = get_logger(Component.LLM)

MIN_TAIL_FRAGMENTS = 16

STOP_ANTIPROMPT = "antiprompt"
STOP_CANCELLED = "cancelled"
STOP_LENGTH = "length"


class StopDetector:
    """
    Exact-suffix antiprompt matching over a sliding text tail.

    The tail holds the most recent evaluated fragments. Its size is at least
    MIN_TAIL_FRAGMENTS and at least the length of the longest antiprompt, so
    an antiprompt split across many single-character tokens is still seen.
    """

    def __init__(self, antiprompts: Sequence[str], min_fragments: int = MIN_TAIL_FRAGMENTS):
        self.antiprompts = [a for a in antiprompts if a]
        longest = max((len(a) for a in self.antiprompts), default=0)
        self.window = max(min_fragments, longest)
        self._fragments: deque = deque(maxlen=self.window)

    def feed(self, fragments: Iterable[str]) -> None:
        self._fragments.extend(fragments)

    def tail(self, candidate: str = "") -> str:
        return "".join(self._fragments) + candidate

    def check(self, candidate: str = "") -> Optional[str]:
        """Antiprompt the tail (plus the candidate fragment) ends with, if any."""
        text = self.tail(candidate)
        for antiprompt in self.antiprompts:
            if text.endswith(antiprompt):
                return antiprompt
        return None

    def reset(self) -> None:
        self._fragments.clear()


def strip_antiprompt(text: str, antiprompt: str) -> str:
    if text.endswith(antiprompt):
        return text[: len(text) - len(antiprompt)]
    # Antiprompt began in an earlier turn's tail; drop what remains of it
    return text.replace(antiprompt, "")


@dataclass
class TurnResult:
    text: str
    n_tokens: int
    stop_reason: str
    antiprompt: Optional[str] = None


class GenerationLoop:
    """Drives the language model across turns within one context window."""

    def __init__(
        self,
        model: LanguageModel,
        context: ContextWindowManager,
        sampler: Sampler,
        antiprompts: Sequence[str],
        bot_name: str,
        session_store: Optional[SessionStore] = None,
        session_path: Optional[str] = None,
        max_reply_tokens: int = 0,
        observer: Optional[TurnObserver] = None,
    ):
        self.model = model
        self.context = context
        self.sampler = sampler
        self.bot_name = bot_name
        self.stop_detector = StopDetector(antiprompts)
        self.session_store = session_store or SessionStore(max_tokens=context.n_ctx)
        self.session_path = session_path
        self.max_reply_tokens = max_reply_tokens
        self.observer = observer

        self.context.persist_session = bool(session_path)
        self.need_to_save_session = False
        self.reuse: Optional[ReuseReport] = None

    # --- Session ---

    def restore_session(self) -> int:
        """
        Load the session file into the cache and the model.

        Returns the number of cached tokens. A missing file means an empty
        cache; a corrupt one raises SessionCorrupt.
        """
        if not self.session_path:
            return 0
        try:
            data = self.session_store.load(self.session_path)
        except SessionNotFound:
            logger.info("Session file does not exist, will create", path=self.session_path)
            return 0

        if not data.state:
            # Cached tokens are only a hit if the model state behind them is restored too
            logger.warning("Session file has no model state; ignoring cached tokens", path=self.session_path)
            return 0
        try:
            self.model.import_state(data.state)
        except Exception as e:
            raise SessionCorrupt(f"Model state in session file is unusable: {e}", path=self.session_path)

        self.context.session_cache = list(data.tokens)
        self.context.n_consumed = 0
        return len(data.tokens)

    def _maybe_save_session(self) -> None:
        if not (self.need_to_save_session and self.context.persist_session and self.session_path):
            return
        self.need_to_save_session = False
        t_start = time.perf_counter()
        self.session_store.save(self.session_path, self.context.session_cache, self.model.export_state())
        if self.observer is not None:
            self.observer.session_saved(
                n_tokens=len(self.context.session_cache),
                latency_ms=int((time.perf_counter() - t_start) * 1000),
            )

    # --- Evaluation ---

    def _evaluate(self, tokens: Sequence[int], fragments: Optional[Sequence[str]] = None) -> None:
        """
        Evaluate newly appended tokens.

        `fragments` is the already-decoded text of `tokens`. The model decodes
        each token exactly once, in context order, so sampled tokens pass the
        fragment produced at sampling time.
        """
        appended = list(tokens)
        if not appended:
            return
        if fragments is None:
            fragments = [self.model.token_to_text(t) for t in appended]

        evictions = self.context.evictions
        batch = self.context.prepare_for_overflow(appended)
        if self.context.evictions != evictions and self.observer is not None:
            self.observer.context_evicted(
                n_past=self.context.n_past,
                n_keep=self.context.n_keep,
                n_prev=len(batch) - len(appended),
                evictions=self.context.evictions,
            )

        residual = self.context.reconcile_with_cache(batch)
        if residual:
            self.model.evaluate(residual, self.context.n_past)
            self.context.commit_evaluated(residual)
            self.context.advance(residual, appended)
        else:
            # Whole batch was a cache hit; re-run its last token so there are logits to sample.
            # The model drops everything past that position, so the cache must too.
            self.context.truncate_cache()
            self.model.evaluate(batch[-1:], self.context.n_past - 1)
            self.context.advance([], appended)

        self.stop_detector.feed(fragments)

    def start(self, prompt_tokens: Sequence[int]) -> ReuseReport:
        """Evaluate the keep-prefix once at startup and decide whether to re-save the session."""
        prompt_tokens = list(prompt_tokens)
        self.context.n_keep = len(prompt_tokens)

        self.reuse = classify_reuse(self.context.session_cache, prompt_tokens, persist=bool(self.session_path))
        self.need_to_save_session = self.reuse.need_to_save
        if self.observer is not None and self.context.session_cache:
            self.observer.session_loaded(
                n_tokens=len(self.context.session_cache),
                match_length=self.reuse.match_length,
                quality=self.reuse.quality,
            )

        t_start = time.perf_counter()
        self._evaluate(prompt_tokens)
        logger.info(
            "Prompt evaluated",
            n_keep=self.context.n_keep,
            n_cached=self.reuse.match_length,
            reuse=self.reuse.quality,
            latency_ms=int((time.perf_counter() - t_start) * 1000),
        )
        return self.reuse

    def run_turn(
        self,
        user_text: str,
        cancel: Optional[CancellationToken] = None,
        on_step: Optional[Callable[[], None]] = None,
    ) -> TurnResult:
        """
        Feed one user utterance and generate the reply.

        `on_step` runs before every cancellation check, so out-of-band stop
        requests land between two sampled tokens. DecodeFailure from the
        model propagates; it is fatal for the run.
        """
        pending: List[int] = self.model.tokenize(format_user_turn(user_text, self.bot_name), add_bos=False)
        pending_fragments: Optional[List[str]] = None
        if self.observer is not None:
            self.observer.llm_request(n_input_tokens=len(pending), n_past=self.context.n_past)

        text = ""
        n_tokens = 0
        n_steps = 0
        done = False
        stop_reason = STOP_CANCELLED
        matched: Optional[str] = None

        while True:
            self._evaluate(pending, pending_fragments)
            pending = []
            pending_fragments = None

            if done:
                break
            if on_step is not None:
                on_step()
            if cancel is not None and cancel.cancelled:
                stop_reason = STOP_CANCELLED
                break

            self._maybe_save_session()

            token = self.model.sample(self.sampler)
            n_steps += 1
            fragment = ""
            if token != self.model.eos_token:
                pending = [token]
                fragment = self.model.token_to_text(token)
                pending_fragments = [fragment]
                text += fragment
                n_tokens += 1

            matched = self.stop_detector.check(fragment) if fragment else None
            if matched is not None:
                text = strip_antiprompt(text, matched)
                stop_reason = STOP_ANTIPROMPT
                self.need_to_save_session = True
                done = True
            elif self.max_reply_tokens and n_steps >= self.max_reply_tokens:
                stop_reason = STOP_LENGTH
                done = True

        result = TurnResult(text=text, n_tokens=n_tokens, stop_reason=stop_reason, antiprompt=matched)
        if self.observer is not None:
            self.observer.llm_response(n_tokens=n_tokens, stop_reason=stop_reason, reply_length=len(text))
        logger.debug("Turn generated", n_tokens=n_tokens, stop_reason=stop_reason, n_past=self.context.n_past)
        return result
