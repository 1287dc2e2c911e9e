"""
Turn-level event emission.

One observer per run. Turn ids are `turn_<ms>` and serve as the
correlation_id of every event emitted while that turn is in flight, so a
turn can be read back from the event store as one ordered group:

    vad.speech_detected -> stt.final -> turn.started -> llm.request ->
    llm.response -> tts.started -> tts.stopped

Transcript and reply text are not emitted; only lengths and counts.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity


class TurnObserver:
    """Emits the turn lifecycle events for one talk-loop run."""

    def __init__(self, session_id: str, *, now: Callable[[], float] = time.time):
        self.session_id = session_id
        self.emitter = EventEmitter(ObsComponent.TURN_CONTROLLER)
        self.logger = get_logger(LogComponent.TURN_CONTROLLER, session_id=session_id)
        self._now = now

        self.current_turn_id: Optional[str] = None
        self._stt_started_ts: Optional[float] = None
        self._llm_request_ts: Optional[float] = None
        self._tts_started_ts: Optional[float] = None

    def _emit(self, event_type: str, severity: Severity = Severity.INFO, **payload: Any) -> dict:
        return self.emitter.emit(
            event_type,
            session_id=self.session_id,
            severity=severity,
            correlation_id=self.current_turn_id,
            **payload,
        )

    def _elapsed_ms(self, since: Optional[float]) -> Optional[int]:
        if since is None:
            return None
        return int((self._now() - since) * 1000)

    # --- Turn lifecycle ---

    def new_turn(self) -> str:
        turn_id = f"turn_{int(self._now() * 1000)}"
        self.current_turn_id = turn_id
        self._stt_started_ts = None
        self._llm_request_ts = None
        self._tts_started_ts = None
        return turn_id

    def end_turn(self) -> None:
        self.current_turn_id = None

    def speech_detected(self, energy_all: float, energy_last: float) -> None:
        self.new_turn()
        self._stt_started_ts = self._now()
        self._emit(
            "vad.speech_detected",
            energy_all=round(energy_all, 6),
            energy_last=round(energy_last, 6),
        )

    def stt_final(self, text: str) -> None:
        self._emit(
            "stt.final",
            transcript_length=len(text),
            latency_ms=self._elapsed_ms(self._stt_started_ts),
        )

    def stt_failed(self, category: str, message: str) -> None:
        self._emit("stt.failed", severity=Severity.WARN, category=category, error=message)

    def turn_abandoned(self, reason: str) -> None:
        self._emit("turn.abandoned", severity=Severity.WARN if reason != "stt.empty" else Severity.DEBUG, reason=reason)
        self.end_turn()

    def turn_started(self, transcript_length: int) -> None:
        self._emit("turn.started", transcript_length=transcript_length)

    def llm_request(self, n_input_tokens: int, n_past: int) -> None:
        self._llm_request_ts = self._now()
        self._emit("llm.request", n_input_tokens=n_input_tokens, n_past=n_past)

    def llm_response(self, n_tokens: int, stop_reason: str, reply_length: int) -> None:
        self._emit(
            "llm.response",
            n_tokens=n_tokens,
            stop_reason=stop_reason,
            reply_length=reply_length,
            latency_ms=self._elapsed_ms(self._llm_request_ts),
        )
        self._llm_request_ts = None

    def tts_started(self, text_length: int) -> None:
        self._tts_started_ts = self._now()
        self._emit("tts.started", text_length=text_length)

    def tts_stopped(self, ok: bool) -> None:
        self._emit(
            "tts.stopped",
            severity=Severity.INFO if ok else Severity.WARN,
            ok=ok,
            latency_ms=self._elapsed_ms(self._tts_started_ts),
        )
        self._tts_started_ts = None

    # --- Context and session ---

    def context_evicted(self, n_past: int, n_keep: int, n_prev: int, evictions: int) -> None:
        self._emit(
            "context.evicted",
            n_past=n_past,
            n_keep=n_keep,
            n_prev=n_prev,
            evictions=evictions,
            persistence_active=False,
        )

    def session_loaded(self, n_tokens: int, match_length: int, quality: str) -> None:
        self._emit(
            "session.loaded",
            n_tokens=n_tokens,
            match_length=match_length,
            quality=quality,
        )

    def session_saved(self, n_tokens: int, latency_ms: int) -> None:
        self._emit("session.saved", n_tokens=n_tokens, latency_ms=latency_ms)

    # --- Controller ---

    def state_changed(self, old_state: str, new_state: str) -> None:
        self._emit("controller.state_changed", severity=Severity.DEBUG, old_state=old_state, new_state=new_state)

    def shutdown(self, reason: str, turns_completed: int) -> None:
        self._emit("controller.shutdown", reason=reason, turns_completed=turns_completed)

    def command_applied(self, kind: str, **payload: Any) -> None:
        self._emit("control.command_applied", command=kind, **payload)
