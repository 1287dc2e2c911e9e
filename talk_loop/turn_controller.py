"""
Top-level talk loop.

State machine, one iteration per step():

    Idle -> Listening -> (no speech: Idle)
         -> Transcribing -> (failed / empty transcript: Idle)
         -> Generating -> Speaking -> Idle

Cancellation is checked at every state boundary, and commands are drained
between sampled tokens while generating. Once cancelled, the current turn
is abandoned (never completed) and the controller ends in Shutdown. Engines
and the audio source are released in run()'s finally block on every exit
path, including fatal errors.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from control_plane.commands import CommandChannel, CommandKind
from logging_setup import get_logger, Component
from .audio import AudioSource
from .cancellation import CancellationToken
from .errors import EmptyTranscript, TranscriptionFailure
from .generation import STOP_CANCELLED, GenerationLoop
from .observability import TurnObserver
from .segmenter import AudioSegmenter
from .speech import SpeechSink
from .transcription import TranscriptionAdapter

logger = get_logger(Component.TURN_CONTROLLER)


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SPEAKING = "speaking"
    SHUTDOWN = "shutdown"


class TurnController:
    def __init__(
        self,
        audio: AudioSource,
        segmenter: AudioSegmenter,
        transcriber: TranscriptionAdapter,
        generation: GenerationLoop,
        speaker: SpeechSink,
        cancel: CancellationToken,
        *,
        listen_ms: int = 1500,
        command_ms: int = 3000,
        poll_interval_ms: int = 100,
        settle_ms: int = 3000,
        commands: Optional[CommandChannel] = None,
        observer: Optional[TurnObserver] = None,
    ):
        self.audio = audio
        self.segmenter = segmenter
        self.transcriber = transcriber
        self.generation = generation
        self.speaker = speaker
        self.cancel = cancel
        self.listen_ms = listen_ms
        self.command_ms = command_ms
        self.poll_interval_ms = poll_interval_ms
        self.settle_ms = settle_ms
        self.commands = commands
        self.observer = observer or TurnObserver(session_id="ephemeral")

        self.state = TurnState.IDLE
        self.turns_completed = 0
        self.network_online: Optional[bool] = None
        self._closed = False

    @property
    def session_id(self) -> str:
        return self.observer.session_id

    def status(self) -> Dict[str, Any]:
        context = self.generation.context
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "turns_completed": self.turns_completed,
            "n_past": context.n_past,
            "network_online": self.network_online,
            "persistence_active": context.persist_session,
        }

    def _set_state(self, new_state: TurnState) -> None:
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        self.observer.state_changed(old_state.value, new_state.value)

    def _apply_commands(self) -> None:
        if self.commands is None:
            return
        for command in self.commands.drain():
            if command.kind == CommandKind.STOP:
                reason = command.payload.get("reason", "control_api")
                self.cancel.cancel(reason)
                logger.info("Stop requested", reason=reason, correlation_id=command.correlation_id)
            elif command.kind == CommandKind.NETWORK:
                self.network_online = bool(command.payload.get("online"))
                logger.info(
                    "network online" if self.network_online else "network offline",
                    online=self.network_online,
                    correlation_id=command.correlation_id,
                )
            self.observer.command_applied(command.kind, command_id=command.correlation_id, **command.payload)

    def _shutdown(self) -> TurnState:
        if self.state != TurnState.SHUTDOWN:
            self._set_state(TurnState.SHUTDOWN)
            self.observer.shutdown(reason=self.cancel.reason or "cancelled", turns_completed=self.turns_completed)
            self.observer.end_turn()
        return TurnState.SHUTDOWN

    def _abandon(self, reason: str) -> TurnState:
        self.observer.turn_abandoned(reason)
        self.audio.clear()
        self._set_state(TurnState.IDLE)
        return TurnState.IDLE

    def settle(self) -> None:
        """Wait out buffered startup noise, then start from an empty buffer."""
        if self.settle_ms > 0:
            self.cancel.wait(self.settle_ms / 1000.0)
        self.audio.clear()

    def step(self) -> TurnState:
        """Run one loop iteration; returns IDLE or SHUTDOWN."""
        self._apply_commands()
        if self.cancel.cancelled:
            return self._shutdown()

        self._set_state(TurnState.IDLE)
        if self.poll_interval_ms > 0 and self.cancel.wait(self.poll_interval_ms / 1000.0):
            return self._shutdown()

        self._set_state(TurnState.LISTENING)
        decision = self.segmenter.classify(self.audio.get(self.listen_ms))
        if not decision.speech:
            self._set_state(TurnState.IDLE)
            return TurnState.IDLE

        self.observer.speech_detected(decision.energy_all, decision.energy_last)
        self._apply_commands()
        if self.cancel.cancelled:
            return self._shutdown()

        self._set_state(TurnState.TRANSCRIBING)
        segment = self.audio.get(self.command_ms)
        try:
            text = self.transcriber.transcribe(segment, self.cancel)
        except EmptyTranscript as e:
            return self._abandon(e.category)
        except TranscriptionFailure as e:
            if self.cancel.cancelled:
                return self._shutdown()
            logger.warning("Transcription failed; turn abandoned", error=e.message, **e.context)
            self.observer.stt_failed(e.category, e.message)
            return self._abandon(e.category)

        self.observer.stt_final(text)
        if self.cancel.cancelled:
            return self._shutdown()

        self._set_state(TurnState.GENERATING)
        self.observer.turn_started(transcript_length=len(text))
        result = self.generation.run_turn(text, self.cancel, on_step=self._apply_commands)
        if result.stop_reason == STOP_CANCELLED:
            self.observer.turn_abandoned("cancelled")
            return self._shutdown()

        self._set_state(TurnState.SPEAKING)
        self.observer.tts_started(text_length=len(result.text))
        ok = self.speaker.speak(result.text)
        self.observer.tts_stopped(ok)

        self.turns_completed += 1
        self.audio.clear()
        self.observer.end_turn()
        self._set_state(TurnState.IDLE)
        return TurnState.IDLE

    def run(self) -> int:
        """Loop until shutdown; returns the number of completed turns."""
        try:
            self.settle()
            logger.info("Listening", listen_ms=self.listen_ms, command_ms=self.command_ms)
            while self.step() != TurnState.SHUTDOWN:
                pass
        finally:
            self.close()
        return self.turns_completed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.audio.close()
        finally:
            try:
                self.transcriber.close()
            finally:
                self.generation.model.close()
                logger.info("Resources released", turns_completed=self.turns_completed)
