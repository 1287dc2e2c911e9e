"""
Turn controller tests.

Runs the state machine against fake audio, recognizer, model and speaker.
Verifies:
- One full turn: listen, transcribe, generate, speak, back to idle
- Turns without speech or with an empty/failed transcript are abandoned
- Stop and network commands are applied between iterations
- Cancellation never completes a turn and always releases resources
"""
import numpy as np
import pytest

from control_plane.commands import CommandChannel
from observability.event_store import event_store
from talk_loop.cancellation import CancellationToken
from talk_loop.context_window import ContextWindowManager
from talk_loop.errors import DecodeFailure
from talk_loop.generation import GenerationLoop
from talk_loop.observability import TurnObserver
from talk_loop.sampling import Sampler
from talk_loop.segmenter import AudioSegmenter
from talk_loop.transcription import DecodingParams, TranscriptionAdapter
from talk_loop.turn_controller import TurnController, TurnState

SR = 16000
PROMPT = " Transcript of a dialog.\nBob: Hello\nAura: Hi\nBob:"


def speech_snapshot() -> np.ndarray:
    t = np.arange(SR // 2) / SR
    voiced = (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)
    return np.concatenate([voiced, np.zeros(SR, dtype=np.float32)])


def silence_snapshot() -> np.ndarray:
    return np.zeros(int(SR * 1.5), dtype=np.float32)


@pytest.fixture
def build(fake_model, fake_audio, fake_recognizer, fake_speaker):
    def _build(snapshots=None, transcripts=None, replies=None, speaker=None, channel=None):
        model = fake_model(replies=replies or [])
        audio = fake_audio(snapshots if snapshots is not None else [speech_snapshot()])
        recognizer = fake_recognizer(transcripts or [])
        cancel = CancellationToken()
        observer = TurnObserver(session_id="talk")
        generation = GenerationLoop(
            model=model,
            context=ContextWindowManager(n_ctx=2048),
            sampler=Sampler(),
            antiprompts=["Bob:"],
            bot_name="Aura",
            observer=observer,
        )
        generation.start(model.tokenize(PROMPT))
        controller = TurnController(
            audio=audio,
            segmenter=AudioSegmenter(sample_rate=SR),
            transcriber=TranscriptionAdapter(recognizer, DecodingParams()),
            generation=generation,
            speaker=speaker or fake_speaker(),
            cancel=cancel,
            poll_interval_ms=0,
            settle_ms=0,
            commands=channel,
            observer=observer,
        )
        return controller

    return _build


class TestStep:
    def test_full_turn(self, build, capsys):
        controller = build(transcripts=["What time is it?"], replies=["It is noon.\nBob:"])

        assert controller.step() == TurnState.IDLE

        assert controller.turns_completed == 1
        assert controller.speaker.spoken == ["It is noon.\n"]
        assert controller.audio.gets == [1500, 3000]
        assert controller.audio.clears == 1
        assert controller.transcriber.recognizer.calls[0].abort is not None

        started = event_store.query(event_type="turn.started")[0]
        in_turn = [e["event_type"] for e in event_store.query(correlation_id=started["correlation_id"])]
        assert in_turn[0] == "vad.speech_detected"
        assert "llm.response" in in_turn
        assert in_turn[-1] == "tts.stopped"

    def test_no_speech_returns_to_idle(self, build, capsys):
        controller = build(snapshots=[silence_snapshot()])

        assert controller.step() == TurnState.IDLE

        assert controller.audio.gets == [1500]
        assert controller.transcriber.recognizer.calls == []
        assert controller.turns_completed == 0

    def test_empty_transcript_abandons_turn(self, build, capsys):
        controller = build(transcripts=["[BLANK_AUDIO]"], replies=["never Bob:"])

        assert controller.step() == TurnState.IDLE

        assert controller.turns_completed == 0
        assert controller.speaker.spoken == []
        assert len(controller.generation.model.evaluations) == 1  # prompt only
        abandoned = event_store.query(event_type="turn.abandoned")
        assert [e["reason"] for e in abandoned] == ["stt.empty"]

    def test_recognizer_failure_abandons_turn(self, build, capsys):
        controller = build(transcripts=[RuntimeError("model exploded")])

        assert controller.step() == TurnState.IDLE

        assert controller.turns_completed == 0
        assert event_store.query(event_type="stt.failed")
        assert controller.audio.clears == 1

    def test_multiple_turns(self, build, capsys):
        controller = build(transcripts=["one", "two"], replies=["first Bob:", "second Bob:"])

        controller.step()
        controller.step()

        assert controller.turns_completed == 2
        assert controller.speaker.spoken == ["first ", "second "]


class TestCommands:
    def test_stop_command_shuts_down(self, build, capsys):
        channel = CommandChannel()
        controller = build(channel=channel)
        channel.request_stop(reason="operator")

        assert controller.step() == TurnState.SHUTDOWN

        assert controller.state == TurnState.SHUTDOWN
        assert controller.cancel.reason == "operator"
        assert controller.audio.gets == []
        shutdown = event_store.query(event_type="controller.shutdown")
        assert shutdown[0]["reason"] == "operator"

    def test_network_command_updates_status(self, build, capsys):
        channel = CommandChannel()
        controller = build(snapshots=[silence_snapshot()], channel=channel)
        assert controller.status()["network_online"] is None

        channel.report_network(False)
        controller.step()

        assert controller.network_online is False
        assert controller.status()["network_online"] is False
        applied = event_store.query(event_type="control.command_applied")
        assert applied[0]["command"] == "network"
        assert applied[0]["online"] is False

    def test_status(self, build, capsys):
        controller = build()
        status = controller.status()
        assert status == {
            "session_id": "talk",
            "state": "idle",
            "turns_completed": 0,
            "n_past": len(PROMPT),
            "network_online": None,
            "persistence_active": False,
        }


class TestCancellation:
    def test_cancel_after_transcription_never_completes_turn(self, build, fake_recognizer, capsys):
        controller = build(replies=["never Bob:"])

        class CancellingRecognizer(fake_recognizer):
            def transcribe(self, segment, params):
                controller.cancel.cancel("sigint")
                return "hello"

        controller.transcriber.recognizer = CancellingRecognizer()

        assert controller.step() == TurnState.SHUTDOWN
        assert controller.turns_completed == 0
        assert controller.speaker.spoken == []

    def test_cancel_during_generation(self, build, capsys):
        controller = build(transcripts=["hello"])
        model = controller.generation.model
        original_sample = model.sample

        def cancelling_sample(sampler):
            controller.cancel.cancel("sigint")
            return original_sample(sampler)

        model.replies = ["long answer Bob:"]
        model.sample = cancelling_sample

        assert controller.step() == TurnState.SHUTDOWN
        assert controller.turns_completed == 0
        assert controller.speaker.spoken == []
        assert [e["reason"] for e in event_store.query(event_type="turn.abandoned")] == ["cancelled"]

    def test_run_releases_resources(self, build, fake_speaker, capsys):
        class StoppingSpeaker(fake_speaker):
            def speak(self, text):
                ok = super().speak(text)
                controller.cancel.cancel("sigint")
                return ok

        controller = build(transcripts=["hi"], replies=["hello Bob:"], speaker=StoppingSpeaker())

        assert controller.run() == 1

        assert controller.state == TurnState.SHUTDOWN
        assert controller.audio.closed
        assert controller.transcriber.recognizer.closed
        assert controller.generation.model.closed

    def test_decode_failure_propagates_and_releases(self, build, capsys):
        controller = build(transcripts=["hi"], replies=["hello Bob:"])
        controller.generation.model.fail_on_evaluate = True

        with pytest.raises(DecodeFailure):
            controller.run()

        assert controller.audio.closed
        assert controller.transcriber.recognizer.closed
        assert controller.generation.model.closed

    def test_close_is_idempotent(self, build, capsys):
        controller = build()
        controller.close()
        controller.generation.model.closed = False
        controller.close()
        assert controller.generation.model.closed is False

    def test_stop_command_during_generation(self, build, capsys):
        channel = CommandChannel()
        controller = build(transcripts=["hello"], channel=channel)
        model = controller.generation.model
        original_sample = model.sample

        def sample_then_stop(sampler):
            if not channel.pending():
                channel.request_stop(reason="api")
            return original_sample(sampler)

        # No antiprompt; without the stop the reply runs to the length limit
        model.replies = ["a reply that never ends"]
        controller.generation.max_reply_tokens = 64
        model.sample = sample_then_stop

        assert controller.step() == TurnState.SHUTDOWN

        assert controller.cancel.reason == "api"
        assert controller.turns_completed == 0
        assert controller.speaker.spoken == []
        assert [e["reason"] for e in event_store.query(event_type="turn.abandoned")] == ["cancelled"]
