"""
Tests for the command-based speech sink.
"""
import subprocess

from talk_loop import speech
from talk_loop.speech import CommandSpeaker


class Recorder:
    def __init__(self, returncode=0, exc=None):
        self.calls = []
        self.returncode = returncode
        self.exc = exc

    def __call__(self, argv, check=False, timeout=None):
        self.calls.append(argv)
        if self.exc is not None:
            raise self.exc
        return subprocess.CompletedProcess(argv, self.returncode)


def test_writes_file_then_runs_command(tmp_path, monkeypatch):
    scratch = tmp_path / "to_speak.txt"
    recorder = Recorder()
    monkeypatch.setattr(speech.subprocess, "run", recorder)

    ok = CommandSpeaker("/usr/bin/speak --fast", str(scratch), voice_id=2).speak("It is 9 o'clock.")

    assert ok is True
    assert scratch.read_text() == "It is 9 o'clock."
    assert recorder.calls == [["/usr/bin/speak", "--fast", "2", str(scratch)]]


def test_empty_text_skipped(tmp_path, monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(speech.subprocess, "run", recorder)

    assert CommandSpeaker("speak", str(tmp_path / "s.txt")).speak("   ") is False
    assert recorder.calls == []


def test_non_zero_exit_is_reported_not_raised(tmp_path, monkeypatch):
    monkeypatch.setattr(speech.subprocess, "run", Recorder(returncode=1))
    assert CommandSpeaker("speak", str(tmp_path / "s.txt")).speak("hello") is False


def test_missing_command_is_reported_not_raised(tmp_path, monkeypatch):
    monkeypatch.setattr(speech.subprocess, "run", Recorder(exc=FileNotFoundError("speak")))
    assert CommandSpeaker("speak", str(tmp_path / "s.txt")).speak("hello") is False


def test_unwritable_scratch_file(tmp_path, monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(speech.subprocess, "run", recorder)
    scratch = tmp_path / "missing-dir" / "s.txt"

    assert CommandSpeaker("speak", str(scratch)).speak("hello") is False
    assert recorder.calls == []
