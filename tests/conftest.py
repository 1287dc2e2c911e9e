"""
Shared fakes for the talk loop tests.

The fake language model works on characters: token ids are code points, so
tokenize/token_to_text are exact inverses and antiprompts can be split
across single-character tokens. Replies are scripted per turn.
"""
from typing import List, Optional

import numpy as np
import pytest

from observability.event_store import event_store
from talk_loop.errors import DecodeFailure

EOS = 0


class FakeLanguageModel:
    def __init__(self, replies: Optional[List[str]] = None, n_ctx: int = 2048):
        self.n_ctx = n_ctx
        self.eos_token = EOS
        self.replies = list(replies or [])
        self.evaluations = []
        self.imported_state: Optional[bytes] = None
        self.fail_on_evaluate = False
        self.closed = False
        self._script: List[int] = []

    def tokenize(self, text: str, add_bos: bool = False) -> List[int]:
        return [ord(c) for c in text]

    def evaluate(self, tokens, n_past: int) -> None:
        if self.fail_on_evaluate:
            raise DecodeFailure("decode failed", n_past=n_past, n_tokens=len(tokens))
        self.evaluations.append((list(tokens), n_past))

    def sample(self, sampler) -> int:
        if not self._script:
            if not self.replies:
                return EOS
            self._script = self.tokenize(self.replies.pop(0))
        return self._script.pop(0)

    def token_to_text(self, token: int) -> str:
        return "" if token == EOS else chr(token)

    def export_state(self) -> bytes:
        return b"kv-state"

    def import_state(self, blob: bytes) -> None:
        self.imported_state = blob

    def close(self) -> None:
        self.closed = True


class FakeAudio:
    """Returns queued snapshots from get(); the last one repeats."""

    def __init__(self, snapshots=None):
        self.snapshots = list(snapshots or [])
        self.gets = []
        self.clears = 0
        self.closed = False

    def get(self, ms: int) -> np.ndarray:
        self.gets.append(ms)
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        if self.snapshots:
            return self.snapshots[0]
        return np.zeros(0, dtype=np.float32)

    def clear(self) -> None:
        self.clears += 1

    def close(self) -> None:
        self.closed = True


class FakeRecognizer:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []
        self.closed = False

    def transcribe(self, segment, params) -> str:
        self.calls.append(params)
        result = self.results.pop(0) if self.results else ""
        if isinstance(result, Exception):
            raise result
        return result

    def close(self) -> None:
        self.closed = True


class FakeSpeaker:
    def __init__(self, ok: bool = True):
        self.spoken = []
        self.ok = ok

    def speak(self, text: str) -> bool:
        self.spoken.append(text)
        return self.ok


@pytest.fixture
def fake_model():
    return FakeLanguageModel


@pytest.fixture
def fake_audio():
    return FakeAudio


@pytest.fixture
def fake_recognizer():
    return FakeRecognizer


@pytest.fixture
def fake_speaker():
    return FakeSpeaker


@pytest.fixture(autouse=True)
def _quiet_events(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    yield
    event_store.clear()
