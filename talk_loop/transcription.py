"""
Speech recognizer boundary.

The adapter turns one audio segment into cleaned, single-line text. The
recognizer itself (faster-whisper by default) is a collaborator behind the
SpeechRecognizer protocol so the controller can be exercised without model
weights.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterator, Optional, Protocol

import numpy as np

from logging_setup import get_logger, Component
from .cancellation import CancellationToken
from .errors import EmptyTranscript, EngineInitError, TranscriptionFailure

logger = get_logger(Component.STT)


@dataclass
class DecodingParams:
    """Recognizer decoding parameters."""

    language: str = "en"
    beam_size: int = 5
    best_of: int = 5
    temperature: float = 0.0
    temperature_inc: float = 0.2  # 0 disables the fallback schedule
    entropy_threshold: float = 2.40
    logprob_threshold: float = -1.00
    no_speech_threshold: float = 0.6
    initial_prompt: str = ""
    grammar: Optional[str] = None
    grammar_rule: Optional[str] = None
    progress_callback: Optional[Callable[[int], None]] = None
    abort: Optional[Callable[[], bool]] = None

    @property
    def uses_grammar(self) -> bool:
        return bool(self.grammar and self.grammar_rule)

    @property
    def strategy(self) -> str:
        """Beam search when a beam is requested or a grammar constrains decoding."""
        if self.beam_size > 1 or self.uses_grammar:
            return "beam_search"
        return "greedy"

    def temperatures(self) -> tuple[float, ...]:
        """Fallback schedule: t, t+inc, ... up to 1.0."""
        if self.temperature_inc <= 0:
            return (self.temperature,)
        steps = []
        t = self.temperature
        while t <= 1.0 + 1e-6:
            steps.append(round(t, 4))
            t += self.temperature_inc
        return tuple(steps)


class SpeechRecognizer(Protocol):
    def transcribe(self, segment: np.ndarray, params: DecodingParams) -> str: ...

    def close(self) -> None: ...


_BRACKETED = re.compile(r"\[.*?\]")
_PARENTHESIZED = re.compile(r"\(.*?\)")
_DISALLOWED = re.compile(r"[^a-zA-Z0-9.,?!\s:'\-]")


def clean_transcript(text: str) -> str:
    """
    Normalize raw recognizer output.

    Drops [annotations] and (sound descriptions), every character that is
    not a letter, digit, basic punctuation or whitespace, then keeps the
    first line, trimmed.
    """
    text = _BRACKETED.sub("", text)
    text = _PARENTHESIZED.sub("", text)
    text = _DISALLOWED.sub("", text)
    text = text.split("\n", 1)[0]
    return text.strip()


class TranscriptionAdapter:
    """Calls the recognizer on one segment and returns cleaned text."""

    def __init__(self, recognizer: SpeechRecognizer, params: DecodingParams):
        self.recognizer = recognizer
        self.params = params

    def transcribe(self, segment: np.ndarray, cancel: Optional[CancellationToken] = None) -> str:
        """
        Raises TranscriptionFailure when the recognizer fails or is aborted,
        EmptyTranscript when nothing survives cleanup.
        """
        params = self.params
        if cancel is not None:
            params = replace(params, abort=cancel.as_abort_predicate())

        t_start = time.perf_counter()
        try:
            raw = self.recognizer.transcribe(segment, params)
        except TranscriptionFailure:
            raise
        except Exception as e:
            raise TranscriptionFailure(
                f"Recognizer failed: {e}",
                error_type=type(e).__name__,
                n_samples=int(np.asarray(segment).size),
            )
        latency_ms = int((time.perf_counter() - t_start) * 1000)

        text = clean_transcript(raw or "")
        logger.debug(
            "Segment transcribed",
            raw_length=len(raw or ""),
            transcript_length=len(text),
            latency_ms=latency_ms,
        )
        if not text:
            raise EmptyTranscript("Transcript empty after cleanup", raw_length=len(raw or ""))
        return text

    def close(self) -> None:
        self.recognizer.close()


class FasterWhisperRecognizer:
    """
    faster-whisper backed recognizer.

    Thresholds map onto faster-whisper's rejection knobs: entropy ->
    compression_ratio_threshold, logprob -> log_prob_threshold,
    no-speech -> no_speech_threshold. Grammar-constrained decoding is not
    supported by this engine; a configured grammar is ignored with a warning.
    """

    def __init__(self, model_path: str, n_threads: int = 4, use_gpu: bool = True, sample_rate: int = 16000):
        try:
            from faster_whisper import WhisperModel
        except ImportError as e:
            raise EngineInitError(f"faster-whisper is not installed: {e}", path=model_path)

        device = "auto" if use_gpu else "cpu"
        try:
            self._model = WhisperModel(
                model_path,
                device=device,
                compute_type="default" if use_gpu else "int8",
                cpu_threads=n_threads,
            )
        except Exception as e:
            raise EngineInitError(f"Failed to load speech model: {e}", path=model_path)

        self.sample_rate = sample_rate
        self._grammar_warned = False
        logger.info("Speech model loaded", model=model_path, device=device, threads=n_threads)

    def _segments(self, audio: np.ndarray, params: DecodingParams) -> Iterator:
        segments, _info = self._model.transcribe(
            audio,
            language=None if params.language == "auto" else params.language,
            beam_size=params.beam_size if params.strategy == "beam_search" else 1,
            best_of=params.best_of,
            temperature=list(params.temperatures()),
            compression_ratio_threshold=params.entropy_threshold,
            log_prob_threshold=params.logprob_threshold,
            no_speech_threshold=params.no_speech_threshold,
            initial_prompt=params.initial_prompt or None,
            condition_on_previous_text=False,
            without_timestamps=True,
        )
        return segments

    def transcribe(self, segment: np.ndarray, params: DecodingParams) -> str:
        if params.grammar and not self._grammar_warned:
            self._grammar_warned = True
            logger.warning(
                "Grammar-constrained decoding not supported by faster-whisper; skipping grammar",
                grammar_rule=params.grammar_rule,
            )

        if params.abort is not None and params.abort():
            raise TranscriptionFailure("Transcription aborted before start")

        audio = np.asarray(segment, dtype=np.float32).reshape(-1)
        duration_s = audio.size / float(self.sample_rate) if audio.size else 0.0

        parts = []
        last_progress = 0
        for seg in self._segments(audio, params):
            if params.abort is not None and params.abort():
                raise TranscriptionFailure("Transcription aborted")
            parts.append(seg.text)
            if params.progress_callback is not None and duration_s > 0:
                progress = min(100, int(100 * seg.end / duration_s))
                if progress > last_progress:
                    last_progress = progress
                    params.progress_callback(progress)
        return "".join(parts)

    def close(self) -> None:
        self._model = None
