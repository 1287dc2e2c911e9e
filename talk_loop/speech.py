"""
Text-to-speech sink.

The reply is written to a scratch file and an external command renders it:

    <command> <voice_id> <scratch_file>

The command string may carry its own arguments (split with shlex). Speech
failures are logged; they never end the talk loop.
"""
from __future__ import annotations

import shlex
import subprocess
import time
from typing import Optional, Protocol

from logging_setup import get_logger, Component

logger = get_logger(Component.TTS)


class SpeechSink(Protocol):
    def speak(self, text: str) -> bool: ...


class CommandSpeaker:
    def __init__(self, command: str, scratch_file: str, voice_id: int = 2, timeout_s: Optional[float] = None):
        self.command = command
        self.scratch_file = scratch_file
        self.voice_id = voice_id
        self.timeout_s = timeout_s

    def speak(self, text: str) -> bool:
        """Returns True when the command ran and exited 0."""
        if not text.strip():
            logger.debug("Nothing to speak")
            return False

        try:
            with open(self.scratch_file, "w", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            logger.error("Cannot write speak file", path=self.scratch_file, error=str(e))
            return False

        argv = shlex.split(self.command) + [str(self.voice_id), self.scratch_file]
        t_start = time.perf_counter()
        try:
            completed = subprocess.run(argv, check=False, timeout=self.timeout_s)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error("Speak command failed to run", command=self.command, error=str(e))
            return False

        latency_ms = int((time.perf_counter() - t_start) * 1000)
        if completed.returncode != 0:
            logger.warning(
                "Speak command exited non-zero",
                command=self.command,
                returncode=completed.returncode,
                latency_ms=latency_ms,
            )
            return False

        logger.debug("Spoke reply", text_length=len(text), latency_ms=latency_ms)
        return True
