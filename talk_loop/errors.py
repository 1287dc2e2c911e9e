"""
Error taxonomy for the talk loop.

Fatal errors stop the process before or during the main loop with a
diagnostic and a non-zero exit status. Recoverable errors abandon the
current turn and send the controller back to listening.
"""
from typing import Any


class ErrorCategory:
    """Stable error categories."""

    CONFIG_INVALID = "config.invalid"
    ENGINE_INIT_FAILED = "engine.init_failed"
    SESSION_NOT_FOUND = "session.not_found"
    SESSION_CORRUPT = "session.corrupt"
    DECODE_FAILED = "llm.decode_failed"
    TRANSCRIPTION_FAILED = "stt.failed"
    EMPTY_TRANSCRIPT = "stt.empty"
    UNKNOWN = "unknown"


class TalkLoopError(Exception):
    """Base class; carries a stable category and structured context."""

    category = ErrorCategory.UNKNOWN
    fatal = True

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "category": self.category,
            "fatal": self.fatal,
            **self.context,
        }


class ConfigError(TalkLoopError):
    """Bad thresholds or conflicting options; raised before the main loop."""

    category = ErrorCategory.CONFIG_INVALID


class EngineInitError(TalkLoopError):
    """A speech or language model could not be loaded."""

    category = ErrorCategory.ENGINE_INIT_FAILED

    def __init__(self, message: str, path: str, **context: Any):
        super().__init__(message, path=path, **context)
        self.path = path


class SessionNotFound(TalkLoopError):
    """No session file yet. Treated as an empty cache."""

    category = ErrorCategory.SESSION_NOT_FOUND
    fatal = False


class SessionCorrupt(TalkLoopError):
    """Stored token count does not match the readable payload."""

    category = ErrorCategory.SESSION_CORRUPT


class DecodeFailure(TalkLoopError):
    """The language model rejected a batch. Never retried."""

    category = ErrorCategory.DECODE_FAILED


class TranscriptionFailure(TalkLoopError):
    """The recognizer failed or was aborted; the turn is abandoned."""

    category = ErrorCategory.TRANSCRIPTION_FAILED
    fatal = False


class EmptyTranscript(TalkLoopError):
    """Nothing left after transcript cleanup; the turn is dropped silently."""

    category = ErrorCategory.EMPTY_TRANSCRIPT
    fatal = False


_EXIT_CODES = {
    ErrorCategory.CONFIG_INVALID: 2,
    ErrorCategory.ENGINE_INIT_FAILED: 3,
    ErrorCategory.SESSION_CORRUPT: 4,
    ErrorCategory.DECODE_FAILED: 5,
}


def exit_code_for(error: BaseException) -> int:
    """Process exit status for a fatal error. Unknown errors map to 1."""
    category = getattr(error, "category", ErrorCategory.UNKNOWN)
    return _EXIT_CODES.get(category, 1)
