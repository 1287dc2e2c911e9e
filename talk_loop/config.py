"""
Talk loop configuration.

Loads engine paths, audio thresholds and decoding parameters from TALK_*
environment variables. A local .env file is read first as a convenience;
it never overrides variables that are already exported.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError


def load_env_files(root: Optional[Path] = None) -> None:
    """Best-effort load of .env_local / .env.local / .env from the repo root."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local", ".env"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    """
    Read an environment variable, stripping inline comments and whitespace.

    "300  # comment" -> "300"; unset or blank -> None.
    """
    value = os.environ.get(key)
    if value is None:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer", key=key, value=value)


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{key} must be a number", key=key, value=value)


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _str_env(key: str, default: str) -> str:
    value = _clean_env(key)
    return default if value is None else value


@dataclass
class TalkConfig:
    """Talk loop configuration."""

    # Engines
    whisper_model: str = "/etc/models/ggml-tiny.en.bin"
    llama_model: str = "/etc/models/gemma-3-1b-it-Q4_K_M.gguf"
    n_threads: int = 4
    n_gpu_layers: int = 999
    use_gpu: bool = True

    # Dialogue
    language: str = "en"
    person: str = "Georgi"
    bot_name: str = "Aura"
    prompt_file: Optional[str] = None
    persona: str = "default"

    # Speech output
    speak_command: str = "/etc/talk-llama/speak"
    speak_file: str = "/etc/talk-llama/to_speak.txt"
    voice_id: int = 2

    # Session cache (empty = no persistence)
    session_path: Optional[str] = None

    # Context window
    n_ctx: int = 2048
    n_prev: int = 64

    # Audio segmentation
    sample_rate: int = 16000
    capture_device: Optional[int] = None
    buffer_ms: int = 30000
    vad_threshold: float = 0.4
    freq_threshold: float = 100.0
    analysis_window_ms: int = 1000
    listen_ms: int = 1500
    command_ms: int = 3000
    poll_interval_ms: int = 100
    settle_ms: int = 3000
    print_energy: bool = False

    # Speech recognizer decoding
    beam_size: int = 5
    best_of: int = 5
    stt_temperature: float = 0.0
    stt_temperature_inc: float = 0.2
    no_fallback: bool = False
    entropy_threshold: float = 2.40
    logprob_threshold: float = -1.00
    no_speech_threshold: float = 0.6
    initial_prompt: str = ""
    grammar: Optional[str] = None
    grammar_rule: Optional[str] = None
    print_progress: bool = False

    # Language model sampling
    temperature: float = 0.30
    top_k: int = 5
    top_p: float = 0.80
    seed: int = 0
    max_reply_tokens: int = 0  # 0 = until antiprompt

    # Control API
    control_api_enabled: bool = False
    control_api_host: str = "127.0.0.1"
    control_api_port: int = 8350

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "TalkConfig":
        """Load configuration from environment variables."""
        capture = _clean_env("TALK_CAPTURE_DEVICE")
        return cls(
            whisper_model=_str_env("TALK_WHISPER_MODEL", cls.whisper_model),
            llama_model=_str_env("TALK_LLAMA_MODEL", cls.llama_model),
            n_threads=_parse_int_env("TALK_THREADS", min(4, os.cpu_count() or 1)),
            n_gpu_layers=_parse_int_env("TALK_GPU_LAYERS", cls.n_gpu_layers),
            use_gpu=_parse_bool_env("TALK_USE_GPU", cls.use_gpu),
            language=_str_env("TALK_LANGUAGE", cls.language).lower(),
            person=_str_env("TALK_PERSON", cls.person),
            bot_name=_str_env("TALK_BOT_NAME", cls.bot_name),
            prompt_file=_clean_env("TALK_PROMPT_FILE"),
            persona=_str_env("TALK_PERSONA", cls.persona),
            speak_command=_str_env("TALK_SPEAK_COMMAND", cls.speak_command),
            speak_file=_str_env("TALK_SPEAK_FILE", cls.speak_file),
            voice_id=_parse_int_env("TALK_VOICE_ID", cls.voice_id),
            session_path=_clean_env("TALK_SESSION_PATH"),
            n_ctx=_parse_int_env("TALK_N_CTX", cls.n_ctx),
            n_prev=_parse_int_env("TALK_N_PREV", cls.n_prev),
            sample_rate=_parse_int_env("TALK_SAMPLE_RATE", cls.sample_rate),
            capture_device=_parse_int_env("TALK_CAPTURE_DEVICE", 0) if capture is not None else None,
            buffer_ms=_parse_int_env("TALK_BUFFER_MS", cls.buffer_ms),
            vad_threshold=_parse_float_env("TALK_VAD_THRESHOLD", cls.vad_threshold),
            freq_threshold=_parse_float_env("TALK_FREQ_THRESHOLD", cls.freq_threshold),
            analysis_window_ms=_parse_int_env("TALK_ANALYSIS_WINDOW_MS", cls.analysis_window_ms),
            listen_ms=_parse_int_env("TALK_LISTEN_MS", cls.listen_ms),
            command_ms=_parse_int_env("TALK_COMMAND_MS", cls.command_ms),
            poll_interval_ms=_parse_int_env("TALK_POLL_INTERVAL_MS", cls.poll_interval_ms),
            settle_ms=_parse_int_env("TALK_SETTLE_MS", cls.settle_ms),
            print_energy=_parse_bool_env("TALK_PRINT_ENERGY", cls.print_energy),
            beam_size=_parse_int_env("TALK_BEAM_SIZE", cls.beam_size),
            best_of=_parse_int_env("TALK_BEST_OF", cls.best_of),
            stt_temperature=_parse_float_env("TALK_STT_TEMPERATURE", cls.stt_temperature),
            stt_temperature_inc=_parse_float_env("TALK_STT_TEMPERATURE_INC", cls.stt_temperature_inc),
            no_fallback=_parse_bool_env("TALK_NO_FALLBACK", cls.no_fallback),
            entropy_threshold=_parse_float_env("TALK_ENTROPY_THRESHOLD", cls.entropy_threshold),
            logprob_threshold=_parse_float_env("TALK_LOGPROB_THRESHOLD", cls.logprob_threshold),
            no_speech_threshold=_parse_float_env("TALK_NO_SPEECH_THRESHOLD", cls.no_speech_threshold),
            initial_prompt=_str_env("TALK_INITIAL_PROMPT", cls.initial_prompt),
            grammar=_clean_env("TALK_GRAMMAR"),
            grammar_rule=_clean_env("TALK_GRAMMAR_RULE"),
            print_progress=_parse_bool_env("TALK_PRINT_PROGRESS", cls.print_progress),
            temperature=_parse_float_env("TALK_TEMPERATURE", cls.temperature),
            top_k=_parse_int_env("TALK_TOP_K", cls.top_k),
            top_p=_parse_float_env("TALK_TOP_P", cls.top_p),
            seed=_parse_int_env("TALK_SEED", cls.seed),
            max_reply_tokens=_parse_int_env("TALK_MAX_REPLY_TOKENS", cls.max_reply_tokens),
            control_api_enabled=_parse_bool_env("TALK_CONTROL_API", cls.control_api_enabled),
            control_api_host=_str_env("TALK_CONTROL_HOST", cls.control_api_host),
            control_api_port=_parse_int_env("TALK_CONTROL_PORT", cls.control_api_port),
            log_level=_str_env("TALK_LOG_LEVEL", cls.log_level).upper(),
            log_json=_parse_bool_env("TALK_LOG_JSON", cls.log_json),
        )

    def validate(self) -> "TalkConfig":
        """
        Reject bad thresholds and conflicting options.

        Raises ConfigError; returns self so calls can be chained.
        """
        for name in ("sample_rate", "buffer_ms", "analysis_window_ms", "listen_ms",
                     "command_ms", "n_ctx", "n_threads"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive", field=name, value=getattr(self, name))

        for name in ("poll_interval_ms", "settle_ms", "n_prev", "max_reply_tokens", "top_k"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative", field=name, value=getattr(self, name))

        if self.vad_threshold <= 0:
            raise ConfigError("vad_threshold must be positive", value=self.vad_threshold)
        if self.freq_threshold < 0:
            raise ConfigError("freq_threshold must not be negative", value=self.freq_threshold)
        if self.listen_ms <= self.analysis_window_ms:
            raise ConfigError(
                "listen_ms must be longer than analysis_window_ms",
                listen_ms=self.listen_ms,
                analysis_window_ms=self.analysis_window_ms,
            )
        if self.n_prev >= self.n_ctx:
            raise ConfigError("n_prev must be smaller than n_ctx", n_prev=self.n_prev, n_ctx=self.n_ctx)

        if self.temperature < 0:
            raise ConfigError("temperature must not be negative", value=self.temperature)
        if not 0.0 < self.top_p <= 1.0:
            raise ConfigError("top_p must be in (0, 1]", value=self.top_p)

        if self.beam_size < 1 or self.best_of < 1:
            raise ConfigError("beam_size and best_of must be at least 1",
                              beam_size=self.beam_size, best_of=self.best_of)
        if not 0.0 <= self.stt_temperature <= 1.0:
            raise ConfigError("stt_temperature must be in [0, 1]", value=self.stt_temperature)
        if self.stt_temperature_inc < 0:
            raise ConfigError("stt_temperature_inc must not be negative", value=self.stt_temperature_inc)
        if not 0.0 <= self.no_speech_threshold <= 1.0:
            raise ConfigError("no_speech_threshold must be in [0, 1]", value=self.no_speech_threshold)
        if self.entropy_threshold <= 0:
            raise ConfigError("entropy_threshold must be positive", value=self.entropy_threshold)
        if self.grammar_rule and not self.grammar:
            raise ConfigError("grammar_rule requires a grammar", grammar_rule=self.grammar_rule)

        if not self.whisper_model:
            raise ConfigError("whisper_model path is required")
        if not self.llama_model:
            raise ConfigError("llama_model path is required")
        if not self.person or not self.bot_name:
            raise ConfigError("person and bot_name must not be empty")
        if not 0 < self.control_api_port < 65536:
            raise ConfigError("control_api_port out of range", value=self.control_api_port)

        return self


def get_config() -> TalkConfig:
    """Get or create the global, validated config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = TalkConfig.from_env().validate()
    return _config


# Global config instance (lazy loaded)
_config: Optional[TalkConfig] = None
