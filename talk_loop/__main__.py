"""
Entry point for running the talk loop.

Usage:
    python -m talk_loop

Configuration comes from TALK_* environment variables (and a local .env).
Ctrl+C stops the loop after the current step; fatal errors exit non-zero:
config 2, engine init 3, corrupt session 4, decode failure 5.
"""
import signal
import sys
from pathlib import Path
from typing import Optional

from control_plane.commands import CommandChannel
from control_plane.control_api import create_app
from control_plane.server import ControlServer
from logging_setup import Component, get_logger, setup_logging

from .audio import SoundDeviceCapture
from .cancellation import CancellationToken
from .config import TalkConfig, load_env_files
from .context_window import ContextWindowManager
from .errors import TalkLoopError, exit_code_for
from .generation import GenerationLoop
from .language_model import LlamaCppModel
from .observability import TurnObserver
from .prompt import antiprompts_for, build_prompt, load_template
from .sampling import Sampler, SamplingParams
from .segmenter import AudioSegmenter
from .session_store import SessionStore
from .speech import CommandSpeaker
from .transcription import DecodingParams, FasterWhisperRecognizer, TranscriptionAdapter
from .turn_controller import TurnController

logger = get_logger(Component.TURN_CONTROLLER)


def decoding_params_for(config: TalkConfig) -> DecodingParams:
    progress = None
    if config.print_progress:
        def progress(percent: int) -> None:
            logger.info("Transcription progress", progress=percent)

    return DecodingParams(
        language=config.language,
        beam_size=config.beam_size,
        best_of=config.best_of,
        temperature=config.stt_temperature,
        temperature_inc=0.0 if config.no_fallback else config.stt_temperature_inc,
        entropy_threshold=config.entropy_threshold,
        logprob_threshold=config.logprob_threshold,
        no_speech_threshold=config.no_speech_threshold,
        initial_prompt=config.initial_prompt,
        grammar=config.grammar,
        grammar_rule=config.grammar_rule,
        progress_callback=progress,
    )


def build_controller(config: TalkConfig, cancel: CancellationToken, channel: CommandChannel) -> TurnController:
    """Load engines, restore the session and evaluate the prompt."""
    session_id = Path(config.session_path).stem if config.session_path else "ephemeral"
    observer = TurnObserver(session_id=session_id)

    model = LlamaCppModel(
        config.llama_model,
        n_ctx=config.n_ctx,
        n_threads=config.n_threads,
        n_gpu_layers=config.n_gpu_layers,
        use_gpu=config.use_gpu,
        seed=config.seed,
    )
    try:
        recognizer = FasterWhisperRecognizer(
            config.whisper_model,
            n_threads=config.n_threads,
            use_gpu=config.use_gpu,
            sample_rate=config.sample_rate,
        )
    except BaseException:
        model.close()
        raise
    try:
        audio = SoundDeviceCapture(
            sample_rate=config.sample_rate,
            buffer_ms=config.buffer_ms,
            device=config.capture_device,
        ).start()
    except BaseException:
        recognizer.close()
        model.close()
        raise

    generation = GenerationLoop(
        model=model,
        context=ContextWindowManager(n_ctx=config.n_ctx, n_prev=config.n_prev),
        sampler=Sampler(SamplingParams(
            temperature=config.temperature,
            top_k=config.top_k,
            top_p=config.top_p,
            seed=config.seed,
        )),
        antiprompts=antiprompts_for(config.person),
        bot_name=config.bot_name,
        session_store=SessionStore(max_tokens=config.n_ctx),
        session_path=config.session_path,
        max_reply_tokens=config.max_reply_tokens,
        observer=observer,
    )
    controller = TurnController(
        audio=audio,
        segmenter=AudioSegmenter(
            sample_rate=config.sample_rate,
            energy_threshold=config.vad_threshold,
            high_pass_cutoff_hz=config.freq_threshold,
            analysis_window_ms=config.analysis_window_ms,
            verbose=config.print_energy,
        ),
        transcriber=TranscriptionAdapter(recognizer, decoding_params_for(config)),
        generation=generation,
        speaker=CommandSpeaker(config.speak_command, config.speak_file, config.voice_id),
        cancel=cancel,
        listen_ms=config.listen_ms,
        command_ms=config.command_ms,
        poll_interval_ms=config.poll_interval_ms,
        settle_ms=config.settle_ms,
        commands=channel,
        observer=observer,
    )

    try:
        generation.restore_session()
        template = load_template(config.prompt_file, config.persona)
        prompt = build_prompt(template, config.person, config.bot_name)
        generation.start(model.tokenize(prompt, add_bos=True))
    except BaseException:
        controller.close()
        raise

    return controller


def main() -> int:
    load_env_files()
    try:
        config = TalkConfig.from_env().validate()
    except TalkLoopError as e:
        setup_logging(level="INFO", use_json=True)
        logger.error("Invalid configuration", **e.to_dict())
        print(f"error: {e.message}", file=sys.stderr)
        return exit_code_for(e)

    setup_logging(level=config.log_level, use_json=config.log_json)

    cancel = CancellationToken()
    signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel("sigint"))
    channel = CommandChannel()
    server: Optional[ControlServer] = None

    try:
        controller = build_controller(config, cancel, channel)
        try:
            if config.control_api_enabled:
                server = ControlServer(
                    create_app(channel, controller.status),
                    host=config.control_api_host,
                    port=config.control_api_port,
                ).start()
            turns = controller.run()
        finally:
            controller.close()
    except TalkLoopError as e:
        logger.critical("Talk loop stopped", **e.to_dict())
        print(f"error: {e.message}", file=sys.stderr)
        return exit_code_for(e)
    finally:
        if server is not None:
            server.stop()

    logger.info("Talk loop finished", turns_completed=turns, reason=cancel.reason)
    return 0


if __name__ == "__main__":
    sys.exit(main())
