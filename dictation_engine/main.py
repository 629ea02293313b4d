"""Typer CLI entrypoint for dictation-engine."""

import asyncio
import json
import logging
from pathlib import Path

import typer

from dictation_engine.config import (
    Config,
    ConfigError,
    InputConfig,
    discover_audio_devices,
    discover_input_devices,
    load_config,
)
from dictation_engine.hotkey import HotkeyListener, stdin_triggers
from dictation_engine.injector import Injector
from dictation_engine.normalizer import TextNormalizer
from dictation_engine.recorder import AudioRecorder
from dictation_engine.segmenter import SegmentController
from dictation_engine.session import DictationSession
from dictation_engine.transcriber import create_transcriber
from dictation_engine.transcription_queue import TranscriptionQueue

app = typer.Typer(help="Continuous dictation: speech in, clipboard text out")

logger = logging.getLogger(__name__)

VALID_MODELS = ("tiny", "base", "small", "medium", "large", "large-v3")
VALID_DEVICES = ("cpu", "cuda", "auto")
DEFAULT_KEY_CODE = "KEY_F9"


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _merge_config_overrides(
    cfg: Config,
    *,
    audio_device: int | None = None,
    model: str | None = None,
    device: str | None = None,
    language: str | None = None,
    input_device: str | None = None,
    dry_run: bool = False,
    no_auto_paste: bool = False,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.

    Raises:
        ConfigError: If override values are invalid
    """
    if audio_device is not None:
        available = discover_audio_devices()
        valid_indices = {d["index"] for d in available}
        if audio_device not in valid_indices:
            available_str = ", ".join(str(d["index"]) for d in available)
            raise ConfigError(
                f"Invalid audio device index {audio_device}. "
                f"Available: {available_str or 'none'}"
            )
        logger.debug("Overriding audio device to index %d", audio_device)
        cfg.audio.device = audio_device

    if model is not None:
        if model not in VALID_MODELS:
            raise ConfigError(
                f"Invalid model '{model}'. Must be one of: {', '.join(VALID_MODELS)}"
            )
        logger.debug("Overriding model to '%s'", model)
        cfg.model.name = model

    if device is not None:
        if device not in VALID_DEVICES:
            raise ConfigError(
                f"Invalid device '{device}'. Must be one of: {', '.join(VALID_DEVICES)}"
            )
        logger.debug("Overriding compute device to '%s'", device)
        cfg.model.device = device

    if language is not None:
        logger.debug("Overriding language to '%s'", language)
        cfg.transcription.language = language

    if input_device is not None:
        logger.debug("Overriding input device to '%s'", input_device)
        key_codes = cfg.input.key_codes if cfg.input else DEFAULT_KEY_CODE
        cfg.input = InputConfig(device=input_device, key_code=key_codes)

    if dry_run:
        logger.debug("Enabling dry-run mode")
        cfg.injector.dry_run = True

    if no_auto_paste:
        logger.debug("Disabling auto-paste")
        cfg.injector.auto_paste = False

    return cfg


def build_session(cfg: Config, transcriber, injector: Injector) -> DictationSession:
    """Wire recorder, controller, queue and paste sink into a session."""
    recorder = AudioRecorder(
        sample_rate=cfg.audio.sample_rate,
        channels=cfg.audio.channels,
        chunk_size=cfg.audio.chunk_size,
        frame_size=cfg.audio.frame_size,
        device=cfg.audio.device,
    )
    normalizer = TextNormalizer(
        language=cfg.transcription.language,
        extra_hallucinations=cfg.transcription.hallucination_phrases,
    )
    queue = TranscriptionQueue(
        backend=transcriber,
        normalizer=normalizer,
        language=cfg.transcription.language,
        timeout=cfg.transcription.timeout,
        min_volume_rms=cfg.vad.min_volume_rms,
    )
    controller = SegmentController(
        capture=recorder,
        sink=queue,
        vad_config=cfg.vad,
        config=cfg.segmenter,
    )
    return DictationSession(
        controller=controller,
        queue=queue,
        sink=injector,
        config=cfg.session,
        poll_interval_ms=cfg.vad.poll_interval_ms,
        auto_paste=lambda: cfg.injector.auto_paste,
        can_toggle=lambda: transcriber.is_ready,
    )


async def _run_daemon(cfg: Config) -> None:
    transcriber = create_transcriber(cfg)
    injector = Injector(cfg.injector)
    session = build_session(cfg, transcriber, injector)

    try:
        logger.info("Warming up transcription backend")
        await transcriber.warmup()

        if cfg.input is not None:
            async with HotkeyListener.from_config(cfg.input) as listener:
                logger.info("Press %s to toggle dictation", ", ".join(cfg.input.key_codes))
                await session.run(listener.listen())
        else:
            logger.info("No [input] section configured; press Enter to toggle dictation")
            await session.run(stdin_triggers())
    finally:
        await session.shutdown()
        session.controller.capture.close()
        await transcriber.shutdown()


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Override audio device by index"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Override Whisper model name"
    ),
    device: str | None = typer.Option(
        None, "--device", help="Override compute device (cpu, cuda, auto)"
    ),
    language: str | None = typer.Option(
        None, "--language", "-l", help="Override transcription language (or 'auto')"
    ),
    input_device: str | None = typer.Option(
        None, "--input-device", help="Override hotkey input device path"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Log clipboard and paste commands instead of running them"
    ),
    no_auto_paste: bool = typer.Option(
        False, "--no-auto-paste", help="Copy to the clipboard only"
    ),
) -> None:
    """Run the dictation daemon."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        logger.info("Loaded config from: %s", config or "default locations")
        logger.debug("Config: %s", cfg)
        if cfg.general.verbose or cfg.general.debug:
            logging.getLogger().setLevel(logging.DEBUG)

        cfg = _merge_config_overrides(
            cfg,
            audio_device=audio_device,
            model=model,
            device=device,
            language=language,
            input_device=input_device,
            dry_run=dry_run,
            no_auto_paste=no_auto_paste,
        )
        cfg.validate()
        logger.info("Configuration validated successfully")

        logger.info("Starting dictation daemon")
        asyncio.run(_run_daemon(cfg))

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def list_inputs(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available hotkey input devices."""
    _setup_logging(verbose)
    try:
        devices = discover_input_devices()
        if not devices:
            logger.warning("No input devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available input devices:")
            for dev in devices:
                typer.echo(f"  {dev['path']}")
                typer.echo(f"    Name: {dev['name']}")
                typer.echo(f"    Capabilities: {dev['capabilities']}")
    except Exception as e:
        logger.error("Error listing input devices: %s", e)
        raise typer.Exit(1)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio capture devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz)"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


@app.command()
def dry_run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Override audio device by index"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Override Whisper model name"
    ),
    device: str | None = typer.Option(
        None, "--device", help="Override compute device (cpu, cuda, auto)"
    ),
    input_device: str | None = typer.Option(
        None, "--input-device", help="Override hotkey input device path"
    ),
) -> None:
    """Validate configuration without starting capture."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        logger.info("Loaded config from: %s", config or "default locations")
        cfg = _merge_config_overrides(
            cfg,
            audio_device=audio_device,
            model=model,
            device=device,
            input_device=input_device,
            dry_run=True,
        )
        cfg.validate()
        logger.info("Configuration validated successfully (dry-run mode)")
        logger.info(
            "Would start %s backend with %s capture, threshold=%.1f, hang=%.0fms",
            cfg.model.backend,
            cfg.segmenter.capture_mode,
            cfg.vad.speaking_threshold,
            cfg.vad.silence_hang_ms,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Unexpected error: %s", e)
        raise typer.Exit(1)


@app.command()
def normalize(
    text: str = typer.Argument(..., help="Raw transcription text"),
    language: str = typer.Option("en", "--language", "-l", help="Expected language"),
) -> None:
    """Print the normalized form of a raw transcription."""
    normalizer = TextNormalizer(language=language)
    typer.echo(normalizer.normalize(text))


if __name__ == "__main__":
    app()
