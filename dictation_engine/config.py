"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "InputConfig",
    "AudioConfig",
    "VadConfig",
    "SegmenterConfig",
    "ModelConfig",
    "DeepgramConfig",
    "InjectorConfig",
    "TranscriptionConfig",
    "SessionConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_input_devices",
    "discover_audio_devices",
]

CAPTURE_MODES = ("request", "restart")

_SECTIONS = (
    "input",
    "audio",
    "vad",
    "segmenter",
    "model",
    "deepgram",
    "injector",
    "transcription",
    "session",
    "general",
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class InputConfig:
    """Hotkey device configuration."""

    device: str | Sequence[str]
    key_code: str | Sequence[str]
    devices: tuple[str, ...] = field(init=False)
    key_codes: tuple[str, ...] = field(init=False)

    def __post_init__(self) -> None:
        """Normalize device and key code configuration."""
        self.devices = _as_tuple(self.device, "input.device", "device path")
        self.device = self.devices[0]
        self.key_codes = _as_tuple(self.key_code, "input.key_code", "key symbol")
        self.key_code = self.key_codes[0]


def _as_tuple(value: str | Sequence[str], name: str, noun: str) -> tuple[str, ...]:
    if isinstance(value, str):
        items: tuple = (value,)
    else:
        try:
            items = tuple(value)
        except TypeError as exc:
            raise ConfigError(f"{name} must be a string or sequence of strings: {exc}") from exc
        if not items:
            raise ConfigError(f"{name} must contain at least one {noun}")

    for item in items:
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{name} entries must be non-empty strings")
    return items


@dataclass
class AudioConfig:
    """Audio capture configuration."""

    sample_rate: int = 16000
    channels: int = 1
    chunk_size: int = 1600
    frame_size: int = 2048
    device: int | str | None = None


@dataclass
class VadConfig:
    """Voice activity thresholds.

    RMS values are measured on the unsigned 8-bit analysis window (0-128).
    Suitable values depend on the microphone and the room.
    """

    speaking_threshold: float = 10.0
    silence_hang_ms: float = 1000.0
    min_volume_rms: float = 3.0
    poll_interval_ms: float = 16.0


@dataclass
class SegmenterConfig:
    """Segment boundaries, rate limits and safety caps."""

    min_segment_duration_ms: float = 400.0
    min_flush_interval_ms: float = 1000.0
    max_segment_bytes: int = 5 * 1024 * 1024
    max_segment_duration_ms: float = 30 * 60 * 1000.0
    min_final_bytes: int = 3200
    capture_mode: str = "request"


@dataclass
class ModelConfig:
    """Whisper model configuration (for faster-whisper backend)."""

    backend: str = "faster_whisper"
    name: str = "base"
    device: str = "cpu"
    compute_type: str = "int8"
    model_directory: str | None = None
    beam_size: int = 5


@dataclass
class DeepgramConfig:
    """Deepgram API configuration (for deepgram backend)."""

    api_key: str | None = None
    model: str = "nova-3"
    smart_format: bool = True
    punctuate: bool = True
    timeout: float = 30.0


@dataclass
class InjectorConfig:
    """Clipboard and auto-paste configuration."""

    backend: str = "wtype"
    auto_paste: bool = True
    typing_delay: int = 5
    timeout: float = 10.0
    dry_run: bool = False


@dataclass
class TranscriptionConfig:
    """Transcription and text normalization settings."""

    timeout: float = 30.0
    language: str = "en"
    hallucination_phrases: list[str] = field(default_factory=list)


@dataclass
class SessionConfig:
    """Session state machine settings."""

    toggle_debounce_ms: float = 250.0
    error_cooldown: float = 3.0
    shutdown_timeout: float = 30.0


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False
    debug: bool = False


@dataclass
class Config:
    """Main configuration container."""

    input: InputConfig | None = None
    audio: AudioConfig = field(default_factory=AudioConfig)
    vad: VadConfig = field(default_factory=VadConfig)
    segmenter: SegmenterConfig = field(default_factory=SegmenterConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    injector: InjectorConfig = field(default_factory=InjectorConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. DICTATION_ENGINE_CONFIG env var
                  2. ./dictation-engine.toml
                  3. ~/.config/dictation-engine.toml
                  Built-in defaults are used when none exists.
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If an explicit config file is missing or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path) if resolved_path else {}

        try:
            coerced = _coerce_config_values(raw_data, env)
            input_section = coerced.get("input")
            return cls(
                input=InputConfig(**input_section) if input_section else None,
                audio=AudioConfig(**coerced.get("audio", {})),
                vad=VadConfig(**coerced.get("vad", {})),
                segmenter=SegmenterConfig(**coerced.get("segmenter", {})),
                model=ModelConfig(**coerced.get("model", {})),
                deepgram=DeepgramConfig(**coerced.get("deepgram", {})),
                injector=InjectorConfig(**coerced.get("injector", {})),
                transcription=TranscriptionConfig(**coerced.get("transcription", {})),
                session=SessionConfig(**coerced.get("session", {})),
                general=GeneralConfig(**coerced.get("general", {})),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values and available hardware.

        Raises:
            ConfigError: If values are out of range or devices unavailable
        """
        try:
            validate_vad_config(self.vad)
            validate_segmenter_config(self.segmenter)
            validate_session_config(self.session)
            if self.input is not None:
                validate_input_device(self.input.devices)
            validate_audio_device(
                self.audio.sample_rate,
                self.audio.channels,
                self.audio.device,
            )
            validate_model_config(self.model)
            validate_deepgram_config(self.model, self.deepgram)
            validate_injector_config(self.injector)
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Validation failed: {e}") from e


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path | None:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. DICTATION_ENGINE_CONFIG environment variable
    3. ./dictation-engine.toml (current directory)
    4. ~/.config/dictation-engine.toml (user config directory)

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("DICTATION_ENGINE_CONFIG"):
        candidate = Path(env_path)
        if not candidate.exists():
            raise ConfigError(f"Config file from DICTATION_ENGINE_CONFIG not found: {candidate}")
        logger.info("Using config file: %s", candidate.resolve())
        return candidate.resolve()

    for candidate in (
        Path("dictation-engine.toml"),
        Path.home() / ".config" / "dictation-engine.toml",
    ):
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    logger.info("No config file found, using defaults")
    return None


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for overrides

    Returns:
        Coerced dictionary ready for dataclass instantiation
    """
    unknown = set(raw_data) - set(_SECTIONS)
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(sorted(unknown))}")

    coerced = {}
    for section in _SECTIONS:
        coerced[section] = raw_data.get(section, {})
        if not isinstance(coerced[section], dict):
            raise ConfigError(f"Section [{section}] must be a table")

    input_section = coerced["input"]
    if "input" in raw_data:
        if not input_section.get("device"):
            raise ConfigError("input.device is required")

        if "key_codes" in input_section:
            key_codes_value = input_section.pop("key_codes")
            if not isinstance(key_codes_value, (list, tuple)):
                raise ConfigError("input.key_codes must be a list of key symbols")
            if not key_codes_value:
                raise ConfigError("input.key_codes cannot be empty")
            input_section["key_code"] = key_codes_value

        if not input_section.get("key_code"):
            raise ConfigError("input.key_code is required")

    phrases = coerced["transcription"].get("hallucination_phrases")
    if phrases is not None and not isinstance(phrases, list):
        raise ConfigError("transcription.hallucination_phrases must be a list of strings")

    deepgram_section = coerced["deepgram"]
    if not deepgram_section.get("api_key"):
        deepgram_section["api_key"] = env.get("DEEPGRAM_API_KEY")

    return coerced


def discover_input_devices() -> list[dict]:
    """Enumerate available input devices via evdev.

    Returns:
        List of device dicts with keys: path, name, capabilities
        Returns empty list if evdev unavailable or no devices found
    """
    try:
        import evdev
    except ImportError:
        logger.warning("evdev not available, cannot enumerate input devices")
        return []

    devices = []
    try:
        input_dir = Path("/dev/input/by-id")
        if not input_dir.exists():
            logger.warning("/dev/input/by-id not found")
            return devices

        for device_path in sorted(input_dir.iterdir()):
            try:
                dev = evdev.InputDevice(str(device_path))
                devices.append(
                    {
                        "path": str(device_path.resolve()),
                        "name": dev.name,
                        "capabilities": list(dev.capabilities().keys()),
                    }
                )
            except (OSError, PermissionError) as e:
                logger.debug("Cannot access device %s: %s", device_path, e)
    except Exception as e:
        logger.warning("Error discovering input devices: %s", e)

    return devices


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio capture devices.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate
        Returns empty list if sounddevice unavailable or no devices found
    """
    try:
        import sounddevice
    except ImportError:
        logger.warning("sounddevice not available, cannot enumerate audio devices")
        return []

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": dev_info.get("name", f"Device {idx}"),
                        "channels": dev_info.get("max_input_channels", 0),
                        "sample_rate": dev_info.get("default_samplerate", 0),
                    }
                )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_input_device(device_path: str | Sequence[str]) -> None:
    """Validate that configured hotkey device(s) exist and are accessible.

    Raises:
        ConfigError: If device not found or not accessible
    """
    try:
        import evdev
    except ImportError:
        logger.warning("evdev not available, skipping input device validation")
        return

    device_paths = [device_path] if isinstance(device_path, str) else list(device_path)

    for dev_path in device_paths:
        if not Path(dev_path).exists():
            available = discover_input_devices()
            device_list = (
                "\n  ".join(f"{d['path']} ({d['name']})" for d in available) or "none found"
            )
            raise ConfigError(
                f"Input device not found: {dev_path}\n"
                f"Available devices:\n  {device_list}"
            )

        try:
            evdev.InputDevice(dev_path)
        except (OSError, PermissionError) as e:
            raise ConfigError(
                f"Cannot access input device {dev_path}: {e}\n"
                f"Ensure you are in the 'input' group: groups | grep input"
            ) from e


def validate_audio_device(sample_rate: int, channels: int, device: int | str | None) -> None:
    """Validate that audio configuration is supported.

    Raises:
        ConfigError: If no suitable audio device found
    """
    if sample_rate <= 0:
        raise ConfigError(f"sample_rate must be positive, got {sample_rate}")
    if channels not in (1, 2):
        raise ConfigError(f"channels must be 1 or 2, got {channels}")

    devices = discover_audio_devices()
    if not devices:
        logger.warning("No audio capture devices found")
        return

    for dev in devices:
        if not _device_matches_selection(device, dev):
            continue
        if dev["channels"] >= channels and dev["sample_rate"] > 0:
            logger.debug(
                "Audio device validated: %s (%dHz, %d channels)",
                dev["name"],
                dev["sample_rate"],
                dev["channels"],
            )
            return

    device_list = "\n  ".join(
        f"{d['name']} ({d['channels']} ch, {d['sample_rate']}Hz)" for d in devices
    )
    raise ConfigError(
        f"No audio device supports {channels} channels at {sample_rate}Hz\n"
        f"Available devices:\n  {device_list}"
    )


def _device_matches_selection(selection: int | str | None, device: dict) -> bool:
    """Check whether a device matches the selection criteria."""

    if selection is None:
        return True
    if isinstance(selection, int):
        return device["index"] == selection

    normalized = selection.strip().lower()
    candidate = device.get("name", "").strip().lower()

    if candidate == normalized:
        return True

    return normalized in candidate


def validate_vad_config(vad_cfg: VadConfig) -> None:
    """Validate voice activity thresholds.

    Raises:
        ConfigError: If a threshold is out of range
    """
    if vad_cfg.speaking_threshold <= 0:
        raise ConfigError(
            f"speaking_threshold must be positive, got {vad_cfg.speaking_threshold}"
        )
    if vad_cfg.silence_hang_ms <= 0:
        raise ConfigError(f"silence_hang_ms must be positive, got {vad_cfg.silence_hang_ms}")
    if vad_cfg.min_volume_rms < 0:
        raise ConfigError(f"min_volume_rms must be non-negative, got {vad_cfg.min_volume_rms}")
    if vad_cfg.poll_interval_ms <= 0:
        raise ConfigError(f"poll_interval_ms must be positive, got {vad_cfg.poll_interval_ms}")


def validate_segmenter_config(seg_cfg: SegmenterConfig) -> None:
    """Validate segment limits.

    Raises:
        ConfigError: If a limit is out of range or the capture mode is unknown
    """
    if seg_cfg.capture_mode not in CAPTURE_MODES:
        raise ConfigError(
            f"Invalid capture_mode '{seg_cfg.capture_mode}'. "
            f"Must be one of: {', '.join(CAPTURE_MODES)}"
        )
    for name in ("min_segment_duration_ms", "min_flush_interval_ms", "min_final_bytes"):
        value = getattr(seg_cfg, name)
        if value < 0:
            raise ConfigError(f"{name} must be non-negative, got {value}")
    for name in ("max_segment_bytes", "max_segment_duration_ms"):
        value = getattr(seg_cfg, name)
        if value <= 0:
            raise ConfigError(f"{name} must be positive, got {value}")


def validate_session_config(session_cfg: SessionConfig) -> None:
    """Validate session timings.

    Raises:
        ConfigError: If a timing is negative
    """
    for name in ("toggle_debounce_ms", "error_cooldown", "shutdown_timeout"):
        value = getattr(session_cfg, name)
        if value < 0:
            raise ConfigError(f"{name} must be non-negative, got {value}")


def validate_model_config(model_cfg: ModelConfig) -> None:
    """Validate model configuration.

    Raises:
        ConfigError: If model configuration is invalid
    """
    valid_backends = ("faster_whisper", "deepgram")
    if model_cfg.backend not in valid_backends:
        raise ConfigError(
            f"Invalid backend '{model_cfg.backend}'. "
            f"Must be one of: {', '.join(valid_backends)}"
        )

    valid_compute_types = ("int8", "float16", "float32", "default")
    if model_cfg.compute_type not in valid_compute_types:
        raise ConfigError(
            f"Invalid compute_type '{model_cfg.compute_type}'. "
            f"Must be one of: {', '.join(valid_compute_types)}"
        )

    valid_devices = ("cpu", "cuda", "auto")
    if model_cfg.device not in valid_devices:
        raise ConfigError(
            f"Invalid device '{model_cfg.device}'. "
            f"Must be one of: {', '.join(valid_devices)}"
        )

    if model_cfg.beam_size <= 0:
        raise ConfigError(f"beam_size must be positive, got {model_cfg.beam_size}")


def validate_deepgram_config(model_cfg: ModelConfig, deepgram_cfg: DeepgramConfig) -> None:
    """Validate Deepgram configuration when backend is deepgram.

    Raises:
        ConfigError: If Deepgram configuration is invalid
    """
    if model_cfg.backend != "deepgram":
        return

    if not deepgram_cfg.api_key:
        raise ConfigError(
            "Deepgram API key is required when backend is 'deepgram'. "
            "Set it in config file or via DEEPGRAM_API_KEY environment variable."
        )

    if deepgram_cfg.timeout <= 0:
        raise ConfigError(f"Deepgram timeout must be positive, got {deepgram_cfg.timeout}")


def validate_injector_config(injector_cfg: InjectorConfig) -> None:
    """Validate paste sink configuration.

    Raises:
        ConfigError: If injector configuration is invalid
    """
    valid_backends = ("wtype", "ydotool", "xdotool")
    if injector_cfg.backend not in valid_backends:
        raise ConfigError(
            f"Invalid backend '{injector_cfg.backend}'. "
            f"Must be one of: {', '.join(valid_backends)}"
        )

    if injector_cfg.typing_delay < 0:
        raise ConfigError(
            f"typing_delay must be non-negative, got {injector_cfg.typing_delay}"
        )

    if injector_cfg.timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {injector_cfg.timeout}")


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().

    Raises:
        ConfigError: If config cannot be loaded
    """
    return Config.from_toml(path, env=env)
