"""
voicepipe.utils.config — Centralized configuration with YAML loading and defaults.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VadConfig:
    """Immutable VAD parameters for one capture session."""

    threshold: float = 0.02
    silence_timeout_ms: int = 1500
    min_speech_duration_ms: int = 500

    def __post_init__(self):
        if not 0.0 < self.threshold <= 1.0:
            raise ValueError(f"VAD threshold must be in (0, 1], got {self.threshold}")
        if self.silence_timeout_ms < 0:
            raise ValueError("silence_timeout_ms must be >= 0")
        if self.min_speech_duration_ms < 0:
            raise ValueError("min_speech_duration_ms must be >= 0")


@dataclass
class AudioConfig:
    sample_rate: int = 16000
    channels: int = 1
    frame_size: int = 512  # samples per device callback (~32ms at 16kHz)
    tick_ms: int = 100  # VAD sampling cadence
    window_size: int = 1024  # samples in the RMS analysis window
    max_speech_ms: int = 30000  # force-finalize recordings longer than this
    peak_decay: float = 0.02  # peak level decay per tick


@dataclass
class VadSettings:
    threshold: float = 0.02
    silence_timeout_ms: int = 1500
    min_speech_duration_ms: int = 500

    def to_vad_config(self) -> VadConfig:
        return VadConfig(
            threshold=self.threshold,
            silence_timeout_ms=self.silence_timeout_ms,
            min_speech_duration_ms=self.min_speech_duration_ms,
        )


@dataclass
class BackendConfig:
    base_url: str = "http://127.0.0.1:8080"
    max_tokens: int = 512
    timeout_seconds: float = 60.0
    health_timeout_seconds: float = 5.0
    default_sample_rate: int = 24000
    transport_channel: str = "voice_stream"


@dataclass
class PlaybackConfig:
    enabled: bool = True


@dataclass
class ObservabilityConfig:
    log_dir: str = "logs"
    log_file: str = "voicepipe.jsonl"
    metrics_path: str = "logs/metrics.jsonl"
    max_histogram_size: int = 1000


@dataclass
class PipelineConfig:
    audio: AudioConfig = field(default_factory=AudioConfig)
    vad: VadSettings = field(default_factory=VadSettings)
    backend: BackendConfig = field(default_factory=BackendConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    debug: bool = False

    @classmethod
    def load(cls, config_path: str = "config.yaml") -> "PipelineConfig":
        """Read a YAML file over the defaults. A missing file means defaults."""
        config = cls()
        path = Path(config_path)
        if not path.exists():
            logger.debug("No config at %s, using defaults", path)
            return config
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls._merge(config, data)

    @classmethod
    def _merge(cls, config: "PipelineConfig", data: dict) -> "PipelineConfig":
        """Overlay section dicts field by field; unknown names are skipped."""
        known = {f.name for f in fields(config)}
        for name, value in data.items():
            if name not in known:
                logger.warning("Ignoring unknown config section '%s'", name)
                continue
            current = getattr(config, name)
            if is_dataclass(current) and isinstance(value, dict):
                section_fields = {f.name for f in fields(current)}
                for key, item in value.items():
                    if key in section_fields:
                        setattr(current, key, item)
                    else:
                        logger.warning("Ignoring unknown config key '%s.%s'", name, key)
            else:
                setattr(config, name, value)
        return config

    def ensure_dirs(self):
        """Create the log and metrics directories."""
        targets = {Path(self.observability.log_dir), Path(self.observability.metrics_path).parent}
        for directory in targets:
            directory.mkdir(parents=True, exist_ok=True)
