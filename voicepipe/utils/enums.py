"""
voicepipe.utils.enums — All enumerations used across the voice pipeline.
"""

from enum import Enum, auto


class VadState(Enum):
    """States of the voice activity detector."""

    IDLE = auto()
    LISTENING = auto()
    RECORDING = auto()
    DRAINING = auto()


class EnvelopeKind(Enum):
    """Kinds of stream envelope, valued by their wire name."""

    TEXT = "text"
    AUDIO = "audio"
    DONE = "done"
    ERROR = "error"


class PlaybackState(Enum):
    """Playback queue states reported to listeners."""

    IDLE = "idle"
    PLAYING = "playing"
    INTERRUPTED = "interrupted"


class VoiceMode(Enum):
    """Backend interaction modes. Each selects a different system prompt."""

    ASR = "asr"
    TTS = "tts"
    INTERLEAVED = "interleaved"


class AgentPersona(Enum):
    """Voice personas the backend can answer as."""

    DEFAULT = "default"
    MAYOR = "mayor"
    WITNESS = "witness"
    REFINERY = "refinery"
    DEACON = "deacon"
    POLECAT = "polecat"
    CREW = "crew"
