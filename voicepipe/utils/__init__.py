"""
voicepipe.utils — Shared configuration, enumerations, types and errors.
"""

from voicepipe.utils.enums import (
    VadState,
    EnvelopeKind,
    PlaybackState,
    VoiceMode,
    AgentPersona,
)
from voicepipe.utils.config import PipelineConfig, VadConfig

__all__ = [
    "VadState",
    "EnvelopeKind",
    "PlaybackState",
    "VoiceMode",
    "AgentPersona",
    "PipelineConfig",
    "VadConfig",
]
