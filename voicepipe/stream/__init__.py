"""
voicepipe.stream — Voice server client and per-request stream demultiplexing.
"""

from voicepipe.stream.backend import VoiceBackendClient, build_system_prompt
from voicepipe.stream.channel import StreamingVoiceChannel, StreamHandle

__all__ = [
    "VoiceBackendClient",
    "build_system_prompt",
    "StreamingVoiceChannel",
    "StreamHandle",
]
