"""
voicepipe.audio — WAV codec, energy metering, VAD, capture sessions and playback.
"""

from voicepipe.audio.wav_codec import encode_wav, decode_wav, parse_header
from voicepipe.audio.energy import EnergyDetector, AnalysisWindow
from voicepipe.audio.vad import VoiceActivityDetector, IllegalStateTransition
from voicepipe.audio.capture import AudioCaptureSession
from voicepipe.audio.playback import AudioPlaybackQueue

__all__ = [
    "encode_wav",
    "decode_wav",
    "parse_header",
    "EnergyDetector",
    "AnalysisWindow",
    "VoiceActivityDetector",
    "IllegalStateTransition",
    "AudioCaptureSession",
    "AudioPlaybackQueue",
]
