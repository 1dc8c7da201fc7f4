"""
voicepipe — Real-time voice interaction pipeline.

Microphone capture with energy-based voice activity detection, WAV encoding,
streamed requests to a voice model server, and ordered playback of the
audio that comes back.
"""

__version__ = "0.1.0"
