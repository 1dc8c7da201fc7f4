"""
voicepipe.utils.errors — Typed error taxonomy for capture, codec and streaming.

Callers catch the narrow type they can recover from. The pipeline itself
never retries: retry policy belongs to the caller.
"""

from __future__ import annotations

from typing import Optional


class VoicePipelineError(Exception):
    """Base class for every error raised by the voice pipeline."""


# ── Capture ──────────────────────────────────────────────────────────────


class CaptureError(VoicePipelineError):
    """Microphone capture could not be started."""


class PermissionDenied(CaptureError):
    """The platform refused access to the microphone."""


class DeviceUnavailable(CaptureError):
    """No usable audio input device exists."""


class AlreadyCapturing(CaptureError):
    """Another capture session already owns the microphone."""

    def __init__(self, owner: str = ""):
        self.owner = owner
        msg = "Microphone already in use"
        if owner:
            msg += f" by session {owner}"
        super().__init__(msg)


# ── Codec ────────────────────────────────────────────────────────────────


class FormatError(VoicePipelineError):
    """A WAV buffer has a missing tag or an inconsistent header."""


class EncodeError(VoicePipelineError):
    """Unexpected failure while producing WAV bytes."""


# ── Streaming ────────────────────────────────────────────────────────────


class TransportError(VoicePipelineError):
    """The backend was unreachable or rejected the request."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class StreamError(VoicePipelineError):
    """The backend sent an explicit error envelope for a request."""

    def __init__(self, message: str, stream_id: str = ""):
        self.message = message
        self.stream_id = stream_id
        super().__init__(message)
