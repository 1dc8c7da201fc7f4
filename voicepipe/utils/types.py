"""
voicepipe.utils.types — Core dataclasses shared by capture, streaming and playback.
"""

from __future__ import annotations

import base64
import binascii
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from voicepipe.utils.enums import AgentPersona, EnvelopeKind, VoiceMode


DEFAULT_STREAM_SAMPLE_RATE = 24000


def _uid() -> str:
    return str(uuid.uuid4())


def _now() -> float:
    return time.time()


# ── Audio ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AudioBuffer:
    """Mono float32 samples in [-1, 1] plus their sample rate.

    The sample array is made read-only on construction, so a buffer handed
    out by the codec or the capture session cannot be mutated afterwards.
    """

    samples: np.ndarray
    sample_rate: int = 16000
    channels: int = 1

    def __post_init__(self):
        if self.channels != 1:
            raise ValueError(f"Only mono audio is supported, got {self.channels} channels")
        arr = np.array(self.samples, dtype=np.float32).reshape(-1)
        arr.setflags(write=False)
        object.__setattr__(self, "samples", arr)

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / self.sample_rate * 1000


@dataclass(frozen=True)
class Utterance:
    """One finished span of speech as reported by the VAD.

    Timestamps are in milliseconds on the clock the VAD was ticked with.
    `duration_ms` is the span from the first loud tick to the tick on
    which the signal last dropped below threshold.
    """

    start_ms: float
    end_ms: float
    finalized_ms: float
    forced: bool = False

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms


@dataclass(frozen=True)
class CapturedUtterance:
    """An encoded utterance surfaced by the capture session."""

    wav: bytes
    audio: AudioBuffer
    utterance: Utterance
    session_id: str = ""
    correlation_id: str = field(default_factory=_uid)


# ── Streaming ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StreamEnvelope:
    """One unit of a chunked streaming response, tagged with its stream id."""

    stream_id: str
    kind: EnvelopeKind
    text: Optional[str] = None
    audio_bytes: Optional[bytes] = None
    sample_rate: Optional[int] = None
    message: Optional[str] = None
    timestamp: float = field(default_factory=_now)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "StreamEnvelope":
        """Build an envelope from the camelCase transport payload.

        Raises ValueError on an unknown event kind, a missing stream id or
        undecodable base64 audio.
        """
        stream_id = payload.get("streamId")
        if not stream_id:
            raise ValueError("Envelope payload has no streamId")
        kind = EnvelopeKind(payload.get("event"))

        audio_bytes = None
        sample_rate = None
        if kind == EnvelopeKind.AUDIO:
            raw = payload.get("audioBase64") or ""
            try:
                audio_bytes = base64.b64decode(raw, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"Invalid audioBase64 in envelope: {e}") from e
            sample_rate = int(payload.get("audioSampleRate") or DEFAULT_STREAM_SAMPLE_RATE)

        return cls(
            stream_id=str(stream_id),
            kind=kind,
            text=payload.get("text"),
            audio_bytes=audio_bytes,
            sample_rate=sample_rate,
            message=payload.get("message"),
        )

    def to_payload(self) -> dict[str, Any]:
        d: dict[str, Any] = {"streamId": self.stream_id, "event": self.kind.value}
        if self.text is not None:
            d["text"] = self.text
        if self.audio_bytes is not None:
            d["audioBase64"] = base64.b64encode(self.audio_bytes).decode("ascii")
        if self.sample_rate is not None:
            d["audioSampleRate"] = self.sample_rate
        if self.message is not None:
            d["message"] = self.message
        return d


@dataclass
class VoiceResponse:
    """Accumulated result of one voice exchange."""

    full_text: str = ""
    last_sample_rate: int = DEFAULT_STREAM_SAMPLE_RATE
    audio: Optional[bytes] = None  # float32 PCM, only for non-streaming calls


@dataclass(frozen=True)
class VoiceRequestOptions:
    """Per-request options passed through to the backend."""

    mode: VoiceMode = VoiceMode.INTERLEAVED
    persona: AgentPersona = AgentPersona.DEFAULT
    speaker_name: Optional[str] = None
    reset_context: bool = True
    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class VoiceServerStatus:
    running: bool
    ready: bool
    url: str
