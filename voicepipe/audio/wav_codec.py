"""
voicepipe.audio.wav_codec — Canonical 44-byte PCM WAV encoding and decoding.

The backend decoder expects exactly this layout (all little-endian):

    0   "RIFF"         4   36 + data_size
    8   "WAVE"         12  "fmt "
    16  16 (fmt size)  20  1 (PCM)       22  1 (mono)
    24  sample_rate    28  byte_rate     32  block_align  34  16 (bits)
    36  "data"         40  data_size
    44  int16 samples

Both functions are pure.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

import numpy as np

from voicepipe.utils.errors import EncodeError, FormatError
from voicepipe.utils.types import AudioBuffer

HEADER_SIZE = 44
BITS_PER_SAMPLE = 16
PCM_FORMAT = 1

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")
_CHUNK = struct.Struct("<4sI")
_FMT = struct.Struct("<HHIIHH")


@dataclass(frozen=True)
class WavHeader:
    audio_format: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_offset: int
    data_size: int

    @property
    def sample_count(self) -> int:
        return self.data_size // self.block_align


# ── Encode ───────────────────────────────────────────────────────────────────


def quantize(samples: np.ndarray) -> np.ndarray:
    """Map float samples in [-1, 1] to int16.

    Values are clamped first; negatives scale by 32768 and positives by
    32767 so both ends of the int16 range are reachable.
    """
    s = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(s < 0, s * 32768.0, s * 32767.0)
    return np.rint(scaled).astype("<i2")


def dequantize(pcm: np.ndarray) -> np.ndarray:
    """Inverse of quantize(): int16 back to float32 in [-1, 1]."""
    v = pcm.astype(np.float64)
    return np.where(v < 0, v / 32768.0, v / 32767.0).astype(np.float32)


def encode_wav(audio: AudioBuffer) -> bytes:
    """Encode an AudioBuffer as a canonical mono 16-bit PCM WAV.

    Output length is always 44 + 2 * len(audio).

    Raises:
        EncodeError: samples are not finite, the sample rate is not a
            positive integer, or the header cannot be packed.
    """
    samples = audio.samples
    if samples.size and not np.all(np.isfinite(samples)):
        raise EncodeError("Cannot encode non-finite samples")
    if not isinstance(audio.sample_rate, (int, np.integer)) or audio.sample_rate <= 0:
        raise EncodeError(f"Sample rate must be a positive integer, got {audio.sample_rate!r}")

    data_size = 2 * len(samples)
    block_align = audio.channels * BITS_PER_SAMPLE // 8
    try:
        header = _HEADER.pack(
            b"RIFF",
            36 + data_size,
            b"WAVE",
            b"fmt ",
            16,
            PCM_FORMAT,
            audio.channels,
            audio.sample_rate,
            audio.sample_rate * block_align,
            block_align,
            BITS_PER_SAMPLE,
            b"data",
            data_size,
        )
    except struct.error as e:
        raise EncodeError(f"Cannot pack WAV header: {e}") from e

    return header + quantize(samples).tobytes()


def encode_samples(samples, sample_rate: int = 16000) -> bytes:
    """Convenience wrapper: encode a raw float array."""
    try:
        audio = AudioBuffer(samples=samples, sample_rate=sample_rate)
    except (TypeError, ValueError) as e:
        raise EncodeError(f"Invalid sample buffer: {e}") from e
    return encode_wav(audio)


# ── Decode ───────────────────────────────────────────────────────────────────


def parse_header(data: bytes) -> WavHeader:
    """Validate the RIFF structure and return the PCM header fields.

    Chunks other than "fmt " and "data" are skipped, so files with extra
    metadata chunks still decode.
    """
    if len(data) < HEADER_SIZE:
        raise FormatError(f"WAV too short: {len(data)} bytes")

    riff, riff_size, wave = struct.unpack_from("<4sI4s", data, 0)
    if riff != b"RIFF":
        raise FormatError("Missing RIFF tag")
    if wave != b"WAVE":
        raise FormatError("Missing WAVE tag")
    if riff_size + 8 > len(data):
        raise FormatError(
            f"RIFF size {riff_size} exceeds buffer length {len(data)}"
        )

    fmt = None
    offset = 12
    end = riff_size + 8
    while offset + _CHUNK.size <= end:
        tag, size = _CHUNK.unpack_from(data, offset)
        body = offset + _CHUNK.size
        if tag == b"fmt ":
            if size < _FMT.size or body + size > end:
                raise FormatError(f"Bad fmt chunk size {size}")
            fmt = _FMT.unpack_from(data, body)
        elif tag == b"data":
            if fmt is None:
                raise FormatError("data chunk before fmt chunk")
            if body + size > end:
                raise FormatError(
                    f"Declared data size {size} exceeds buffer length {len(data)}"
                )
            return _check_fmt(fmt, body, size)
        offset = body + size + (size & 1)  # chunks are word-aligned

    if fmt is None:
        raise FormatError("Missing fmt chunk")
    raise FormatError("Missing data chunk")


def _check_fmt(fmt: tuple, data_offset: int, data_size: int) -> WavHeader:
    audio_format, channels, sample_rate, byte_rate, block_align, bits = fmt
    if audio_format != PCM_FORMAT:
        raise FormatError(f"Unsupported audio format {audio_format} (expected PCM)")
    if channels != 1:
        raise FormatError(f"Unsupported channel count {channels} (expected mono)")
    if bits != BITS_PER_SAMPLE:
        raise FormatError(f"Unsupported bit depth {bits} (expected 16)")
    if sample_rate <= 0:
        raise FormatError("Sample rate must be positive")
    if block_align != channels * bits // 8:
        raise FormatError(f"Inconsistent block_align {block_align}")
    if byte_rate != sample_rate * block_align:
        raise FormatError(
            f"Inconsistent byte_rate {byte_rate} for sample_rate {sample_rate}"
        )
    if data_size % block_align:
        raise FormatError(f"data size {data_size} is not a whole number of samples")
    return WavHeader(
        audio_format=audio_format,
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bits_per_sample=bits,
        data_offset=data_offset,
        data_size=data_size,
    )


def decode_wav(data: bytes) -> AudioBuffer:
    """Decode WAV bytes produced by encode_wav() (or any mono 16-bit PCM WAV).

    Raises:
        FormatError: missing tags or header fields that do not describe
            the payload.
    """
    header = parse_header(data)
    pcm = np.frombuffer(
        data, dtype="<i2", count=header.sample_count, offset=header.data_offset
    )
    return AudioBuffer(samples=dequantize(pcm), sample_rate=header.sample_rate)
