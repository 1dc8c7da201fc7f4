"""
Tests for voicepipe.audio.capture — capture session lifecycle and utterance delivery.

The input stream is replaced by a fake factory and ticks are driven by hand
through _tick(), so no audio hardware or wall clock is involved.
"""

import asyncio
from unittest.mock import patch

import numpy as np
import pytest

from voicepipe.audio import capture as capture_mod
from voicepipe.audio.capture import AudioCaptureSession, device_owner
from voicepipe.audio.wav_codec import decode_wav, encode_wav
from voicepipe.observability.metrics import MetricsRegistry
from voicepipe.utils.config import AudioConfig, VadConfig
from voicepipe.utils.enums import VadState
from voicepipe.utils.errors import (
    AlreadyCapturing,
    DeviceUnavailable,
    EncodeError,
    PermissionDenied,
)

BLOCK = 1024
LOUD = 0.3
QUIET = 0.0


class FakeStream:
    def __init__(self):
        self.stopped = False
        self.closed = False

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True


class FakeStreamFactory:
    def __init__(self, error=None):
        self.error = error
        self.streams = []

    def __call__(self, config, callback):
        if self.error is not None:
            raise self.error
        stream = FakeStream()
        self.streams.append(stream)
        return stream


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture
def audio_config():
    # Tick loop effectively disabled; tests drive _tick() directly.
    return AudioConfig(sample_rate=16000, window_size=BLOCK, tick_ms=600_000)


@pytest.fixture
def vad_config():
    return VadConfig(threshold=0.02, silence_timeout_ms=1500, min_speech_duration_ms=500)


@pytest.fixture
def delivered():
    return []


@pytest.fixture
def errors():
    return []


@pytest.fixture
def session(audio_config, delivered, errors):
    s = AudioCaptureSession(
        audio_config,
        on_utterance=delivered.append,
        on_error=errors.append,
        stream_factory=FakeStreamFactory(),
        metrics=MetricsRegistry(),
        clock=lambda: 0.0,
    )
    yield s
    # The event loop is gone by teardown; only drop the device claim here.
    capture_mod._release_device(s.session_id)


def push_block(session, amplitude):
    block = np.full((BLOCK, 1), amplitude, dtype=np.float32)
    session._audio_callback(block, BLOCK, None, None)


def drive(session, pattern, start_ms=0):
    now = start_ms
    for amplitude, count in pattern:
        for _ in range(count):
            now += 100
            push_block(session, amplitude)
            session._tick(now)
    return now


# ── Lifecycle ────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_claims_device(self, session, vad_config):
        await session.start(vad_config)
        assert session.is_active
        assert session.state == VadState.LISTENING
        assert device_owner() == session.session_id

    @pytest.mark.asyncio
    async def test_stop_releases_device_and_closes_stream(self, session, vad_config):
        await session.start(vad_config)
        stream = session._stream
        session.stop()
        assert not session.is_active
        assert session.state == VadState.IDLE
        assert device_owner() is None
        assert stream.stopped and stream.closed

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, session):
        session.stop()
        session.stop()
        assert not session.is_active
        assert device_owner() is None

    @pytest.mark.asyncio
    async def test_double_start_rejected(self, session, vad_config):
        await session.start(vad_config)
        with pytest.raises(AlreadyCapturing):
            await session.start(vad_config)
        assert session.is_active

    @pytest.mark.asyncio
    async def test_overlapping_start_rejected(self, session, vad_config):
        results = await asyncio.gather(
            session.start(vad_config), session.start(vad_config), return_exceptions=True
        )
        assert results[0] is None
        assert isinstance(results[1], AlreadyCapturing)

        factory = session._stream_factory
        assert len(factory.streams) == 1
        session.stop()
        assert all(s.closed for s in factory.streams)
        assert device_owner() is None

    @pytest.mark.asyncio
    async def test_second_session_rejected(self, session, audio_config, vad_config):
        await session.start(vad_config)
        other = AudioCaptureSession(audio_config, stream_factory=FakeStreamFactory())
        with pytest.raises(AlreadyCapturing):
            await other.start(vad_config)
        assert device_owner() == session.session_id

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, session, vad_config):
        await session.start(vad_config)
        session.stop()
        await session.start(vad_config)
        assert session.is_active

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [PermissionDenied("refused"), DeviceUnavailable("no input device")]
    )
    async def test_open_failure_propagates(self, audio_config, vad_config, error):
        s = AudioCaptureSession(audio_config, stream_factory=FakeStreamFactory(error))
        with pytest.raises(type(error)):
            await s.start(vad_config)
        assert not s.is_active
        assert device_owner() is None


# ── Utterance delivery ───────────────────────────────────────────────────


class TestDelivery:
    @pytest.mark.asyncio
    async def test_utterance_delivered_as_wav(self, session, vad_config, delivered):
        await session.start(vad_config)
        drive(session, [(QUIET, 3), (LOUD, 6), (QUIET, 16)])
        await session.flush()

        assert len(delivered) == 1
        captured = delivered[0]
        assert captured.session_id == session.session_id
        assert captured.utterance.duration_ms == 600
        assert captured.wav[:4] == b"RIFF"
        # First loud block through the block that closed the utterance
        audio = decode_wav(captured.wav)
        assert audio.sample_rate == 16000
        assert len(audio) == 22 * BLOCK
        assert len(captured.wav) == 44 + 2 * 22 * BLOCK

    @pytest.mark.asyncio
    async def test_short_speech_discarded(self, session, vad_config, delivered):
        await session.start(vad_config)
        drive(session, [(LOUD, 3), (QUIET, 20)])
        await session.flush()
        assert delivered == []
        assert session._metrics.get_counter("capture.discarded") == 1
        assert session.is_active

    @pytest.mark.asyncio
    async def test_two_utterances_in_order(self, session, vad_config, delivered):
        await session.start(vad_config)
        drive(session, [(LOUD, 6), (QUIET, 16), (LOUD, 8), (QUIET, 16)])
        await session.flush()
        assert [c.utterance.duration_ms for c in delivered] == [600, 800]
        assert session._metrics.get_counter("capture.utterances") == 2

    @pytest.mark.asyncio
    async def test_level_tracks_input(self, session, vad_config):
        await session.start(vad_config)
        drive(session, [(LOUD, 1)])
        assert session.level == pytest.approx(LOUD, rel=1e-5)
        assert session.peak_level == pytest.approx(LOUD, rel=1e-5)
        session.stop()
        assert session.level == 0.0

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self, audio_config, vad_config):
        received = []

        async def on_utterance(captured):
            await asyncio.sleep(0)
            received.append(captured)

        s = AudioCaptureSession(
            audio_config, on_utterance=on_utterance, stream_factory=FakeStreamFactory()
        )
        await s.start(vad_config)
        try:
            drive(s, [(LOUD, 6), (QUIET, 16)])
            await s.flush()
        finally:
            s.stop()
        assert len(received) == 1


# ── Stop semantics ───────────────────────────────────────────────────────


class TestStopSemantics:
    @pytest.mark.asyncio
    async def test_stop_mid_utterance_discards(self, session, vad_config, delivered):
        await session.start(vad_config)
        drive(session, [(LOUD, 10)])
        session.stop()
        await asyncio.sleep(0.01)
        assert delivered == []

    @pytest.mark.asyncio
    async def test_no_callback_after_stop(self, session, vad_config, delivered):
        await session.start(vad_config)
        drive(session, [(LOUD, 6), (QUIET, 16)])
        # Encoding has been scheduled but not delivered yet
        session.stop()
        await asyncio.sleep(0.05)
        assert delivered == []

    @pytest.mark.asyncio
    async def test_frames_ignored_after_stop(self, session, vad_config):
        await session.start(vad_config)
        session.stop()
        push_block(session, LOUD)
        assert session._frame_queue.empty()


# ── Encode failures ──────────────────────────────────────────────────────


class TestEncodeFailure:
    @pytest.mark.asyncio
    async def test_encode_error_reported_and_session_continues(
        self, session, vad_config, delivered, errors
    ):
        calls = []

        def flaky_encode(audio):
            calls.append(audio)
            if len(calls) == 1:
                raise EncodeError("encoder exploded")
            return encode_wav(audio)

        await session.start(vad_config)
        with patch.object(capture_mod, "encode_wav", side_effect=flaky_encode):
            now = drive(session, [(LOUD, 6), (QUIET, 16)])
            await session.flush()
            assert len(errors) == 1
            assert isinstance(errors[0], EncodeError)
            assert delivered == []
            assert session.is_active

            drive(session, [(LOUD, 6), (QUIET, 16)], start_ms=now)
            await session.flush()

        assert len(delivered) == 1
        assert session._metrics.get_counter("capture.encode_errors") == 1

    @pytest.mark.asyncio
    async def test_unexpected_encoder_exception_wrapped(
        self, session, vad_config, errors
    ):
        await session.start(vad_config)
        with patch.object(capture_mod, "encode_wav", side_effect=RuntimeError("bad")):
            drive(session, [(LOUD, 6), (QUIET, 16)])
            await session.flush()
        assert len(errors) == 1
        assert isinstance(errors[0], EncodeError)
