"""
Tests for voicepipe.audio.playback — ordered, non-overlapping chunk playback.
"""

import asyncio

import numpy as np
import pytest

from voicepipe.audio.playback import AudioPlaybackQueue, decode_float32_pcm
from voicepipe.observability.metrics import MetricsRegistry
from voicepipe.utils.enums import PlaybackState


def chunk(value: float, n: int = 4) -> bytes:
    return np.full(n, value, dtype="<f4").tobytes()


class RecordingPlayer:
    """Fake output device: logs start/end per chunk, with per-chunk delays."""

    def __init__(self, delays=None):
        self.delays = delays or {}
        self.events = []
        self.active = 0
        self.max_active = 0
        self.rates = []

    async def __call__(self, samples, sample_rate):
        label = round(float(samples[0]), 2)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(("start", label))
        self.rates.append(sample_rate)
        await asyncio.sleep(self.delays.get(label, 0))
        self.events.append(("end", label))
        self.active -= 1


class BlockingPlayer:
    def __init__(self):
        self.release = asyncio.Event()
        self.started = []

    async def __call__(self, samples, sample_rate):
        self.started.append(round(float(samples[0]), 2))
        await self.release.wait()


# ── Decoding ─────────────────────────────────────────────────────────────


class TestDecode:
    def test_decodes_little_endian_float32(self):
        out = decode_float32_pcm(np.array([0.5, -0.25], dtype="<f4").tobytes())
        assert out.dtype == np.float32
        assert out.tolist() == [0.5, -0.25]

    def test_misaligned_payload_rejected(self):
        with pytest.raises(ValueError):
            decode_float32_pcm(b"\x00\x01\x02")


# ── Ordering ─────────────────────────────────────────────────────────────


class TestOrdering:
    @pytest.mark.asyncio
    async def test_plays_in_enqueue_order_without_overlap(self):
        player = RecordingPlayer(delays={0.1: 0.03, 0.2: 0.01, 0.3: 0.0})
        playback = AudioPlaybackQueue(player=player)
        for v in (0.1, 0.2, 0.3):
            assert playback.enqueue(chunk(v), 24000)
        await playback.join()

        assert player.events == [
            ("start", 0.1), ("end", 0.1),
            ("start", 0.2), ("end", 0.2),
            ("start", 0.3), ("end", 0.3),
        ]
        assert player.max_active == 1
        assert playback.total_played == 3

    @pytest.mark.asyncio
    async def test_sample_rate_passed_per_chunk(self):
        player = RecordingPlayer()
        playback = AudioPlaybackQueue(player=player)
        playback.enqueue(chunk(0.1), 24000)
        playback.enqueue(chunk(0.2), 16000)
        await playback.join()
        assert player.rates == [24000, 16000]

    @pytest.mark.asyncio
    async def test_enqueue_while_playing_appends(self):
        player = RecordingPlayer(delays={0.1: 0.02})
        playback = AudioPlaybackQueue(player=player)
        playback.enqueue(chunk(0.1), 24000)
        await asyncio.sleep(0.005)
        assert playback.is_playing
        playback.enqueue(chunk(0.2), 24000)
        await playback.join()
        assert [e for e in player.events if e[0] == "start"] == [("start", 0.1), ("start", 0.2)]

    @pytest.mark.asyncio
    async def test_player_error_does_not_stop_queue(self):
        played = []

        async def player(samples, sample_rate):
            if samples[0] == np.float32(0.1):
                raise RuntimeError("device glitch")
            played.append(float(samples[0]))

        playback = AudioPlaybackQueue(player=player)
        playback.enqueue(chunk(0.1), 24000)
        playback.enqueue(chunk(0.5), 24000)
        await playback.join()
        assert played == [0.5]


# ── Rejection ────────────────────────────────────────────────────────────


class TestRejection:
    @pytest.mark.asyncio
    async def test_empty_chunk_not_queued(self):
        playback = AudioPlaybackQueue(player=RecordingPlayer())
        assert playback.enqueue(b"", 24000) is False
        assert playback.pending == 0
        assert playback.state == PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_misaligned_chunk_not_queued(self):
        playback = AudioPlaybackQueue(player=RecordingPlayer())
        assert playback.enqueue(b"\x00\x00\x80", 24000) is False
        assert playback.pending == 0

    @pytest.mark.asyncio
    async def test_bad_sample_rate_not_queued(self):
        playback = AudioPlaybackQueue(player=RecordingPlayer())
        assert playback.enqueue(chunk(0.1), 0) is False


# ── Clear & state ────────────────────────────────────────────────────────


class TestClearAndState:
    @pytest.mark.asyncio
    async def test_clear_discards_queued_and_current(self):
        player = BlockingPlayer()
        playback = AudioPlaybackQueue(player=player)
        for v in (0.1, 0.2, 0.3):
            playback.enqueue(chunk(v), 24000)
        await asyncio.sleep(0.01)
        assert player.started == [0.1]
        assert playback.pending == 3

        playback.clear()
        assert playback.pending == 0
        assert playback.state == PlaybackState.INTERRUPTED
        assert playback.total_interrupted == 1
        await asyncio.wait_for(playback.join(), timeout=1)

        player.release.set()
        await asyncio.sleep(0.01)
        assert player.started == [0.1]

    @pytest.mark.asyncio
    async def test_queue_usable_after_clear(self):
        player = RecordingPlayer()
        playback = AudioPlaybackQueue(player=player)
        playback.enqueue(chunk(0.1), 24000)
        playback.clear()
        playback.enqueue(chunk(0.2), 24000)
        await playback.join()
        assert player.events == [("start", 0.2), ("end", 0.2)]

    @pytest.mark.asyncio
    async def test_clear_when_idle_is_quiet(self):
        states = []
        playback = AudioPlaybackQueue(player=RecordingPlayer(), on_state_change=states.append)
        playback.clear()
        assert states == []
        assert playback.state == PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_state_callback_sequence(self):
        states = []
        playback = AudioPlaybackQueue(player=RecordingPlayer(), on_state_change=states.append)
        playback.enqueue(chunk(0.1), 24000)
        playback.enqueue(chunk(0.2), 24000)
        await playback.join()
        await asyncio.sleep(0)
        assert states == [PlaybackState.PLAYING, PlaybackState.IDLE]

    @pytest.mark.asyncio
    async def test_async_state_callback_is_tracked_and_errors_logged(self, caplog):
        states = []

        async def on_state(state):
            await asyncio.sleep(0)
            states.append(state)
            if state == PlaybackState.IDLE:
                raise RuntimeError("listener broke")

        playback = AudioPlaybackQueue(player=RecordingPlayer(), on_state_change=on_state)
        playback.enqueue(chunk(0.1), 24000)
        await playback.join()
        await playback.close()

        assert states == [PlaybackState.PLAYING, PlaybackState.IDLE]
        assert not playback._callback_tasks
        assert "listener broke" in caplog.text

    @pytest.mark.asyncio
    async def test_metrics_recorded(self):
        metrics = MetricsRegistry()
        playback = AudioPlaybackQueue(player=RecordingPlayer(), metrics=metrics)
        playback.enqueue(chunk(0.1), 24000)
        await playback.join()
        assert metrics.get_counter("playback.jobs") == 1
        assert len(metrics.get_histogram("playback.job_ms").samples) == 1

    @pytest.mark.asyncio
    async def test_close_returns_to_idle(self):
        playback = AudioPlaybackQueue(player=BlockingPlayer())
        playback.enqueue(chunk(0.1), 24000)
        await asyncio.sleep(0.01)
        await playback.close()
        assert playback.state == PlaybackState.IDLE
        assert playback.pending == 0
