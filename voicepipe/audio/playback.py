"""
voicepipe.audio.playback — Sequential playback of streamed float32 PCM chunks.

A single worker task consumes jobs from an asyncio.Queue, so chunks play
strictly in enqueue order and a chunk starts only after the previous one
has finished.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import numpy as np

from voicepipe.observability.metrics import MetricsRegistry
from voicepipe.utils.enums import PlaybackState

logger = logging.getLogger(__name__)

Player = Callable[[np.ndarray, int], Awaitable[None]]


def decode_float32_pcm(data: bytes) -> np.ndarray:
    """Decode little-endian float32 PCM bytes into a sample array."""
    if len(data) % 4:
        raise ValueError(f"PCM payload of {len(data)} bytes is not float32-aligned")
    return np.frombuffer(data, dtype="<f4").astype(np.float32)


@dataclass
class PlaybackJob:
    samples: np.ndarray
    sample_rate: int
    seq: int

    @property
    def duration_ms(self) -> float:
        return len(self.samples) / self.sample_rate * 1000


class AudioPlaybackQueue:
    """Plays audio chunks one after another without overlap.

    Usage:
        playback = AudioPlaybackQueue()
        playback.enqueue(chunk_bytes, 24000)   # from the stream handler
        await playback.join()                  # wait until everything played
        playback.clear()                       # on cancel / error
    """

    def __init__(
        self,
        player: Optional[Player] = None,
        on_state_change: Optional[Callable[[PlaybackState], Any]] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self._player = player or self._play_sounddevice
        self._uses_sounddevice = player is None
        self.on_state_change = on_state_change
        self._metrics = metrics

        self._queue: asyncio.Queue[PlaybackJob] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[PlaybackJob] = None
        self._state = PlaybackState.IDLE
        self._seq = 0
        self._callback_tasks: set[asyncio.Task] = set()

        # Stats
        self.total_played = 0
        self.total_interrupted = 0

    # ── Public API ────────────────────────────────────────────────────────

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state == PlaybackState.PLAYING

    @property
    def pending(self) -> int:
        """Jobs waiting plus the one playing, if any."""
        return self._queue.qsize() + (1 if self._current is not None else 0)

    def enqueue(self, data: bytes, sample_rate: int) -> bool:
        """Decode a float32 PCM chunk and append a playback job.

        Returns False (and queues nothing) for empty or malformed chunks.
        Must be called from the event loop.
        """
        if not data:
            return False
        if sample_rate <= 0:
            logger.warning("Dropping audio chunk with sample rate %s", sample_rate)
            return False
        try:
            samples = decode_float32_pcm(data)
        except ValueError as e:
            logger.warning("Dropping audio chunk: %s", e)
            return False
        if samples.size == 0:
            return False

        self._seq += 1
        self._queue.put_nowait(PlaybackJob(samples=samples, sample_rate=sample_rate, seq=self._seq))
        self._gauge_depth()
        self._ensure_worker()
        return True

    def clear(self):
        """Stop the playing job and discard everything queued."""
        had_work = self._current is not None or not self._queue.empty()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None

        if self._current is not None:
            self._current = None
            self._queue.task_done()
            self._stop_output()

        self._gauge_depth()
        if had_work:
            self.total_interrupted += 1
            logger.info("Playback interrupted, queue cleared")
            self._set_state(PlaybackState.INTERRUPTED)

    async def join(self):
        """Wait until every queued job has finished or been cleared."""
        await self._queue.join()

    async def close(self):
        self.clear()
        self._set_state(PlaybackState.IDLE)
        if self._callback_tasks:
            await asyncio.gather(*list(self._callback_tasks), return_exceptions=True)

    # ── Worker ────────────────────────────────────────────────────────────

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        while True:
            job = await self._queue.get()
            self._current = job
            self._set_state(PlaybackState.PLAYING)
            start = time.monotonic()
            try:
                await self._player(job.samples, job.sample_rate)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Audio playback error (job %d): %s", job.seq, e)
            else:
                self.total_played += 1
                if self._metrics is not None:
                    self._metrics.counter("playback.jobs")
                    self._metrics.histogram("playback.job_ms", (time.monotonic() - start) * 1000)
            self._current = None
            self._queue.task_done()
            self._gauge_depth()
            if self._queue.empty():
                self._set_state(PlaybackState.IDLE)

    # ── Output ────────────────────────────────────────────────────────────

    @staticmethod
    async def _play_sounddevice(samples: np.ndarray, sample_rate: int):
        """Play audio via sounddevice in the default executor."""
        import sounddevice as sd

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, lambda: sd.play(samples, samplerate=sample_rate, blocking=True)
        )

    def _stop_output(self):
        if not self._uses_sounddevice:
            return
        try:
            import sounddevice as sd

            sd.stop()
        except Exception as e:
            logger.warning("Failed to stop audio output: %s", e)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _set_state(self, state: PlaybackState):
        if state == self._state:
            return
        self._state = state
        if self.on_state_change is None:
            return
        try:
            result = self.on_state_change(state)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_finished)
        except Exception as e:
            logger.error("Playback state callback raised: %s", e)

    def _callback_finished(self, task: asyncio.Task):
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Playback state callback raised: %s", task.exception())

    def _gauge_depth(self):
        if self._metrics is not None:
            self._metrics.gauge("playback.queue_depth", self.pending)
