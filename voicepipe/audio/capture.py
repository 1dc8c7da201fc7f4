"""
voicepipe.audio.capture — Microphone capture session feeding the VAD.

Architecture:
  - sounddevice runs the InputStream callback on its own thread.
  - The callback pushes float32 mono blocks into a thread-safe queue.
  - An async tick loop (on the event loop) drains the queue every tick_ms,
    updates the RMS window, advances the VAD and buffers raw samples while
    an utterance is in progress.
  - Finished utterances are WAV-encoded in the default executor and handed
    to the on_utterance callback.

Only the queue crosses the thread boundary. All other state is touched
from the event loop alone.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
import uuid
from typing import Any, Callable, Optional

import numpy as np

from voicepipe.audio.energy import AnalysisWindow
from voicepipe.audio.vad import VoiceActivityDetector
from voicepipe.audio.wav_codec import encode_wav
from voicepipe.observability.metrics import MetricsRegistry
from voicepipe.utils.callbacks import invoke_callback
from voicepipe.utils.config import AudioConfig, VadConfig
from voicepipe.utils.enums import VadState
from voicepipe.utils.errors import (
    AlreadyCapturing,
    DeviceUnavailable,
    EncodeError,
    PermissionDenied,
    VoicePipelineError,
)
from voicepipe.utils.types import AudioBuffer, CapturedUtterance, Utterance

logger = logging.getLogger(__name__)

StreamFactory = Callable[[AudioConfig, Callable[..., None]], Any]


# ═══════════════════════════════════════════════════════════════════════════════
#  Device ownership
# ═══════════════════════════════════════════════════════════════════════════════

_device_lock = threading.Lock()
_device_owner: Optional[str] = None


def _claim_device(session_id: str):
    global _device_owner
    with _device_lock:
        if _device_owner is not None and _device_owner != session_id:
            raise AlreadyCapturing(_device_owner)
        _device_owner = session_id


def _release_device(session_id: str):
    global _device_owner
    with _device_lock:
        if _device_owner == session_id:
            _device_owner = None


def device_owner() -> Optional[str]:
    """Id of the session currently holding the microphone, if any."""
    return _device_owner


# ═══════════════════════════════════════════════════════════════════════════════
#  sounddevice input stream
# ═══════════════════════════════════════════════════════════════════════════════

_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "access")


def open_input_stream(config: AudioConfig, callback: Callable[..., None]):
    """Open and start a sounddevice InputStream. Blocking; run in an executor."""
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise DeviceUnavailable(f"sounddevice/PortAudio not available: {e}") from e

    try:
        sd.query_devices(kind="input")
    except (sd.PortAudioError, ValueError) as e:
        raise DeviceUnavailable(f"No audio input device: {e}") from e

    try:
        stream = sd.InputStream(
            samplerate=config.sample_rate,
            channels=config.channels,
            dtype="float32",
            blocksize=config.frame_size,
            callback=callback,
        )
        stream.start()
    except sd.PortAudioError as e:
        msg = str(e).lower()
        if any(marker in msg for marker in _PERMISSION_MARKERS):
            raise PermissionDenied(f"Microphone access refused: {e}") from e
        raise DeviceUnavailable(f"Cannot open input stream: {e}") from e
    return stream


# ═══════════════════════════════════════════════════════════════════════════════
#  Capture Session
# ═══════════════════════════════════════════════════════════════════════════════


class AudioCaptureSession:
    """One "listen" activation: owns the microphone until stop().

    Usage:
        session = AudioCaptureSession(config.audio, on_utterance=handle)
        await session.start(config.vad.to_vad_config())
        ...
        session.stop()
    """

    def __init__(
        self,
        config: AudioConfig,
        on_utterance: Optional[Callable[[CapturedUtterance], Any]] = None,
        on_error: Optional[Callable[[VoicePipelineError], Any]] = None,
        *,
        stream_factory: Optional[StreamFactory] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.session_id = uuid.uuid4().hex[:12]
        self.on_utterance = on_utterance
        self.on_error = on_error
        self._stream_factory = stream_factory or open_input_stream
        self._metrics = metrics
        self._clock = clock

        # Thread-safe queue for frame transfer: audio thread → tick loop
        self._frame_queue: queue.Queue[np.ndarray] = queue.Queue(maxsize=500)

        self._window = AnalysisWindow(config.window_size)
        self._buffer: list[np.ndarray] = []
        self._vad: Optional[VoiceActivityDetector] = None
        self._stream: Any = None
        self._tick_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._encode_lock = asyncio.Lock()  # FIFO: utterances deliver in order
        self._active = False
        self._starting = False  # set across the awaited device open
        self._generation = 0  # bumped on stop(); stale work checks it

        self.level = 0.0
        self.peak_level = 0.0
        self.dropped_blocks = 0

    # ── Public API ────────────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def state(self) -> VadState:
        return self._vad.state if self._vad else VadState.IDLE

    async def start(self, vad_config: VadConfig):
        """Acquire the microphone and begin ticking the VAD.

        Raises:
            AlreadyCapturing: this or another session holds the microphone.
            PermissionDenied: the platform refused microphone access.
            DeviceUnavailable: there is no usable input device.
        """
        if self._active or self._starting:
            raise AlreadyCapturing(self.session_id)
        _claim_device(self.session_id)

        generation = self._generation
        loop = asyncio.get_running_loop()
        self._starting = True
        try:
            stream = await loop.run_in_executor(
                None, self._stream_factory, self.config, self._audio_callback
            )
        except BaseException:
            _release_device(self.session_id)
            raise
        finally:
            self._starting = False

        if generation != self._generation:
            # stop() was called while the device was opening
            logger.info("Capture session %s stopped during start", self.session_id)
            self._close_stream(stream)
            _release_device(self.session_id)
            return

        self._stream = stream
        self._reset_buffers()
        self._vad = VoiceActivityDetector(vad_config, max_speech_ms=self.config.max_speech_ms)
        self._vad.start(self._now_ms())
        self._active = True
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(
            "Capture session %s started (sample_rate=%d, tick=%dms, threshold=%.3f, "
            "silence=%dms, min_speech=%dms)",
            self.session_id,
            self.config.sample_rate,
            self.config.tick_ms,
            vad_config.threshold,
            vad_config.silence_timeout_ms,
            vad_config.min_speech_duration_ms,
        )

    def stop(self):
        """Release the device and drop any in-progress utterance.

        Idempotent and safe before start(). No callback fires after this
        returns, even for encodes that were already running.
        """
        self._generation += 1
        was_active = self._active
        self._active = False

        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()
        self._tick_task = None

        for task in self._pending:
            if not task.done():
                task.cancel()
        self._pending.clear()

        if self._vad is not None:
            self._vad.stop(self._now_ms())

        if self._stream is not None:
            self._close_stream(self._stream)
            self._stream = None
        _release_device(self.session_id)

        self._reset_buffers()
        self.level = 0.0
        self.peak_level = 0.0
        if was_active:
            logger.info("Capture session %s stopped", self.session_id)

    cancel = stop

    async def flush(self):
        """Wait for utterances already handed to the encoder to be delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Audio thread ──────────────────────────────────────────────────────

    def _audio_callback(self, indata, frames_count, time_info, status):
        if status:
            logger.warning("Audio status: %s", status)
        if not self._active:
            return
        block = np.asarray(indata, dtype=np.float32)
        if block.ndim > 1:
            block = block[:, 0]
        try:
            self._frame_queue.put_nowait(block.copy())
        except queue.Full:
            self.dropped_blocks += 1  # drop rather than block the audio thread

    # ── Tick loop ─────────────────────────────────────────────────────────

    async def _tick_loop(self):
        interval = self.config.tick_ms / 1000
        try:
            while self._active:
                await asyncio.sleep(interval)
                if not self._active:
                    break
                self._tick(self._now_ms())
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.exception("Capture tick loop failed: %s", e)
            self.stop()

    def _tick(self, now_ms: float) -> Optional[Utterance]:
        """Process one sampling tick. Non-blocking."""
        chunk = self._drain_queue()
        self._window.push(chunk)
        rms = self._window.rms()
        self._update_level(rms)

        vad = self._vad
        if vad is None:
            return None
        finished_before = vad.total_emitted + vad.total_discarded
        utterance = vad.tick(rms, now_ms)

        if vad.total_emitted + vad.total_discarded != finished_before:
            # The previous utterance ended on this tick (emitted or discarded).
            if vad.is_capturing:
                finished, self._buffer = self._buffer, [chunk]
            else:
                finished, self._buffer = self._buffer + [chunk], []
            if utterance is None:
                self._count("capture.discarded")
            else:
                self._begin_encode(utterance, finished)
        elif vad.is_capturing:
            self._buffer.append(chunk)
        return utterance

    def _drain_queue(self) -> np.ndarray:
        blocks: list[np.ndarray] = []
        while True:
            try:
                blocks.append(self._frame_queue.get_nowait())
            except queue.Empty:
                break
        if not blocks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(blocks)

    def _update_level(self, rms: float):
        self.level = min(1.0, rms)
        self.peak_level = max(self.level, self.peak_level - self.config.peak_decay)

    # ── Encoding & delivery ───────────────────────────────────────────────

    def _begin_encode(self, utterance: Utterance, blocks: list[np.ndarray]):
        samples = np.concatenate(blocks) if blocks else np.zeros(0, dtype=np.float32)
        task = asyncio.get_running_loop().create_task(
            self._encode_and_deliver(self._generation, utterance, samples)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _encode_and_deliver(
        self, generation: int, utterance: Utterance, samples: np.ndarray
    ):
        async with self._encode_lock:
            await self._encode_one(generation, utterance, samples)

    async def _encode_one(self, generation: int, utterance: Utterance, samples: np.ndarray):
        loop = asyncio.get_running_loop()
        try:
            audio = AudioBuffer(samples=samples, sample_rate=self.config.sample_rate)
            wav = await loop.run_in_executor(None, encode_wav, audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation != self._generation:
                return
            err = e if isinstance(e, EncodeError) else EncodeError(str(e))
            self._count("capture.encode_errors")
            logger.warning("Utterance encoding failed (session continues): %s", err)
            await invoke_callback(self.on_error, err)
            return

        if generation != self._generation:
            logger.debug("Discarding late utterance from stopped session")
            return

        captured = CapturedUtterance(
            wav=wav, audio=audio, utterance=utterance, session_id=self.session_id
        )
        self._count("capture.utterances")
        logger.info(
            "Utterance captured: %.0fms speech, %d samples, %d bytes",
            utterance.duration_ms,
            len(audio),
            len(wav),
        )
        await invoke_callback(self.on_utterance, captured)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _reset_buffers(self):
        self._buffer = []
        self._window.clear()
        while True:
            try:
                self._frame_queue.get_nowait()
            except queue.Empty:
                break

    def _count(self, name: str):
        if self._metrics is not None:
            self._metrics.counter(name)

    @staticmethod
    def _close_stream(stream):
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Error closing input stream: %s", e)
