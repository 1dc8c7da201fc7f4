"""
voicepipe.stream.channel — Per-request demultiplexing of the shared voice stream.

The event transport is a broadcast channel: every envelope reaches every
subscriber. The channel keeps a registry of in-flight requests keyed by
stream id and routes each envelope to its own request only. Anything that
does not match a registered id (other clients' streams, stragglers after
Done/Error, envelopes for cancelled requests) is dropped.

Lifecycle of one request:

    send() ──register──► [Text | Audio]* ──► Done   → result, on_done
                                        └──► Error  → StreamError, on_error
           cancel() at any point        ──► deregistered, no callbacks
           transport failure            ──► TransportError, on_error
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from voicepipe.audio.playback import AudioPlaybackQueue
from voicepipe.core.event_bus import AsyncEventBus
from voicepipe.observability.metrics import MetricsRegistry
from voicepipe.stream.backend import VoiceBackendClient
from voicepipe.utils.callbacks import invoke_callback
from voicepipe.utils.enums import EnvelopeKind
from voicepipe.utils.errors import StreamError, TransportError, VoicePipelineError
from voicepipe.utils.types import StreamEnvelope, VoiceRequestOptions, VoiceResponse

logger = logging.getLogger(__name__)

DEFAULT_TRANSPORT_CHANNEL = "voice_stream"


@dataclass
class _PendingRequest:
    """Accumulator for one in-flight request. Never shared between requests."""

    stream_id: str
    options: VoiceRequestOptions
    future: asyncio.Future
    on_text_chunk: Optional[Callable[[str], Any]] = None
    on_audio_chunk: Optional[Callable[[bytes, int], Any]] = None
    on_error: Optional[Callable[[str], Any]] = None
    on_done: Optional[Callable[[str], Any]] = None
    text_parts: list[str] = field(default_factory=list)
    last_sample_rate: int = 24000
    audio_chunks: int = 0
    transmit_task: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def full_text(self) -> str:
        return "".join(self.text_parts)


class StreamHandle:
    """Caller's view of one streaming request."""

    def __init__(self, channel: "StreamingVoiceChannel", stream_id: str, future: asyncio.Future):
        self._channel = channel
        self.stream_id = stream_id
        self._future = future

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def cancelled(self) -> bool:
        return self._future.cancelled()

    async def result(self) -> VoiceResponse:
        """Wait for the final VoiceResponse.

        Raises:
            StreamError: the backend sent an Error envelope.
            TransportError: the request could not be delivered.
            asyncio.CancelledError: the request was cancelled.
        """
        return await asyncio.shield(self._future)

    def cancel(self) -> bool:
        return self._channel.cancel(self.stream_id)

    def __repr__(self) -> str:
        return f"StreamHandle(stream_id={self.stream_id!r}, done={self.done})"


class StreamingVoiceChannel:
    """Sends utterances to the backend and routes streamed replies by id.

    Many requests may be in flight at once; each has its own accumulator
    and callbacks. The channel stays usable after any request fails.
    """

    def __init__(
        self,
        backend: VoiceBackendClient,
        event_bus: AsyncEventBus,
        playback: Optional[AudioPlaybackQueue] = None,
        channel_name: str = DEFAULT_TRANSPORT_CHANNEL,
        default_sample_rate: int = 24000,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.backend = backend
        self.event_bus = event_bus
        self.playback = playback
        self.channel_name = channel_name
        self.default_sample_rate = default_sample_rate
        self._metrics = metrics

        self._pending: dict[str, _PendingRequest] = {}
        self._subscribed = False

        # Stats
        self.dropped_envelopes = 0

    # ── Public API ────────────────────────────────────────────────────────

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def is_pending(self, stream_id: str) -> bool:
        return stream_id in self._pending

    def send(
        self,
        utterance: bytes,
        options: Optional[VoiceRequestOptions] = None,
        *,
        on_text_chunk: Optional[Callable[[str], Any]] = None,
        on_audio_chunk: Optional[Callable[[bytes, int], Any]] = None,
        on_error: Optional[Callable[[str], Any]] = None,
        on_done: Optional[Callable[[str], Any]] = None,
    ) -> StreamHandle:
        """Start a streaming request for one WAV utterance.

        The listener is registered before anything is transmitted, so no
        envelope for the new stream id can be missed. Must be called from
        a running event loop.
        """
        loop = asyncio.get_running_loop()
        options = options or VoiceRequestOptions()
        stream_id = str(uuid.uuid4())
        future = loop.create_future()
        future.add_done_callback(_mark_retrieved)

        pending = _PendingRequest(
            stream_id=stream_id,
            options=options,
            future=future,
            on_text_chunk=on_text_chunk,
            on_audio_chunk=on_audio_chunk,
            on_error=on_error,
            on_done=on_done,
            last_sample_rate=self.default_sample_rate,
        )
        self._pending[stream_id] = pending
        self._ensure_subscribed()

        pending.transmit_task = loop.create_task(self._transmit(pending, utterance))
        self._count("stream.requests")
        self._gauge_pending()
        logger.info(
            "Voice stream %s sent (%d bytes, mode=%s, persona=%s)",
            stream_id,
            len(utterance),
            options.mode.value,
            options.persona.value,
            extra={"stream_id": stream_id},
        )
        return StreamHandle(self, stream_id, future)

    def cancel(self, stream_id: str) -> bool:
        """Drop a request immediately. Returns False if it already ended.

        No callback fires for this request afterwards, whatever arrives.
        """
        pending = self._deregister(stream_id)
        if pending is None:
            return False
        if pending.transmit_task is not None and not pending.transmit_task.done():
            pending.transmit_task.cancel()
        if not pending.future.done():
            pending.future.cancel()
        if pending.audio_chunks and self.playback is not None:
            self.playback.clear()
        self._count("stream.cancelled")
        logger.info("Voice stream %s cancelled", stream_id, extra={"stream_id": stream_id})
        return True

    def cancel_all(self) -> int:
        return sum(1 for sid in list(self._pending) if self.cancel(sid))

    async def close(self):
        """Cancel everything in flight and detach from the transport."""
        self.cancel_all()
        self._unsubscribe()

    # ── Non-streaming commands ────────────────────────────────────────────

    async def send_once(
        self, utterance: bytes, options: Optional[VoiceRequestOptions] = None
    ) -> VoiceResponse:
        """One-shot voice exchange; plays the returned audio if any."""
        response = await self.backend.send_voice_input(utterance, options)
        self._play_response(response)
        return response

    async def transcribe(self, utterance: bytes) -> str:
        return await self.backend.transcribe_audio(utterance)

    async def speak(self, text: str) -> VoiceResponse:
        response = await self.backend.text_to_speech(text)
        self._play_response(response)
        return response

    # ── Transport ─────────────────────────────────────────────────────────

    async def _transmit(self, pending: _PendingRequest, utterance: bytes):
        try:
            await self.backend.stream_voice_input(utterance, pending.options, pending.stream_id)
        except asyncio.CancelledError:
            raise
        except TransportError as e:
            await self._fail(pending, e)
        except Exception as e:
            await self._fail(pending, TransportError(str(e)))

    async def _on_envelope(self, event: Any):
        """Bus handler: route one envelope to its request, or drop it."""
        if isinstance(event, StreamEnvelope):
            envelope = event
        else:
            try:
                envelope = StreamEnvelope.from_payload(event)
            except (ValueError, TypeError, AttributeError) as e:
                logger.debug("Ignoring malformed envelope on '%s': %s", self.channel_name, e)
                return

        pending = self._pending.get(envelope.stream_id)
        if pending is None:
            self.dropped_envelopes += 1
            self._count("stream.dropped_envelopes")
            logger.debug(
                "Dropping %s envelope for unknown stream %s",
                envelope.kind.value,
                envelope.stream_id,
            )
            return

        kind = envelope.kind
        if kind == EnvelopeKind.TEXT:
            if envelope.text:
                pending.text_parts.append(envelope.text)
                await invoke_callback(pending.on_text_chunk, envelope.text)
        elif kind == EnvelopeKind.AUDIO:
            if envelope.audio_bytes:
                sample_rate = envelope.sample_rate or self.default_sample_rate
                pending.last_sample_rate = sample_rate
                pending.audio_chunks += 1
                if self.playback is not None:
                    self.playback.enqueue(envelope.audio_bytes, sample_rate)
                await invoke_callback(pending.on_audio_chunk, envelope.audio_bytes, sample_rate)
        elif kind == EnvelopeKind.ERROR:
            message = envelope.message or "Voice stream error"
            await self._fail(pending, StreamError(message, stream_id=pending.stream_id))
        elif kind == EnvelopeKind.DONE:
            await self._complete(pending)

    async def _complete(self, pending: _PendingRequest):
        if self._deregister(pending.stream_id) is None:
            return
        response = VoiceResponse(
            full_text=pending.full_text, last_sample_rate=pending.last_sample_rate
        )
        latency_ms = (time.monotonic() - pending.started_at) * 1000
        if not pending.future.done():
            pending.future.set_result(response)
        self._count("stream.completed")
        if self._metrics is not None:
            self._metrics.histogram("stream.latency_ms", latency_ms)
        logger.info(
            "Voice stream %s done: %d chars, %d audio chunks, %.0fms",
            pending.stream_id,
            len(response.full_text),
            pending.audio_chunks,
            latency_ms,
            extra={"stream_id": pending.stream_id},
        )
        await invoke_callback(pending.on_done, response.full_text)

    async def _fail(self, pending: _PendingRequest, error: VoicePipelineError):
        # The transmit task is left alone: the backend stops relaying after
        # an error, and bus handlers run inside its emit() call.
        if self._deregister(pending.stream_id) is None:
            return
        if not pending.future.done():
            pending.future.set_exception(error)
        if pending.audio_chunks and self.playback is not None:
            self.playback.clear()
        self._count("stream.errors")
        if isinstance(error, StreamError):
            logger.warning(
                "Voice stream %s error from backend: %s",
                pending.stream_id,
                error.message,
                extra={"stream_id": pending.stream_id},
            )
        else:
            logger.error(
                "Voice stream %s transport failure: %s",
                pending.stream_id,
                error,
                extra={"stream_id": pending.stream_id},
            )
        await invoke_callback(pending.on_error, str(error))

    # ── Registry ──────────────────────────────────────────────────────────

    def _deregister(self, stream_id: str) -> Optional[_PendingRequest]:
        pending = self._pending.pop(stream_id, None)
        if pending is not None:
            self._gauge_pending()
            if not self._pending:
                self._unsubscribe()
        return pending

    def _ensure_subscribed(self):
        if not self._subscribed:
            self.event_bus.subscribe(self.channel_name, self._on_envelope)
            self._subscribed = True

    def _unsubscribe(self):
        if self._subscribed:
            self.event_bus.unsubscribe(self.channel_name, self._on_envelope)
            self._subscribed = False

    # ── Helpers ───────────────────────────────────────────────────────────

    def _play_response(self, response: VoiceResponse):
        if response.audio and self.playback is not None:
            self.playback.enqueue(response.audio, response.last_sample_rate)

    def _count(self, name: str):
        if self._metrics is not None:
            self._metrics.counter(name)

    def _gauge_pending(self):
        if self._metrics is not None:
            self._metrics.gauge("stream.pending", len(self._pending))


def _mark_retrieved(future: asyncio.Future):
    # Failures are reported through on_error and the log; callers that never
    # await result() should not trigger "exception was never retrieved".
    if not future.cancelled():
        future.exception()
