"""
voicepipe.stream.backend — HTTP client for the voice model server.

The server speaks an OpenAI-style chat completions API:
  - user audio goes in as an `input_audio` content part (base64 WAV)
  - synthesized audio comes back as `audio_chunk` (base64 float32 PCM)
  - `extra_body.reset_context` clears the server-side conversation

stream_voice_input() reads the server-sent event stream and republishes each
chunk as a StreamEnvelope on the shared event bus, tagged with the caller's
stream id. Results of that call arrive only through the bus.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from typing import Any, Optional

import aiohttp

from voicepipe.core.event_bus import AsyncEventBus
from voicepipe.utils.config import BackendConfig
from voicepipe.utils.enums import AgentPersona, EnvelopeKind, VoiceMode
from voicepipe.utils.errors import TransportError
from voicepipe.utils.types import (
    StreamEnvelope,
    VoiceRequestOptions,
    VoiceResponse,
    VoiceServerStatus,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_ASR = "Perform ASR."
SYSTEM_PROMPT_TTS = "Perform TTS."
SYSTEM_PROMPT_INTERLEAVED = (
    "You are the voice assistant for a multi-agent coding workspace. "
    "Respond with both text and audio. Keep responses short and conversational; "
    "they will be spoken aloud."
)

PERSONA_PROMPTS: dict[AgentPersona, str] = {
    AgentPersona.MAYOR: "Speak as the Mayor, the coordinator who sees the whole town.",
    AgentPersona.WITNESS: "Speak as the Witness, who watches workers and reports on their health.",
    AgentPersona.REFINERY: "Speak as the Refinery, who manages the merge queue.",
    AgentPersona.DEACON: "Speak as the Deacon, the patrol that keeps everything running.",
    AgentPersona.POLECAT: "Speak as a Polecat, a worker agent focused on its current task.",
    AgentPersona.CREW: "Speak as a Crew member working alongside the user.",
}


def build_system_prompt(options: VoiceRequestOptions) -> str:
    """Resolve the system prompt for a request.

    An explicit prompt wins. ASR and TTS modes use their fixed prompts and
    ignore persona; interleaved mode appends the persona and speaker lines.
    """
    if options.system_prompt:
        return options.system_prompt
    if options.mode == VoiceMode.ASR:
        return SYSTEM_PROMPT_ASR
    if options.mode == VoiceMode.TTS:
        return SYSTEM_PROMPT_TTS

    parts = [SYSTEM_PROMPT_INTERLEAVED]
    persona_line = PERSONA_PROMPTS.get(options.persona)
    if persona_line:
        parts.append(persona_line)
    if options.speaker_name:
        parts.append(f"Your name is {options.speaker_name}.")
    return "\n\n".join(parts)


def _audio_content(wav: bytes) -> list[dict[str, Any]]:
    return [
        {
            "type": "input_audio",
            "input_audio": {
                "data": base64.b64encode(wav).decode("ascii"),
                "format": "wav",
            },
        }
    ]


class VoiceBackendClient:
    """Async client for the four backend commands.

    Every method raises TransportError when the server cannot be reached
    or answers with a non-2xx status.
    """

    def __init__(self, config: BackendConfig, event_bus: Optional[AsyncEventBus] = None):
        self.config = config
        self.event_bus = event_bus
        self._api_url = config.base_url.rstrip("/") + "/v1/chat/completions"

    # ── Commands ──────────────────────────────────────────────────────────

    async def send_voice_input(
        self, wav: bytes, options: Optional[VoiceRequestOptions] = None
    ) -> VoiceResponse:
        """Non-streaming voice exchange: one request, one full response."""
        options = options or VoiceRequestOptions()
        payload = self._build_payload(
            build_system_prompt(options), _audio_content(wav), options
        )
        message = await self._post_message(payload)
        return VoiceResponse(
            full_text=message.get("content") or "",
            last_sample_rate=self.config.default_sample_rate,
            audio=self._decode_audio(message.get("audio_chunk")),
        )

    async def stream_voice_input(
        self, wav: bytes, options: VoiceRequestOptions, stream_id: str
    ):
        """Streaming voice exchange; results are published on the event bus.

        Returns once the server closes the stream. A Done envelope is always
        published last unless the server reported an error.
        """
        if self.event_bus is None:
            raise TransportError("Streaming requires an event bus")

        payload = self._build_payload(
            build_system_prompt(options), _audio_content(wav), options, stream=True
        )
        start = time.monotonic()
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self._api_url, json=payload) as resp:
                    await self._raise_for_status(resp)
                    logger.debug(
                        "Stream %s opened (%.0fms)", stream_id, (time.monotonic() - start) * 1000
                    )
                    finished = await self._relay_events(resp, stream_id)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Failed to send request: {e}") from e

        if not finished:
            await self._publish(StreamEnvelope(stream_id=stream_id, kind=EnvelopeKind.DONE))

    async def transcribe_audio(self, wav: bytes) -> str:
        payload = self._build_payload(
            SYSTEM_PROMPT_ASR, _audio_content(wav), VoiceRequestOptions(mode=VoiceMode.ASR)
        )
        message = await self._post_message(payload)
        return message.get("content") or ""

    async def text_to_speech(self, text: str) -> VoiceResponse:
        payload = self._build_payload(
            SYSTEM_PROMPT_TTS, text, VoiceRequestOptions(mode=VoiceMode.TTS)
        )
        message = await self._post_message(payload)
        return VoiceResponse(
            full_text=text,
            last_sample_rate=self.config.default_sample_rate,
            audio=self._decode_audio(message.get("audio_chunk")),
        )

    async def status(self) -> VoiceServerStatus:
        """Probe the server's /health endpoint. Never raises."""
        url = self.config.base_url.rstrip("/") + "/health"
        timeout = aiohttp.ClientTimeout(total=self.config.health_timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as resp:
                    return VoiceServerStatus(
                        running=True, ready=resp.status == 200, url=self.config.base_url
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Voice server health check failed: %s", e)
            return VoiceServerStatus(running=False, ready=False, url=self.config.base_url)

    # ── Request plumbing ──────────────────────────────────────────────────

    def _build_payload(
        self,
        system_prompt: str,
        user_content: Any,
        options: VoiceRequestOptions,
        stream: bool = False,
    ) -> dict[str, Any]:
        extra: dict[str, Any] = {"reset_context": options.reset_context}
        if options.persona != AgentPersona.DEFAULT:
            extra["persona"] = options.persona.value
        if options.speaker_name:
            extra["speaker_name"] = options.speaker_name
        return {
            "model": "",
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "stream": stream,
            "max_tokens": self.config.max_tokens,
            "extra_body": extra,
        }

    async def _post_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self._api_url, json=payload) as resp:
                    await self._raise_for_status(resp)
                    try:
                        body = await resp.json(content_type=None)
                    except (json.JSONDecodeError, aiohttp.ContentTypeError) as e:
                        raise TransportError(f"Failed to parse response: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Failed to send request: {e}") from e

        try:
            return body["choices"][0]["message"] or {}
        except (KeyError, IndexError, TypeError) as e:
            raise TransportError(f"Unexpected response shape: {e}") from e

    @staticmethod
    async def _raise_for_status(resp: aiohttp.ClientResponse):
        if resp.status >= 400:
            body = await resp.text()
            raise TransportError(f"Server error {resp.status}: {body[:500]}", status=resp.status)

    @staticmethod
    def _decode_audio(data: Optional[str]) -> Optional[bytes]:
        if not data:
            return None
        try:
            return base64.b64decode(data)
        except (binascii.Error, ValueError) as e:
            logger.warning("Discarding undecodable audio_chunk: %s", e)
            return None

    # ── Server-sent events ────────────────────────────────────────────────

    async def _relay_events(self, resp: aiohttp.ClientResponse, stream_id: str) -> bool:
        """Publish one envelope per SSE chunk. Returns True once terminal."""
        async for raw in resp.content:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line or line.startswith(":") or not line.startswith("data:"):
                continue
            data = line[len("data:") :].strip()
            if data == "[DONE]":
                await self._publish(StreamEnvelope(stream_id=stream_id, kind=EnvelopeKind.DONE))
                return True

            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Stream %s: skipping malformed event %r", stream_id, data[:100])
                continue

            if chunk.get("error"):
                err = chunk["error"]
                message = err.get("message") if isinstance(err, dict) else str(err)
                await self._publish(
                    StreamEnvelope(
                        stream_id=stream_id,
                        kind=EnvelopeKind.ERROR,
                        message=message or "Voice stream error",
                    )
                )
                return True

            for envelope in self._envelopes_from_chunk(chunk, stream_id):
                await self._publish(envelope)
        return False

    def _envelopes_from_chunk(self, chunk: dict[str, Any], stream_id: str) -> list[StreamEnvelope]:
        choices = chunk.get("choices") or []
        if not choices:
            return []
        delta = choices[0].get("delta") or {}
        envelopes = []
        if delta.get("content"):
            envelopes.append(
                StreamEnvelope(stream_id=stream_id, kind=EnvelopeKind.TEXT, text=delta["content"])
            )
        audio = self._decode_audio(delta.get("audio_chunk"))
        if audio:
            envelopes.append(
                StreamEnvelope(
                    stream_id=stream_id,
                    kind=EnvelopeKind.AUDIO,
                    audio_bytes=audio,
                    sample_rate=int(
                        delta.get("audio_sample_rate") or self.config.default_sample_rate
                    ),
                )
            )
        return envelopes

    async def _publish(self, envelope: StreamEnvelope):
        await self.event_bus.emit(self.config.transport_channel, envelope)
