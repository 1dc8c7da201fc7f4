"""
voicepipe — Real-time voice loop
Entry point: python -m voicepipe
"""

import argparse
import asyncio
import logging
import signal
import sys

from voicepipe.audio.capture import AudioCaptureSession
from voicepipe.audio.playback import AudioPlaybackQueue
from voicepipe.core.event_bus import AsyncEventBus
from voicepipe.observability.logger import setup_logging
from voicepipe.observability.metrics import MetricsRegistry
from voicepipe.stream.backend import VoiceBackendClient
from voicepipe.stream.channel import StreamingVoiceChannel
from voicepipe.utils.config import PipelineConfig
from voicepipe.utils.enums import AgentPersona, VoiceMode
from voicepipe.utils.errors import CaptureError, StreamError, TransportError
from voicepipe.utils.types import CapturedUtterance, VoiceRequestOptions

logger = logging.getLogger("voicepipe")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="voicepipe", description="Listen, stream to the voice server, play the reply."
    )
    parser.add_argument("--config", default="config.yaml", help="YAML config path")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in VoiceMode],
        default=VoiceMode.INTERLEAVED.value,
    )
    parser.add_argument(
        "--persona",
        choices=[p.value for p in AgentPersona],
        default=AgentPersona.DEFAULT.value,
    )
    parser.add_argument("--speaker", default=None, help="Name the assistant answers to")
    parser.add_argument("--once", action="store_true", help="Exit after one exchange")
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


async def wait_or_shutdown(awaitable, shutdown: asyncio.Event):
    """Await `awaitable` unless `shutdown` is set first.

    Returns the finished task (call .result() on it), or None if shutdown
    won; the abandoned awaitable is cancelled in that case.
    """
    task = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(shutdown.wait())
    done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    stopper.cancel()
    if task not in done:
        task.cancel()
        return None
    return task


async def run(args: argparse.Namespace) -> int:
    config = PipelineConfig.load(args.config)
    config.ensure_dirs()
    setup_logging(config.observability, debug=args.debug or config.debug)

    metrics = MetricsRegistry(
        output_path=config.observability.metrics_path,
        max_histogram_size=config.observability.max_histogram_size,
    )
    bus = AsyncEventBus()
    backend = VoiceBackendClient(config.backend, event_bus=bus)
    playback = (
        AudioPlaybackQueue(metrics=metrics) if config.playback.enabled else None
    )
    channel = StreamingVoiceChannel(
        backend,
        bus,
        playback=playback,
        channel_name=config.backend.transport_channel,
        default_sample_rate=config.backend.default_sample_rate,
        metrics=metrics,
    )
    options = VoiceRequestOptions(
        mode=VoiceMode(args.mode),
        persona=AgentPersona(args.persona),
        speaker_name=args.speaker,
    )

    status = await backend.status()
    if not status.running:
        logger.warning("Voice server at %s is not reachable", status.url)

    utterances: asyncio.Queue[CapturedUtterance] = asyncio.Queue()
    session = AudioCaptureSession(
        config.audio, on_utterance=utterances.put, metrics=metrics
    )
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, shutdown.set)
        loop.add_signal_handler(signal.SIGTERM, shutdown.set)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler
        pass

    vad_config = config.vad.to_vad_config()
    try:
        await session.start(vad_config)
    except CaptureError as e:
        logger.error("Cannot start capture: %s", e)
        return 1

    print("Listening... (Ctrl+C to stop)")
    exit_code = 0
    try:
        while not shutdown.is_set():
            got = await wait_or_shutdown(utterances.get(), shutdown)
            if got is None:
                break
            captured = got.result()

            # Mic stays closed while the reply streams and plays, so the
            # speaker output is never captured as a new utterance.
            session.stop()
            handle = channel.send(
                captured.wav,
                options,
                on_text_chunk=lambda text: print(text, end="", flush=True),
            )
            reply = await wait_or_shutdown(handle.result(), shutdown)
            if reply is None:
                handle.cancel()
                print()
                break
            try:
                reply.result()
                print()
            except (StreamError, TransportError) as e:
                print()
                logger.error("Voice exchange failed: %s", e)
                exit_code = 1
            if playback is not None and await wait_or_shutdown(playback.join(), shutdown) is None:
                break
            if args.once:
                break

            try:
                await session.start(vad_config)
            except CaptureError as e:
                logger.error("Cannot resume capture: %s", e)
                exit_code = 1
                break
    finally:
        session.stop()
        await channel.close()
        if playback is not None:
            await playback.close()
        bus.stop()
        await metrics.flush()
    return exit_code


def main():
    args = parse_args()
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt, shutting down")


if __name__ == "__main__":
    main()
