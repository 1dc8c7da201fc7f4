"""
voicepipe.audio.vad — Energy-threshold voice activity detector as an explicit FSM.

The detector is fed one RMS sample per tick together with the tick time.
The silence timer is a deadline checked on each tick, so behaviour is fully
determined by the (rms, now) sequence and needs no wall clock.

    IDLE ──start()──► LISTENING ──loud──► RECORDING ──quiet──► DRAINING
                          ▲                   ▲                    │
                          │                   └──────loud──────────┤
                          └────── silence deadline reached ────────┘
                                  (emit if long enough)

stop()/cancel() return to IDLE from any state and discard the utterance.
"""

from __future__ import annotations

import logging
from typing import Optional

from voicepipe.utils.config import VadConfig
from voicepipe.utils.enums import VadState
from voicepipe.utils.types import Utterance

logger = logging.getLogger(__name__)


class IllegalStateTransition(Exception):
    """Raised when an invalid VAD transition is attempted."""

    def __init__(self, current: VadState, target: VadState):
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition: {current.name} → {target.name}")


# Valid transitions map: current_state → set of allowed next states
_TRANSITIONS: dict[VadState, set[VadState]] = {
    VadState.IDLE: {VadState.LISTENING},
    VadState.LISTENING: {VadState.RECORDING, VadState.IDLE},
    VadState.RECORDING: {
        VadState.DRAINING,
        VadState.LISTENING,  # max duration reached
        VadState.IDLE,
    },
    VadState.DRAINING: {
        VadState.RECORDING,  # speech resumed before the deadline
        VadState.LISTENING,  # silence deadline reached
        VadState.IDLE,
    },
}


class VoiceActivityDetector:
    """Turns a stream of (rms, now_ms) ticks into finished utterances.

    Utterances are returned from tick() exactly once, when the silence
    deadline passes (or max_speech_ms is exceeded) and the speech span is
    at least min_speech_duration_ms.
    """

    def __init__(self, config: VadConfig, max_speech_ms: Optional[int] = None):
        self.config = config
        self.max_speech_ms = max_speech_ms
        self._state = VadState.IDLE
        self._speech_start: Optional[float] = None
        self._speech_end: Optional[float] = None
        self._deadline: Optional[float] = None
        self._transition_log: list[tuple[float, VadState, VadState]] = []

        # Stats
        self.total_emitted = 0
        self.total_discarded = 0

    @property
    def state(self) -> VadState:
        return self._state

    @property
    def is_capturing(self) -> bool:
        """True while samples belong to an in-progress utterance."""
        return self._state in (VadState.RECORDING, VadState.DRAINING)

    @property
    def speech_start_ms(self) -> Optional[float]:
        return self._speech_start

    @property
    def silence_deadline_ms(self) -> Optional[float]:
        return self._deadline

    @property
    def history(self) -> list[tuple[float, VadState, VadState]]:
        return list(self._transition_log)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self, now_ms: float = 0.0):
        self._transition(VadState.LISTENING, now_ms)

    def stop(self, now_ms: float = 0.0):
        """Return to IDLE, dropping any in-progress utterance. Idempotent."""
        if self._state == VadState.IDLE:
            return
        if self.is_capturing:
            logger.debug("VAD stopped mid-utterance, discarding")
        self._reset_utterance()
        self._transition(VadState.IDLE, now_ms)

    cancel = stop

    # ── Ticks ─────────────────────────────────────────────────────────────

    def tick(self, rms: float, now_ms: float) -> Optional[Utterance]:
        """Advance the FSM by one energy sample.

        Returns the finished Utterance when one is emitted on this tick.
        """
        loud = rms >= self.config.threshold
        state = self._state

        if state == VadState.IDLE:
            return None

        if state == VadState.LISTENING:
            if loud:
                self._begin(now_ms)
            return None

        if self._max_duration_reached(now_ms):
            end = now_ms if state == VadState.RECORDING else self._speech_end
            return self._finalize(end, now_ms, forced=True)

        if state == VadState.RECORDING:
            if not loud:
                self._speech_end = now_ms
                self._deadline = now_ms + self.config.silence_timeout_ms
                self._transition(VadState.DRAINING, now_ms)
            return None

        # DRAINING
        if now_ms >= self._deadline:
            utterance = self._finalize(self._speech_end, now_ms)
            if loud:
                self._begin(now_ms)
            return utterance
        if loud:
            self._speech_end = None
            self._deadline = None
            self._transition(VadState.RECORDING, now_ms)
        return None

    # ── Internals ─────────────────────────────────────────────────────────

    def _begin(self, now_ms: float):
        self._speech_start = now_ms
        self._speech_end = None
        self._deadline = None
        self._transition(VadState.RECORDING, now_ms)

    def _max_duration_reached(self, now_ms: float) -> bool:
        return (
            self.max_speech_ms is not None
            and self._speech_start is not None
            and now_ms - self._speech_start >= self.max_speech_ms
        )

    def _finalize(
        self, end_ms: float, now_ms: float, forced: bool = False
    ) -> Optional[Utterance]:
        start = self._speech_start
        self._reset_utterance()
        self._transition(VadState.LISTENING, now_ms)

        duration = end_ms - start
        if duration < self.config.min_speech_duration_ms:
            self.total_discarded += 1
            logger.debug(
                "Utterance discarded: %.0fms < min %dms",
                duration,
                self.config.min_speech_duration_ms,
            )
            return None

        self.total_emitted += 1
        logger.info(
            "Utterance finalized: %.0fms%s", duration, " (max length)" if forced else ""
        )
        return Utterance(start_ms=start, end_ms=end_ms, finalized_ms=now_ms, forced=forced)

    def _reset_utterance(self):
        self._speech_start = None
        self._speech_end = None
        self._deadline = None

    def _transition(self, target: VadState, now_ms: float):
        allowed = _TRANSITIONS.get(self._state, set())
        if target not in allowed:
            raise IllegalStateTransition(self._state, target)
        old = self._state
        self._state = target
        self._transition_log.append((now_ms, old, target))
        logger.debug("VAD: %s → %s", old.name, target.name)
