"""Local ring feedback for unanswered incoming calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from .clock import Clock, TimerRegistry
from .machine import MachineState
from .types import CallState

logger = logging.getLogger(__name__)

_VIBRATE_TIMER = "vibrate"


class AudioPlayer(Protocol):
    def play_loop(self) -> None: ...

    def stop(self) -> None: ...


class Vibrator(Protocol):
    def vibrate(self, pattern: Sequence[int]) -> None:
        """Vibrate using an on/off pattern in milliseconds."""

    def cancel(self) -> None: ...


@dataclass(frozen=True, slots=True)
class RingtoneProfile:
    """Platform traits that shape ring feedback."""

    system_ringing_ui: bool = False
    native_haptics: bool = False
    haptic_interval: float = 2.0
    haptic_pattern: tuple[int, ...] = (400,)
    vibration_pattern: tuple[int, ...] = (800, 400, 800, 2000)
    vibration_interval: float = 4.0


class RingtoneController:
    """Drive audio and vibration while an incoming call is ringing.

    The controller is stateless with respect to calls: :meth:`sync` derives
    whether to ring from the machine state, so every transition out of the
    ringing condition stops feedback.
    """

    def __init__(
        self,
        clock: Clock,
        *,
        player: AudioPlayer | None = None,
        vibrator: Vibrator | None = None,
        profile: RingtoneProfile | None = None,
    ) -> None:
        self._player = player
        self._vibrator = vibrator
        self._profile = profile or RingtoneProfile()
        self._timers = TimerRegistry(clock)
        self._ringing = False

    @property
    def is_ringing(self) -> bool:
        return self._ringing

    def pending(self) -> frozenset[str]:
        return self._timers.pending()

    def sync(self, state: MachineState) -> None:
        if state.phase is CallState.RINGING and state.incoming is not None:
            self.start()
        else:
            self.stop()

    def start(self) -> None:
        if self._ringing:
            return
        self._ringing = True
        profile = self._profile
        if self._player is not None and not profile.system_ringing_ui:
            try:
                self._player.play_loop()
            except Exception:
                logger.warning("Failed to start ringtone audio", exc_info=logger.isEnabledFor(logging.DEBUG))
        if self._vibrator is None:
            return
        if profile.native_haptics:
            pattern, interval = profile.haptic_pattern, profile.haptic_interval
        else:
            pattern, interval = profile.vibration_pattern, profile.vibration_interval
        self._vibrate(pattern)
        self._timers.start(_VIBRATE_TIMER, interval, lambda: self._vibrate(pattern), repeat=True)

    def stop(self) -> None:
        self._timers.cancel_all()
        if not self._ringing:
            return
        self._ringing = False
        if self._player is not None and not self._profile.system_ringing_ui:
            try:
                self._player.stop()
            except Exception:
                logger.warning("Failed to stop ringtone audio", exc_info=logger.isEnabledFor(logging.DEBUG))
        if self._vibrator is not None:
            try:
                self._vibrator.cancel()
            except Exception:
                logger.warning("Failed to cancel vibration", exc_info=logger.isEnabledFor(logging.DEBUG))

    def _vibrate(self, pattern: Sequence[int]) -> None:
        if self._vibrator is None:
            return
        try:
            self._vibrator.vibrate(pattern)
        except Exception:
            logger.warning("Vibration failed", exc_info=logger.isEnabledFor(logging.DEBUG))
