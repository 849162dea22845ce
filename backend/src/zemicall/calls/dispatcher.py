"""Turn signal rows into typed state-machine events."""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Callable, Iterable

from .clock import Clock
from .machine import (
    AnswerReceived,
    CancelReceived,
    DeclineReceived,
    Event,
    HangupReceived,
    RingReceived,
)
from .ports import CallLogStore, Directory, SignalStore, Subscription
from .types import CallSignal, CallType, Profile, SignalType

logger = logging.getLogger(__name__)

EventSink = Callable[[Event], None]


class DiscardReason(str, Enum):
    DUPLICATE = "duplicate"
    EXPIRED = "expired"
    OWN_SIGNAL = "own_signal"
    SETTLED = "settled"


_EVENT_FACTORIES: dict[SignalType, Callable[[CallSignal], Event]] = {
    SignalType.ANSWER: AnswerReceived,
    SignalType.DECLINE: lambda signal: DeclineReceived(signal, busy=False),
    SignalType.BUSY: lambda signal: DeclineReceived(signal, busy=True),
    SignalType.CANCEL: CancelReceived,
    SignalType.HANGUP: HangupReceived,
}

# Rings need caller enrichment and are built separately.
if set(_EVENT_FACTORIES) | {SignalType.RING} != set(SignalType):
    raise RuntimeError("Every signal type needs a dispatch rule")

# Signals the local user emits that still matter to this device: an answer or
# decline from another of the user's devices settles a pending ring here.
_OWN_SIGNALS_OF_INTEREST = frozenset({SignalType.ANSWER, SignalType.DECLINE})
_SETTLING_SIGNALS = frozenset({SignalType.CANCEL, SignalType.HANGUP})


class _BoundedSet:
    """Insertion-ordered set that forgets its oldest entries."""

    def __init__(self, size: int) -> None:
        self._order: deque[str] = deque()
        self._items: set[str] = set()
        self._size = size

    def __contains__(self, item: str) -> bool:
        return item in self._items

    def add(self, item: str) -> None:
        if item in self._items:
            return
        self._order.append(item)
        self._items.add(item)
        while len(self._order) > self._size:
            self._items.discard(self._order.popleft())


class SignalDispatcher:
    """Per-chat signal subscriptions feeding one call controller.

    Dispatch is keyed by ``call_log_id`` so reordered deliveries resolve
    against the call they belong to rather than against arrival order.
    """

    def __init__(
        self,
        store: SignalStore,
        *,
        user_id: str,
        sink: EventSink,
        clock: Clock,
        directory: Directory,
        call_logs: CallLogStore,
        history_size: int = 512,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._sink = sink
        self._clock = clock
        self._directory = directory
        self._call_logs = call_logs
        self._seen = _BoundedSet(history_size)
        self._settled = _BoundedSet(history_size)
        self._subscriptions: dict[str, Subscription] = {}
        self.discarded: dict[DiscardReason, int] = {reason: 0 for reason in DiscardReason}

    @property
    def watched(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    async def watch(self, chat_id: str) -> None:
        if chat_id in self._subscriptions:
            return
        self._subscriptions[chat_id] = await self._store.subscribe(chat_id, self.handle)
        logger.debug("Watching call signals", extra={"chat_id": chat_id})

    async def unwatch(self, chat_id: str) -> None:
        subscription = self._subscriptions.pop(chat_id, None)
        if subscription is not None:
            await subscription.close()
            logger.debug("Stopped watching call signals", extra={"chat_id": chat_id})

    async def sync(self, chat_ids: Iterable[str]) -> None:
        """Watch exactly ``chat_ids``, closing subscriptions for any other chat."""

        wanted = set(chat_ids)
        for chat_id in self.watched - wanted:
            await self.unwatch(chat_id)
        for chat_id in sorted(wanted):
            await self.watch(chat_id)

    async def close(self) -> None:
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            try:
                await subscription.close()
            except Exception:
                logger.exception("Failed to close call signal subscription")

    def _discard(self, signal: CallSignal, reason: DiscardReason) -> None:
        self.discarded[reason] += 1
        logger.debug(
            "Discarded %s signal: %s",
            signal.signal_type.value,
            reason.value,
            extra={"signal_id": signal.id, "call_log_id": signal.call_log_id},
        )

    def _rejected(self, signal: CallSignal) -> DiscardReason | None:
        if signal.is_expired(self._clock.utcnow()):
            return DiscardReason.EXPIRED
        if signal.signal_type is SignalType.RING and signal.call_log_id in self._settled:
            return DiscardReason.SETTLED
        return None

    async def handle(self, signal: CallSignal) -> None:
        """Validate one delivered row and forward it as an event."""

        if signal.id in self._seen:
            self._discard(signal, DiscardReason.DUPLICATE)
            return
        self._seen.add(signal.id)

        own = signal.caller_id == self._user_id
        if own and signal.signal_type not in _OWN_SIGNALS_OF_INTEREST:
            self._discard(signal, DiscardReason.OWN_SIGNAL)
            return
        if signal.signal_type in _SETTLING_SIGNALS or own:
            self._settled.add(signal.call_log_id)

        reason = self._rejected(signal)
        if reason is not None:
            self._discard(signal, reason)
            return

        if signal.signal_type is SignalType.RING:
            caller, call_type = await self._describe_ring(signal)
            # A cancel may have landed while the lookups were in flight.
            reason = self._rejected(signal)
            if reason is not None:
                self._discard(signal, reason)
                return
            self._sink(RingReceived(signal, caller, call_type))
            return

        self._sink(_EVENT_FACTORIES[signal.signal_type](signal))

    async def _describe_ring(self, signal: CallSignal) -> tuple[Profile, CallType]:
        caller: Profile | None = None
        call_type = CallType.VOICE
        try:
            caller = await self._directory.get_profile(signal.caller_id)
        except Exception:
            logger.warning(
                "Failed to resolve caller profile",
                exc_info=logger.isEnabledFor(logging.DEBUG),
                extra={"caller_id": signal.caller_id},
            )
        try:
            log = await self._call_logs.get(signal.call_log_id)
        except Exception:
            log = None
            logger.warning(
                "Failed to resolve call type",
                exc_info=logger.isEnabledFor(logging.DEBUG),
                extra={"call_log_id": signal.call_log_id},
            )
        if log is not None:
            call_type = log.call_type
        if caller is None:
            caller = Profile(id=signal.caller_id, display_name="Unknown")
        return caller, call_type
