"""Effect-running adapter around the pure call state machine."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Callable, Iterable

from .clock import Clock, LoopClock, TimerRegistry
from .dispatcher import SignalDispatcher
from .errors import CallError, CallInProgress, NoIncomingCall, ServiceUnavailable, TransportFailure
from .machine import (
    AnswerCall,
    CallLogCreated,
    CallLogFailed,
    CallPolicy,
    CancelTimer,
    CancelTimers,
    ClearError,
    CreateCallLog,
    DeclineCall,
    DeleteOwnSignals,
    DismissIncoming,
    Effect,
    EndCall,
    Event,
    InitiateCall,
    JoinMedia,
    LeaveMedia,
    MachineState,
    NotifyPush,
    ReleaseToken,
    RemoteLeft,
    RemoteMediaChanged,
    RequestToken,
    Reset,
    SendSignal,
    SetMuted,
    SetScreenShare,
    SetVideoEnabled,
    StartTimer,
    ToggleMinimize,
    ToggleMute,
    ToggleScreenShare,
    ToggleVideo,
    TokenGranted,
    TokenRejected,
    TransportFailed,
    UpdateCallLog,
    is_live,
    transition,
)
from .ports import (
    CallLogStore,
    Directory,
    MediaEngine,
    MediaEvent,
    PushNotifier,
    SignalStore,
    TokenService,
)
from .ringtone import RingtoneController
from .types import (
    ActiveCall,
    CallCapabilities,
    CallState,
    CallType,
    IncomingCall,
    Participant,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[MachineState], None]

_TIMER_EFFECTS = (StartTimer, CancelTimer, CancelTimers)


class CallController:
    """Owns one device's call state and runs the machine's effects.

    Events are applied synchronously. Effects run one at a time in a single
    drain task; their outcomes are fed back as events tagged with the call
    they were started for, so results that arrive after the call ended are
    ignored by the machine.
    """

    def __init__(
        self,
        *,
        user_id: str,
        signals: SignalStore,
        call_logs: CallLogStore,
        tokens: TokenService,
        media: MediaEngine,
        directory: Directory,
        push: PushNotifier | None = None,
        clock: Clock | None = None,
        ringtone: RingtoneController | None = None,
        policy: CallPolicy | None = None,
    ) -> None:
        self._user_id = user_id
        self._signals = signals
        self._call_logs = call_logs
        self._tokens = tokens
        self._media = media
        self._directory = directory
        self._push = push
        self._clock = clock or LoopClock()
        self._ringtone = ringtone
        self._policy = policy or CallPolicy()
        self._state = MachineState(user_id=user_id)
        self._timers = TimerRegistry(self._clock)
        self._queue: deque[Effect] = deque()
        self._drain_task: asyncio.Task[None] | None = None
        self._listeners: list[StateListener] = []
        self._own_signals: dict[str, list[str]] = {}
        self._capabilities: CallCapabilities | None = None
        self._remove_media_listener: Callable[[], None] | None = None
        self.dispatcher = SignalDispatcher(
            signals,
            user_id=user_id,
            sink=self.feed,
            clock=self._clock,
            directory=directory,
            call_logs=call_logs,
        )

    # ------------------------------------------------------------------
    # Observables
    # ------------------------------------------------------------------
    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def state(self) -> MachineState:
        return self._state

    @property
    def phase(self) -> CallState:
        return self._state.phase

    @property
    def active_call(self) -> ActiveCall | None:
        return self._state.active

    @property
    def incoming_call(self) -> IncomingCall | None:
        return self._state.incoming

    @property
    def call_duration(self) -> int:
        return self._state.duration

    @property
    def call_error(self) -> CallError | None:
        return self._state.error

    @property
    def call_notice(self) -> str | None:
        return self._state.notice

    @property
    def busy(self) -> bool:
        """Whether effects are still queued or running."""

        return bool(self._queue) or (self._drain_task is not None and not self._drain_task.done())

    def pending_timers(self) -> frozenset[str]:
        return self._timers.pending()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, chat_ids: Iterable[str] | None = None) -> None:
        """Attach to the media engine and watch the user's chats."""

        if self._remove_media_listener is None:
            self._remove_media_listener = self._media.add_listener(self._on_media_event)
        if chat_ids is None:
            chat_ids = await self._directory.list_chats()
        await self.dispatcher.sync(chat_ids)

    async def stop(self) -> None:
        if is_live(self._state, self._state.active.call_ref if self._state.active else None):
            self.feed(EndCall())
        elif self._state.incoming is not None:
            self.feed(DismissIncoming())
        await self.settle()
        await self.dispatcher.close()
        self._timers.cancel_all()
        if self._ringtone is not None:
            self._ringtone.stop()
        if self._remove_media_listener is not None:
            self._remove_media_listener()
            self._remove_media_listener = None

    async def watch(self, chat_id: str) -> None:
        await self.dispatcher.watch(chat_id)

    async def unwatch(self, chat_id: str) -> None:
        await self.dispatcher.unwatch(chat_id)

    async def settle(self) -> None:
        """Wait until every queued effect has run."""

        while self.busy:
            await self._ensure_drain()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    async def initiate_call(self, chat_id: str, call_type: CallType | str) -> ActiveCall:
        if not self._state.phase.is_idle or self._state.incoming is not None:
            raise CallInProgress()
        call_ref = uuid.uuid4().hex
        self.feed(InitiateCall(chat_id, CallType(call_type), call_ref))
        await self.settle()
        return self._outcome(call_ref)

    async def answer_call(self) -> ActiveCall:
        if self._state.incoming is None or self._state.phase is not CallState.RINGING:
            raise NoIncomingCall()
        call_ref = uuid.uuid4().hex
        self.feed(AnswerCall(call_ref))
        await self.settle()
        return self._outcome(call_ref)

    async def decline_call(self) -> None:
        self.feed(DeclineCall())
        await self.settle()

    async def end_call(self) -> None:
        self.feed(EndCall())
        await self.settle()

    async def toggle_mute(self) -> None:
        self.feed(ToggleMute())
        await self.settle()

    async def toggle_video(self) -> None:
        self.feed(ToggleVideo())
        await self.settle()

    async def toggle_screen_share(self) -> None:
        active = self._state.active
        allowed = True
        if active is not None and not active.is_screen_sharing:
            capabilities = await self._load_capabilities()
            allowed = capabilities.screen_share
        self.feed(ToggleScreenShare(allowed=allowed))
        await self.settle()
        if not allowed and self._state.error is not None:
            raise self._state.error

    async def toggle_minimize(self) -> None:
        self.feed(ToggleMinimize())

    def dismiss(self) -> None:
        self.feed(Reset())

    def clear_error(self) -> None:
        self.feed(ClearError())

    def _outcome(self, call_ref: str) -> ActiveCall:
        state = self._state
        active = state.active
        failed = state.phase is CallState.ENDED and state.error is not None
        if active is not None and active.call_ref == call_ref and not failed:
            return active
        error = state.error
        raise error if error is not None else CallError()

    async def _load_capabilities(self) -> CallCapabilities:
        if self._capabilities is None:
            try:
                self._capabilities = await self._tokens.capabilities()
            except CallError:
                logger.warning("Failed to load call capabilities", exc_info=logger.isEnabledFor(logging.DEBUG))
                return CallCapabilities(screen_share=False)
        return self._capabilities

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------
    def feed(self, event: Event) -> None:
        """Apply one event and schedule the effects it produced."""

        previous = self._state
        state, effects = transition(previous, event, self._policy, self._clock.now())
        self._state = state
        if state.phase is CallState.ENDED and previous.phase is not CallState.ENDED:
            # Forward progress for the old call is moot once it has ended.
            self._queue = deque(e for e in self._queue if getattr(e, "call_ref", None) is None)
        for effect in effects:
            if isinstance(effect, _TIMER_EFFECTS):
                self._apply_timer(effect)
            else:
                self._queue.append(effect)
        if state is not previous:
            self._publish(state)
        if self._queue:
            self._ensure_drain()

    def _publish(self, state: MachineState) -> None:
        if self._ringtone is not None:
            self._ringtone.sync(state)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Call state listener failed")

    def _apply_timer(self, effect: StartTimer | CancelTimer | CancelTimers) -> None:
        if isinstance(effect, StartTimer):
            event = effect.event
            self._timers.start(effect.name, effect.delay, lambda: self.feed(event), repeat=effect.repeat)
        elif isinstance(effect, CancelTimer):
            self._timers.cancel(effect.name)
        else:
            self._timers.cancel_all()

    def _ensure_drain(self) -> asyncio.Task[None]:
        task = self._drain_task
        if task is None or task.done():
            task = self._drain_task = asyncio.get_running_loop().create_task(self._drain())
        return task

    async def _drain(self) -> None:
        while self._queue:
            effect = self._queue.popleft()
            call_ref = getattr(effect, "call_ref", None)
            if call_ref is not None and not is_live(self._state, call_ref):
                logger.debug("Skipping %s for a call that is no longer live", type(effect).__name__)
                continue
            try:
                await self._run(effect)
            except Exception as exc:
                self._fail(effect, exc)

    def _fail(self, effect: Effect, exc: Exception) -> None:
        error = exc if isinstance(exc, CallError) else None
        call_ref = getattr(effect, "call_ref", None)
        if isinstance(effect, RequestToken):
            self.feed(TokenRejected(effect.call_ref, error or ServiceUnavailable(str(exc) or None)))
        elif isinstance(effect, CreateCallLog):
            self.feed(CallLogFailed(effect.call_ref, error or ServiceUnavailable(str(exc) or None)))
        elif isinstance(effect, (JoinMedia, SendSignal)) and call_ref is not None:
            logger.warning("Call transport failed during %s", type(effect).__name__, exc_info=exc)
            self.feed(TransportFailed(call_ref, TransportFailure(str(exc) or None)))
        else:
            logger.warning(
                "Best-effort call cleanup step %s failed",
                type(effect).__name__,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    # ------------------------------------------------------------------
    # Effect runners
    # ------------------------------------------------------------------
    async def _run(self, effect: Effect) -> None:
        if isinstance(effect, RequestToken):
            token = await self._tokens.request_token(effect.chat_id, effect.call_type)
            participants = await self._load_participants(effect.chat_id)
            self.feed(TokenGranted(effect.call_ref, token, participants))
        elif isinstance(effect, CreateCallLog):
            log = await self._call_logs.create(effect.chat_id, effect.call_type)
            self.feed(CallLogCreated(effect.call_ref, log.id))
        elif isinstance(effect, SendSignal):
            signal = await self._signals.insert(effect.chat_id, effect.call_log_id, effect.signal_type)
            self._own_signals.setdefault(effect.call_log_id, []).append(signal.id)
        elif isinstance(effect, DeleteOwnSignals):
            await self._delete_own_signals(effect.call_log_id)
        elif isinstance(effect, UpdateCallLog):
            await self._call_logs.update(
                effect.call_log_id, effect.status, duration_seconds=effect.duration_seconds
            )
        elif isinstance(effect, JoinMedia):
            await self._media.join(effect.token, video=effect.video)
        elif isinstance(effect, LeaveMedia):
            try:
                await self._media.leave()
            finally:
                await self._tokens.release(effect.chat_id)
        elif isinstance(effect, ReleaseToken):
            await self._tokens.release(effect.chat_id)
        elif isinstance(effect, SetMuted):
            await self._media.set_audio_muted(effect.muted)
        elif isinstance(effect, SetVideoEnabled):
            await self._media.set_video_enabled(effect.enabled)
        elif isinstance(effect, SetScreenShare):
            await self._media.set_screen_share(effect.enabled)
        elif isinstance(effect, NotifyPush):
            await self._notify(effect)
        else:  # pragma: no cover - guarded by the machine's effect union
            raise TypeError(f"Unsupported call effect: {type(effect).__name__}")

    async def _load_participants(self, chat_id: str) -> tuple[Participant, ...]:
        try:
            members = await self._directory.chat_members(chat_id)
        except Exception:
            logger.warning("Failed to load call participants", exc_info=logger.isEnabledFor(logging.DEBUG))
            return ()
        return tuple(
            Participant.from_profile(member) for member in members if member.id != self._user_id
        )

    async def _delete_own_signals(self, call_log_id: str) -> None:
        for signal_id in self._own_signals.pop(call_log_id, []):
            try:
                await self._signals.delete(signal_id)
            except Exception:
                logger.warning(
                    "Failed to delete call signal",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                    extra={"signal_id": signal_id},
                )

    async def _notify(self, effect: NotifyPush) -> None:
        if self._push is None:
            return
        try:
            sent = await self._push.notify(
                effect.chat_id, effect.call_log_id, effect.call_type, effect.action
            )
        except Exception:
            logger.warning(
                "Call push notification failed",
                exc_info=logger.isEnabledFor(logging.DEBUG),
                extra={"call_log_id": effect.call_log_id, "action": effect.action},
            )
            return
        logger.debug("Sent %s call push to %d devices", effect.action, sent)

    def _on_media_event(self, event: MediaEvent) -> None:
        active = self._state.active
        if active is None:
            return
        participant = active.participant_for_uid(event.uid)
        if participant is None:
            logger.debug("Ignoring media event for unknown participant uid %s", event.uid)
            return
        update: Any
        if event.left:
            update = RemoteLeft(participant.id)
        else:
            update = RemoteMediaChanged(
                participant.id,
                has_audio=event.has_audio,
                has_video=event.has_video,
                is_screen_sharing=event.is_screen_sharing,
            )
        self.feed(update)
