"""In-process collaborators for running call scenarios without a server.

:class:`InMemoryBackend` enforces the same membership, capability and
capacity rules as the call service so controllers wired to it behave as they
would against the real API. Signal deliveries happen inline on insert.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Callable, Sequence

from ..realtime.transport import Subscription
from .clock import Clock
from .controller import CallController
from .errors import (
    CapacityExceeded,
    InvalidRequest,
    NotAMember,
    PermissionDenied,
    TransportFailure,
)
from .machine import CallPolicy
from .ports import MediaEvent, MediaListener, SignalHandler
from .ringtone import RingtoneController
from .types import (
    CallCapabilities,
    CallLog,
    CallSignal,
    CallStatus,
    CallType,
    MediaToken,
    Profile,
    SignalType,
    UserRole,
    participant_uid,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UserRecord:
    id: str
    display_name: str
    role: UserRole = UserRole.OWNER
    avatar_url: str | None = None
    is_active: bool = True
    can_voice_call: bool | None = None
    can_video_call: bool | None = None
    can_screen_share: bool | None = None

    @property
    def profile(self) -> Profile:
        return Profile(id=self.id, display_name=self.display_name, avatar_url=self.avatar_url)

    @property
    def capabilities(self) -> CallCapabilities:
        return CallCapabilities.for_role(
            self.role,
            can_voice_call=self.can_voice_call,
            can_video_call=self.can_video_call,
            can_screen_share=self.can_screen_share,
        )


@dataclass(frozen=True, slots=True)
class PushRecord:
    chat_id: str
    call_log_id: str
    call_type: CallType
    action: str
    recipients: tuple[str, ...]


class InMemoryBackend:
    """Shared state behind every :class:`MemorySession`."""

    def __init__(
        self,
        clock: Clock,
        *,
        signal_ttl: float = 60.0,
        token_ttl: float = 3600.0,
        max_participants: int = 4,
        app_id: str = "loopback",
    ) -> None:
        self.clock = clock
        self.signal_ttl = signal_ttl
        self.token_ttl = token_ttl
        self.max_participants = max_participants
        self.app_id = app_id
        self.users: dict[str, UserRecord] = {}
        self.chats: dict[str, dict[str, bool]] = {}
        self.signals: dict[str, CallSignal] = {}
        self.logs: dict[str, CallLog] = {}
        self.grants: dict[str, dict[str, float]] = {}
        self.pushes: list[PushRecord] = []
        self.signal_writes = 0
        self.log_writes = 0
        self.media = LoopbackMediaHub()
        self._subscribers: dict[str, list[SignalHandler]] = {}

    # ------------------------------------------------------------------
    # Fixtures
    # ------------------------------------------------------------------
    def add_user(
        self,
        display_name: str,
        *,
        role: UserRole | str = UserRole.OWNER,
        avatar_url: str | None = None,
        can_voice_call: bool | None = None,
        can_video_call: bool | None = None,
        can_screen_share: bool | None = None,
    ) -> str:
        user = UserRecord(
            id=str(uuid.uuid4()),
            display_name=display_name,
            role=UserRole(role),
            avatar_url=avatar_url,
            can_voice_call=can_voice_call,
            can_video_call=can_video_call,
            can_screen_share=can_screen_share,
        )
        self.users[user.id] = user
        return user.id

    def add_chat(self, *member_ids: str) -> str:
        chat_id = str(uuid.uuid4())
        self.chats[chat_id] = {member_id: True for member_id in member_ids}
        return chat_id

    def leave_chat(self, chat_id: str, user_id: str) -> None:
        self.chats[chat_id][user_id] = False

    def session(self, user_id: str) -> "MemorySession":
        return MemorySession(self, user_id)

    def controller(
        self,
        user_id: str,
        *,
        policy: CallPolicy | None = None,
        ringtone: RingtoneController | None = None,
    ) -> CallController:
        session = self.session(user_id)
        return CallController(
            user_id=user_id,
            signals=session,
            call_logs=session,
            tokens=session,
            media=self.media.engine(user_id),
            directory=session,
            push=session,
            clock=self.clock,
            ringtone=ringtone,
            policy=policy,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def live_signals(self, call_log_id: str | None = None) -> list[CallSignal]:
        now = self.clock.utcnow()
        return [
            signal
            for signal in self.signals.values()
            if not signal.is_expired(now) and (call_log_id is None or signal.call_log_id == call_log_id)
        ]

    def grant_holders(self, chat_id: str) -> set[str]:
        now = self.clock.now()
        return {user_id for user_id, expiry in self.grants.get(chat_id, {}).items() if expiry > now}

    def is_member(self, chat_id: str, user_id: str) -> bool:
        user = self.users.get(user_id)
        return bool(self.chats.get(chat_id, {}).get(user_id)) and user is not None and user.is_active

    def members(self, chat_id: str) -> list[UserRecord]:
        return [self.users[user_id] for user_id, active in self.chats.get(chat_id, {}).items() if active]

    def require_member(self, chat_id: str, user_id: str) -> None:
        if not self.is_member(chat_id, user_id):
            raise NotAMember()

    async def deliver(self, signal: CallSignal) -> None:
        """Hand a row to every subscriber of its chat."""

        for handler in list(self._subscribers.get(signal.chat_id, ())):
            try:
                await handler(signal)
            except Exception:
                logger.exception("Signal subscriber failed", extra={"signal_id": signal.id})

    def _subscribe(self, chat_id: str, handler: SignalHandler) -> Subscription:
        handlers = self._subscribers.setdefault(chat_id, [])
        handlers.append(handler)

        async def cleanup() -> None:
            registered = self._subscribers.get(chat_id)
            if registered and handler in registered:
                registered.remove(handler)
                if not registered:
                    self._subscribers.pop(chat_id, None)

        return Subscription(chat_id, cleanup)

    def subscriber_count(self, chat_id: str | None = None) -> int:
        if chat_id is not None:
            return len(self._subscribers.get(chat_id, ()))
        return sum(len(handlers) for handlers in self._subscribers.values())


class MemorySession:
    """One user's authenticated view of the backend.

    Implements the signal store, call log store, token service, directory and
    push notifier ports.
    """

    def __init__(self, backend: InMemoryBackend, user_id: str) -> None:
        self._backend = backend
        self.user_id = user_id

    # SignalStore -------------------------------------------------------
    async def insert(self, chat_id: str, call_log_id: str, signal_type: SignalType) -> CallSignal:
        backend = self._backend
        backend.require_member(chat_id, self.user_id)
        now = backend.clock.utcnow()
        signal = CallSignal(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            call_log_id=call_log_id,
            caller_id=self.user_id,
            signal_type=SignalType(signal_type),
            expires_at=now + timedelta(seconds=backend.signal_ttl),
            created_at=now,
        )
        backend.signals[signal.id] = signal
        backend.signal_writes += 1
        await backend.deliver(signal)
        return signal

    async def delete(self, signal_id: str) -> None:
        signal = self._backend.signals.get(signal_id)
        if signal is None:
            return
        if signal.caller_id != self.user_id:
            raise PermissionDenied("Only the sender may delete a signal")
        del self._backend.signals[signal_id]

    async def subscribe(self, chat_id: str, handler: SignalHandler) -> Subscription:
        self._backend.require_member(chat_id, self.user_id)
        return self._backend._subscribe(chat_id, handler)

    # CallLogStore ------------------------------------------------------
    async def create(self, chat_id: str, call_type: CallType) -> CallLog:
        backend = self._backend
        backend.require_member(chat_id, self.user_id)
        log = CallLog(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            initiator_id=self.user_id,
            call_type=CallType(call_type),
            status=CallStatus.MISSED,
            started_at=backend.clock.utcnow(),
        )
        backend.logs[log.id] = log
        backend.log_writes += 1
        return log

    async def update(
        self,
        call_log_id: str,
        status: CallStatus,
        *,
        duration_seconds: int | None = None,
    ) -> CallLog:
        backend = self._backend
        log = backend.logs.get(call_log_id)
        if log is None:
            raise InvalidRequest("Call log not found")
        backend.require_member(log.chat_id, self.user_id)
        status = CallStatus(status)
        if not log.status.can_advance_to(status):
            return log
        changes: dict[str, object] = {"status": status}
        if status is CallStatus.ENDED:
            changes["duration_seconds"] = duration_seconds or 0
        if status.is_terminal:
            changes["ended_at"] = backend.clock.utcnow()
        log = replace(log, **changes)
        backend.logs[call_log_id] = log
        backend.log_writes += 1
        return log

    async def get(self, call_log_id: str) -> CallLog | None:
        log = self._backend.logs.get(call_log_id)
        if log is None or not self._backend.is_member(log.chat_id, self.user_id):
            return None
        return log

    # TokenService ------------------------------------------------------
    async def request_token(self, chat_id: str, call_type: CallType) -> MediaToken:
        backend = self._backend
        try:
            uuid.UUID(str(chat_id))
        except ValueError:
            raise InvalidRequest("Invalid chatId") from None
        try:
            requested = CallType(call_type)
        except ValueError:
            raise InvalidRequest("Invalid callType") from None
        backend.require_member(chat_id, self.user_id)
        if not backend.users[self.user_id].capabilities.allows(requested):
            raise PermissionDenied()
        holders = backend.grant_holders(chat_id) - {self.user_id}
        if len(holders) >= backend.max_participants:
            raise CapacityExceeded()
        backend.grants.setdefault(chat_id, {})[self.user_id] = backend.clock.now() + backend.token_ttl
        return MediaToken(
            token=f"loopback.{secrets.token_hex(8)}",
            app_id=backend.app_id,
            channel=chat_id,
            uid=participant_uid(self.user_id),
        )

    async def release(self, chat_id: str) -> None:
        self._backend.grants.get(chat_id, {}).pop(self.user_id, None)

    async def capabilities(self) -> CallCapabilities:
        return self._backend.users[self.user_id].capabilities

    # Directory ---------------------------------------------------------
    async def get_profile(self, user_id: str) -> Profile | None:
        user = self._backend.users.get(user_id)
        return user.profile if user is not None else None

    async def chat_members(self, chat_id: str) -> Sequence[Profile]:
        self._backend.require_member(chat_id, self.user_id)
        return [member.profile for member in self._backend.members(chat_id) if member.is_active]

    async def list_chats(self) -> Sequence[str]:
        return [chat_id for chat_id in self._backend.chats if self._backend.is_member(chat_id, self.user_id)]

    # PushNotifier ------------------------------------------------------
    async def notify(self, chat_id: str, call_log_id: str, call_type: CallType, action: str) -> int:
        backend = self._backend
        backend.require_member(chat_id, self.user_id)
        recipients = tuple(
            member.id for member in backend.members(chat_id) if member.id != self.user_id and member.is_active
        )
        backend.pushes.append(PushRecord(chat_id, call_log_id, CallType(call_type), action, recipients))
        return len(recipients)


class LoopbackMediaHub:
    """Media channels where every joined engine sees every other one."""

    def __init__(self) -> None:
        self._engines: dict[str, LoopbackMediaEngine] = {}
        self.failing: set[str] = set()

    def engine(self, user_id: str) -> "LoopbackMediaEngine":
        engine = self._engines.get(user_id)
        if engine is None:
            engine = LoopbackMediaEngine(self, user_id)
            self._engines[user_id] = engine
        return engine

    def in_channel(self, channel: str) -> list["LoopbackMediaEngine"]:
        return [engine for engine in self._engines.values() if engine.channel == channel]

    def _announce(self, source: "LoopbackMediaEngine") -> None:
        if source.channel is None:
            return
        event = source.describe()
        for peer in self.in_channel(source.channel):
            if peer is not source:
                peer.emit(event)

    def _greet(self, newcomer: "LoopbackMediaEngine") -> None:
        if newcomer.channel is None:
            return
        for peer in self.in_channel(newcomer.channel):
            if peer is not newcomer:
                newcomer.emit(peer.describe())

    def _depart(self, source: "LoopbackMediaEngine", channel: str) -> None:
        for peer in self.in_channel(channel):
            if peer is not source:
                peer.emit(MediaEvent(uid=source.uid, left=True))


class LoopbackMediaEngine:
    def __init__(self, hub: LoopbackMediaHub, user_id: str) -> None:
        self._hub = hub
        self.user_id = user_id
        self.uid = participant_uid(user_id)
        self.channel: str | None = None
        self.muted = False
        self.video = False
        self.screen_share = False
        self.joins = 0
        self._listeners: list[MediaListener] = []

    def describe(self) -> MediaEvent:
        return MediaEvent(
            uid=self.uid,
            has_audio=True,
            has_video=self.video,
            is_screen_sharing=self.screen_share,
        )

    def emit(self, event: MediaEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def add_listener(self, listener: MediaListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def join(self, token: MediaToken, *, video: bool) -> None:
        if self.user_id in self._hub.failing:
            self._hub.failing.discard(self.user_id)
            raise TransportFailure("Could not join media channel")
        self.channel = token.channel
        self.uid = token.uid
        self.video = video
        self.joins += 1
        self._hub._announce(self)
        self._hub._greet(self)

    async def leave(self) -> None:
        channel = self.channel
        if channel is None:
            return
        self.channel = None
        self.video = False
        self.screen_share = False
        self._hub._depart(self, channel)

    async def set_audio_muted(self, muted: bool) -> None:
        self.muted = muted

    async def set_video_enabled(self, enabled: bool) -> None:
        self.video = enabled
        if self.channel is not None:
            self._hub._announce(self)

    async def set_screen_share(self, enabled: bool) -> None:
        self.screen_share = enabled
        if self.channel is not None:
            self._hub._announce(self)
