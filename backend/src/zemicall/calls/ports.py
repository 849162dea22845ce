"""Collaborator interfaces consumed by the call core."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence

from .types import (
    CallCapabilities,
    CallLog,
    CallSignal,
    CallStatus,
    CallType,
    MediaToken,
    Profile,
    SignalType,
)

SignalHandler = Callable[[CallSignal], Awaitable[None]]


class Subscription(Protocol):
    async def close(self) -> None: ...


class SignalStore(Protocol):
    """Shared table of short-lived signals, written as the current user."""

    async def insert(self, chat_id: str, call_log_id: str, signal_type: SignalType) -> CallSignal: ...

    async def delete(self, signal_id: str) -> None: ...

    async def subscribe(self, chat_id: str, handler: SignalHandler) -> Subscription: ...


class CallLogStore(Protocol):
    async def create(self, chat_id: str, call_type: CallType) -> CallLog: ...

    async def update(
        self,
        call_log_id: str,
        status: CallStatus,
        *,
        duration_seconds: int | None = None,
    ) -> CallLog: ...

    async def get(self, call_log_id: str) -> CallLog | None: ...


class TokenService(Protocol):
    async def request_token(self, chat_id: str, call_type: CallType) -> MediaToken: ...

    async def release(self, chat_id: str) -> None: ...

    async def capabilities(self) -> CallCapabilities: ...


class PushNotifier(Protocol):
    async def notify(self, chat_id: str, call_log_id: str, call_type: CallType, action: str) -> int:
        """Fan a ``ring``/``cancel`` notification out and return how many were sent."""


class Directory(Protocol):
    async def get_profile(self, user_id: str) -> Profile | None: ...

    async def chat_members(self, chat_id: str) -> Sequence[Profile]: ...

    async def list_chats(self) -> Sequence[str]: ...


@dataclass(frozen=True, slots=True)
class MediaEvent:
    """Remote participant update emitted by a media engine."""

    uid: int
    has_audio: bool = False
    has_video: bool = False
    is_screen_sharing: bool = False
    left: bool = False


MediaListener = Callable[[MediaEvent], None]


class MediaEngine(Protocol):
    async def join(self, token: MediaToken, *, video: bool) -> None: ...

    async def leave(self) -> None: ...

    async def set_audio_muted(self, muted: bool) -> None: ...

    async def set_video_enabled(self, enabled: bool) -> None: ...

    async def set_screen_share(self, enabled: bool) -> None: ...

    def add_listener(self, listener: MediaListener) -> Callable[[], None]: ...
