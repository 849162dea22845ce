"""Database models package."""

from zemicall.calls.types import CallStatus, CallType, SignalType, UserRole

from .base import Base
from .call import (
    CallLog,
    CallParticipantGrant,
    CallSignal,
    Chat,
    ChatMember,
    PushToken,
    TexterSettings,
    User,
)

__all__ = [
    "Base",
    "User",
    "Chat",
    "ChatMember",
    "TexterSettings",
    "CallLog",
    "CallSignal",
    "CallParticipantGrant",
    "PushToken",
    "CallStatus",
    "CallType",
    "SignalType",
    "UserRole",
]
