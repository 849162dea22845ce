"""Pydantic schemas for API payloads."""

from .calls import (
    CallCapabilitiesRead,
    CallHistoryEntry,
    CallLogCreate,
    CallLogRead,
    CallLogUpdate,
    CallPushRequest,
    CallPushResult,
    CallSignalCreate,
    CallSignalRead,
    CallTokenRead,
    CallTokenRelease,
    CallTokenRequest,
    ChatRead,
    UserSummary,
)

__all__ = [
    "CallCapabilitiesRead",
    "CallHistoryEntry",
    "CallLogCreate",
    "CallLogRead",
    "CallLogUpdate",
    "CallPushRequest",
    "CallPushResult",
    "CallSignalCreate",
    "CallSignalRead",
    "CallTokenRead",
    "CallTokenRelease",
    "CallTokenRequest",
    "ChatRead",
    "UserSummary",
]
