"""Schemas for call tokens, call logs, signals and push fan-out."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from app.models import CallStatus, CallType, SignalType


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class CallTokenRequest(BaseModel):
    """Request for a media join token.

    Both fields are plain strings so malformed values are answered with 400
    by the token service instead of a generic validation error.
    """

    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId", description="Chat whose call channel to join")
    call_type: str = Field(..., alias="callType", description="voice or video")


class CallTokenRead(BaseModel):
    """Media join token handed to the client SDK."""

    model_config = ConfigDict(populate_by_name=True)

    token: str
    app_id: str = Field(..., alias="appId")
    channel: str
    uid: int


class CallTokenRelease(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId")


class CallCapabilitiesRead(BaseModel):
    """Which call features the current user may use."""

    model_config = ConfigDict(populate_by_name=True)

    voice: bool
    video: bool
    screen_share: bool = Field(..., alias="screenShare")


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str | None = None
    avatar_url: str | None = None


class ChatRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str | None = None
    is_group: bool = False


class CallLogCreate(BaseModel):
    chat_id: str = Field(..., description="Chat the call is placed in")
    call_type: CallType


class CallLogUpdate(BaseModel):
    status: CallStatus = Field(..., description="New status; only forward moves are applied")
    duration_seconds: int | None = Field(default=None, ge=0)


class CallLogRead(BaseModel):
    """Call log row returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    chat_id: str
    initiator_id: str
    call_type: CallType
    status: CallStatus
    started_at: UtcDatetime
    ended_at: UtcDatetime | None = None
    duration_seconds: int | None = None


class CallHistoryEntry(CallLogRead):
    """History row enriched for the call list and the chat timeline."""

    initiator: UserSummary
    other_participant: UserSummary | None = Field(
        default=None,
        description="The counterpart shown in the call list for this user",
    )
    summary: str = Field(..., description="Renderer key such as voice_call_ended|1:05")


class CallSignalCreate(BaseModel):
    chat_id: str
    call_log_id: str
    signal_type: SignalType


class CallSignalRead(BaseModel):
    """Signal row as stored and as delivered over the realtime socket."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    chat_id: str
    call_log_id: str
    caller_id: str
    signal_type: SignalType
    created_at: UtcDatetime
    expires_at: UtcDatetime


class CallPushRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId")
    call_log_id: str = Field(..., alias="callLogId")
    call_type: CallType = Field(..., alias="callType")
    action: Literal["ring", "cancel"]


class CallPushResult(BaseModel):
    sent: int = 0
    cleaned: int = 0
