"""Domain types shared by the call state machine, dispatcher and backend."""

from __future__ import annotations

import zlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

MAX_PARTICIPANT_UID = 2_147_483_647


class CallState(str, Enum):
    """Lifecycle phases of a call as seen by one device."""

    IDLE = "idle"
    INITIATING = "initiating"
    RINGING = "ringing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"

    @property
    def is_idle(self) -> bool:
        """Return ``True`` when a new call may start or ring in this phase."""

        return self in (CallState.IDLE, CallState.ENDED)


class CallType(str, Enum):
    """Media requested for a call."""

    VOICE = "voice"
    VIDEO = "video"


class SignalType(str, Enum):
    """Directives exchanged through the signal store."""

    RING = "ring"
    ANSWER = "answer"
    DECLINE = "decline"
    CANCEL = "cancel"
    HANGUP = "hangup"
    BUSY = "busy"


class CallStatus(str, Enum):
    """Recorded outcome of a call attempt."""

    MISSED = "missed"
    ANSWERED = "answered"
    DECLINED = "declined"
    ENDED = "ended"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.DECLINED, CallStatus.ENDED)

    def can_advance_to(self, other: "CallStatus") -> bool:
        """Return whether ``other`` moves the log strictly forward."""

        return CallStatus(other).rank > self.rank


_STATUS_RANK: dict[CallStatus, int] = {
    CallStatus.MISSED: 0,
    CallStatus.ANSWERED: 1,
    CallStatus.DECLINED: 2,
    CallStatus.ENDED: 2,
}


class UserRole(str, Enum):
    """Team roles that govern call capabilities."""

    OWNER = "owner"
    SUPER = "super"
    TEXTER = "texter"


def participant_uid(user_id: str) -> int:
    """Derive the numeric media participant id for a user.

    UUID identifiers use their trailing 32 bits; anything else falls back to a
    CRC32 so the mapping stays deterministic.
    """

    tail = str(user_id).replace("-", "")[-8:]
    try:
        value = int(tail, 16)
    except ValueError:
        value = zlib.crc32(str(user_id).encode("utf-8"))
    return value % MAX_PARTICIPANT_UID


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp (or pass through a datetime) as aware UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, slots=True)
class Profile:
    """Public identity of a chat member."""

    id: str
    display_name: str
    avatar_url: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Profile":
        return cls(
            id=str(payload["id"]),
            display_name=str(payload.get("display_name") or "Unknown"),
            avatar_url=payload.get("avatar_url"),
        )


@dataclass(frozen=True, slots=True)
class CallSignal:
    """Immutable, expiring directive scoped to a chat and a call log."""

    id: str
    chat_id: str
    call_log_id: str
    caller_id: str
    signal_type: SignalType
    expires_at: datetime
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CallSignal":
        """Build a signal from a store row, raising ``ValueError`` when malformed."""

        try:
            created = payload.get("created_at")
            return cls(
                id=str(payload["id"]),
                chat_id=str(payload["chat_id"]),
                call_log_id=str(payload["call_log_id"]),
                caller_id=str(payload["caller_id"]),
                signal_type=SignalType(payload["signal_type"]),
                expires_at=parse_timestamp(payload["expires_at"]),
                created_at=parse_timestamp(created) if created else None,
            )
        except KeyError as exc:
            raise ValueError(f"Signal row is missing {exc.args[0]!r}") from None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "call_log_id": self.call_log_id,
            "caller_id": self.caller_id,
            "signal_type": self.signal_type.value,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True, slots=True)
class CallLog:
    """One recorded call attempt."""

    id: str
    chat_id: str
    initiator_id: str
    call_type: CallType
    status: CallStatus
    started_at: datetime
    duration_seconds: int | None = None
    ended_at: datetime | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CallLog":
        ended = payload.get("ended_at")
        duration = payload.get("duration_seconds")
        return cls(
            id=str(payload["id"]),
            chat_id=str(payload["chat_id"]),
            initiator_id=str(payload["initiator_id"]),
            call_type=CallType(payload["call_type"]),
            status=CallStatus(payload["status"]),
            started_at=parse_timestamp(payload["started_at"]),
            duration_seconds=int(duration) if duration is not None else None,
            ended_at=parse_timestamp(ended) if ended else None,
        )


@dataclass(frozen=True, slots=True)
class MediaToken:
    """Time-boxed credential for joining a media channel."""

    token: str
    app_id: str
    channel: str
    uid: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MediaToken":
        return cls(
            token=str(payload["token"]),
            app_id=str(payload["appId"]),
            channel=str(payload["channel"]),
            uid=int(payload["uid"]),
        )


@dataclass(frozen=True, slots=True)
class CallCapabilities:
    """Which call features the current user may use."""

    voice: bool = True
    video: bool = True
    screen_share: bool = True

    def allows(self, call_type: CallType) -> bool:
        return self.video if CallType(call_type) is CallType.VIDEO else self.voice

    @classmethod
    def for_role(
        cls,
        role: UserRole | str,
        *,
        can_voice_call: bool | None = None,
        can_video_call: bool | None = None,
        can_screen_share: bool | None = None,
    ) -> "CallCapabilities":
        """Owners and Supers may always call; Texters need each flag enabled."""

        if UserRole(role) is not UserRole.TEXTER:
            return cls()
        return cls(
            voice=bool(can_voice_call),
            video=bool(can_video_call),
            screen_share=bool(can_screen_share),
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CallCapabilities":
        return cls(
            voice=bool(payload.get("voice", True)),
            video=bool(payload.get("video", True)),
            screen_share=bool(payload.get("screenShare", True)),
        )


@dataclass(frozen=True, slots=True)
class Participant:
    """A remote member of the active call."""

    id: str
    display_name: str
    avatar_url: str | None = None
    has_audio: bool = False
    has_video: bool = False
    is_screen_sharing: bool = False
    joined: bool = False

    @property
    def uid(self) -> int:
        return participant_uid(self.id)

    @classmethod
    def from_profile(cls, profile: Profile) -> "Participant":
        return cls(id=profile.id, display_name=profile.display_name, avatar_url=profile.avatar_url)


@dataclass(frozen=True, slots=True)
class IncomingCall:
    """A ringing call offer that has not been accepted yet."""

    call_log_id: str
    chat_id: str
    caller_id: str
    caller_name: str
    caller_avatar: str | None
    call_type: CallType
    signal_id: str


@dataclass(frozen=True, slots=True)
class ActiveCall:
    """The local device's view of the call it is part of."""

    call_ref: str
    chat_id: str
    call_type: CallType
    initiator_id: str
    initiated_locally: bool
    started_at: float
    call_log_id: str | None = None
    participants: tuple[Participant, ...] = ()
    token: MediaToken | None = None
    connected_at: float | None = None
    departed: frozenset[str] = field(default_factory=frozenset)
    is_muted: bool = False
    is_video_enabled: bool = False
    is_screen_sharing: bool = False
    is_minimized: bool = False

    @property
    def ever_connected(self) -> bool:
        return self.connected_at is not None

    @property
    def remaining(self) -> tuple[Participant, ...]:
        """Remote participants that have not declined, hung up or left."""

        return tuple(p for p in self.participants if p.id not in self.departed)

    @property
    def in_room(self) -> tuple[Participant, ...]:
        """Remote participants currently present in the media room."""

        return tuple(p for p in self.participants if p.joined)

    def participant_for_uid(self, uid: int) -> Participant | None:
        for participant in self.participants:
            if participant.uid == uid:
                return participant
        return None

    def with_participant(self, user_id: str, **changes: Any) -> "ActiveCall":
        participants = tuple(
            replace(p, **changes) if p.id == user_id else p for p in self.participants
        )
        return replace(self, participants=participants)
