"""Pure call state machine.

``transition(state, event, policy, now)`` returns the next
:class:`MachineState` and the ordered effects the controller must run. The
function never performs I/O; every network call, timer and media action is
described as an effect and its outcome comes back as another event.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Union

from .errors import (
    CallDeclined,
    CallError,
    CallInProgress,
    NoAnswer,
    PermissionDenied,
    RemoteBusy,
    TransportFailure,
)
from .types import (
    ActiveCall,
    CallSignal,
    CallState,
    CallStatus,
    CallType,
    IncomingCall,
    MediaToken,
    Participant,
    Profile,
    SignalType,
)

RING_TIMER = "ring"
CONNECT_TIMER = "connect"
TICK_TIMER = "tick"
VIDEO_WARNING_TIMER = "video-warning"
VIDEO_LIMIT_TIMER = "video-limit"
RESET_TIMER = "reset"

VIDEO_LIMIT_WARNING_NOTICE = "call.videoLimitWarning"
VIDEO_LIMIT_REACHED_NOTICE = "call.videoLimitReached"


@dataclass(frozen=True, slots=True)
class CallPolicy:
    """Timing knobs of the call lifecycle, in seconds."""

    ring_timeout: float = 45.0
    connect_timeout: float = 30.0
    reset_delay: float = 2.5
    tick_interval: float = 1.0
    video_warning_after: float = 55 * 60.0
    video_limit: float = 60 * 60.0


@dataclass(frozen=True, slots=True)
class MachineState:
    user_id: str
    phase: CallState = CallState.IDLE
    active: ActiveCall | None = None
    incoming: IncomingCall | None = None
    error: CallError | None = None
    notice: str | None = None
    duration: int = 0


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InitiateCall:
    chat_id: str
    call_type: CallType
    call_ref: str


@dataclass(frozen=True, slots=True)
class TokenGranted:
    call_ref: str
    token: MediaToken
    participants: tuple[Participant, ...] = ()


@dataclass(frozen=True, slots=True)
class TokenRejected:
    call_ref: str
    error: CallError


@dataclass(frozen=True, slots=True)
class CallLogCreated:
    call_ref: str
    call_log_id: str


@dataclass(frozen=True, slots=True)
class CallLogFailed:
    call_ref: str
    error: CallError


@dataclass(frozen=True, slots=True)
class TransportFailed:
    call_ref: str
    error: CallError


@dataclass(frozen=True, slots=True)
class RemoteMediaChanged:
    user_id: str
    has_audio: bool
    has_video: bool
    is_screen_sharing: bool = False


@dataclass(frozen=True, slots=True)
class RemoteLeft:
    user_id: str


@dataclass(frozen=True, slots=True)
class RingReceived:
    signal: CallSignal
    caller: Profile
    call_type: CallType


@dataclass(frozen=True, slots=True)
class AnswerReceived:
    signal: CallSignal


@dataclass(frozen=True, slots=True)
class DeclineReceived:
    signal: CallSignal
    busy: bool = False


@dataclass(frozen=True, slots=True)
class CancelReceived:
    signal: CallSignal


@dataclass(frozen=True, slots=True)
class HangupReceived:
    signal: CallSignal


@dataclass(frozen=True, slots=True)
class AnswerCall:
    call_ref: str


@dataclass(frozen=True, slots=True)
class DeclineCall:
    pass


@dataclass(frozen=True, slots=True)
class EndCall:
    pass


@dataclass(frozen=True, slots=True)
class DismissIncoming:
    """Drop a ringing offer on this device only, without telling anyone."""


@dataclass(frozen=True, slots=True)
class RingTimeout:
    call_ref: str


@dataclass(frozen=True, slots=True)
class ConnectTimeout:
    call_ref: str


@dataclass(frozen=True, slots=True)
class DurationTick:
    call_ref: str


@dataclass(frozen=True, slots=True)
class VideoLimitWarning:
    call_ref: str


@dataclass(frozen=True, slots=True)
class VideoLimitReached:
    call_ref: str


@dataclass(frozen=True, slots=True)
class ToggleMute:
    pass


@dataclass(frozen=True, slots=True)
class ToggleVideo:
    pass


@dataclass(frozen=True, slots=True)
class ToggleScreenShare:
    allowed: bool = True


@dataclass(frozen=True, slots=True)
class ToggleMinimize:
    pass


@dataclass(frozen=True, slots=True)
class Reset:
    call_ref: str | None = None


@dataclass(frozen=True, slots=True)
class ClearError:
    pass


Event = Union[
    InitiateCall,
    TokenGranted,
    TokenRejected,
    CallLogCreated,
    CallLogFailed,
    TransportFailed,
    RemoteMediaChanged,
    RemoteLeft,
    RingReceived,
    AnswerReceived,
    DeclineReceived,
    CancelReceived,
    HangupReceived,
    AnswerCall,
    DeclineCall,
    EndCall,
    DismissIncoming,
    RingTimeout,
    ConnectTimeout,
    DurationTick,
    VideoLimitWarning,
    VideoLimitReached,
    ToggleMute,
    ToggleVideo,
    ToggleScreenShare,
    ToggleMinimize,
    Reset,
    ClearError,
]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------
#
# Effects carrying a ``call_ref`` move a call forward and are dropped by the
# controller once that call is no longer live. Effects without one are
# teardown or bookkeeping work that always runs.


@dataclass(frozen=True, slots=True)
class RequestToken:
    call_ref: str
    chat_id: str
    call_type: CallType


@dataclass(frozen=True, slots=True)
class ReleaseToken:
    chat_id: str


@dataclass(frozen=True, slots=True)
class CreateCallLog:
    call_ref: str
    chat_id: str
    call_type: CallType


@dataclass(frozen=True, slots=True)
class UpdateCallLog:
    call_log_id: str
    status: CallStatus
    duration_seconds: int | None = None
    call_ref: str | None = None


@dataclass(frozen=True, slots=True)
class SendSignal:
    chat_id: str
    call_log_id: str
    signal_type: SignalType
    call_ref: str | None = None


@dataclass(frozen=True, slots=True)
class DeleteOwnSignals:
    call_log_id: str


@dataclass(frozen=True, slots=True)
class JoinMedia:
    call_ref: str
    token: MediaToken
    video: bool


@dataclass(frozen=True, slots=True)
class LeaveMedia:
    chat_id: str


@dataclass(frozen=True, slots=True)
class SetMuted:
    muted: bool


@dataclass(frozen=True, slots=True)
class SetVideoEnabled:
    enabled: bool


@dataclass(frozen=True, slots=True)
class SetScreenShare:
    enabled: bool


@dataclass(frozen=True, slots=True)
class NotifyPush:
    chat_id: str
    call_log_id: str
    call_type: CallType
    action: str
    call_ref: str | None = None


@dataclass(frozen=True, slots=True)
class StartTimer:
    name: str
    delay: float
    event: Event
    repeat: bool = False


@dataclass(frozen=True, slots=True)
class CancelTimer:
    name: str


@dataclass(frozen=True, slots=True)
class CancelTimers:
    pass


Effect = Union[
    RequestToken,
    ReleaseToken,
    CreateCallLog,
    UpdateCallLog,
    SendSignal,
    DeleteOwnSignals,
    JoinMedia,
    LeaveMedia,
    SetMuted,
    SetVideoEnabled,
    SetScreenShare,
    NotifyPush,
    StartTimer,
    CancelTimer,
    CancelTimers,
]

Result = tuple[MachineState, list[Effect]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_live(state: MachineState, call_ref: str | None) -> bool:
    """Return whether ``call_ref`` names the call currently in progress."""

    active = state.active
    return (
        call_ref is not None
        and active is not None
        and active.call_ref == call_ref
        and not state.phase.is_idle
    )


def _same_call(state: MachineState, signal: CallSignal) -> bool:
    active = state.active
    return (
        active is not None
        and not state.phase.is_idle
        and active.call_log_id is not None
        and active.call_log_id == signal.call_log_id
    )


def _pending_incoming(state: MachineState, call_log_id: str) -> bool:
    incoming = state.incoming
    return (
        state.phase is CallState.RINGING
        and state.active is None
        and incoming is not None
        and incoming.call_log_id == call_log_id
    )


def _duration(active: ActiveCall, now: float) -> int:
    if active.connected_at is None:
        return 0
    return max(int(round(now - active.connected_at)), 0)


def _ended(
    state: MachineState,
    policy: CallPolicy,
    effects: list[Effect],
    *,
    active: ActiveCall | None,
    error: CallError | None = None,
    notice: str | None = None,
) -> Result:
    ref = active.call_ref if active is not None else None
    effects.append(StartTimer(RESET_TIMER, policy.reset_delay, Reset(ref)))
    return (
        replace(
            state,
            phase=CallState.ENDED,
            active=active,
            incoming=None,
            error=error if error is not None else state.error,
            notice=notice,
        ),
        effects,
    )


def _teardown(
    state: MachineState,
    policy: CallPolicy,
    now: float,
    *,
    signal: SignalType | None = None,
    status: CallStatus | None = None,
    push_cancel: bool = False,
    error: CallError | None = None,
    notice: str | None = None,
) -> Result:
    """End the active call: stop timers, notify, record, leave, clean up."""

    active = state.active
    if active is None:
        return _unchanged(state)
    effects: list[Effect] = [CancelTimers()]
    log_id = active.call_log_id
    if log_id is not None:
        if signal is not None:
            effects.append(SendSignal(active.chat_id, log_id, signal))
        if push_cancel:
            effects.append(NotifyPush(active.chat_id, log_id, active.call_type, "cancel"))
        if status is not None:
            duration = _duration(active, now) if status is CallStatus.ENDED else None
            effects.append(UpdateCallLog(log_id, status, duration))
    if active.token is not None:
        effects.append(LeaveMedia(active.chat_id))
    if log_id is not None:
        effects.append(DeleteOwnSignals(log_id))
    duration = _duration(active, now)
    state = replace(state, duration=duration)
    return _ended(state, policy, effects, active=active, error=error, notice=notice)


def _local_end(
    state: MachineState,
    policy: CallPolicy,
    now: float,
    *,
    error: CallError | None = None,
    notice: str | None = None,
) -> Result:
    """Terminate on this device's initiative (hang-up, timeout, failure)."""

    active = state.active
    if active is None:
        return _unchanged(state)
    if active.ever_connected:
        return _teardown(
            state,
            policy,
            now,
            signal=SignalType.HANGUP,
            status=CallStatus.ENDED,
            error=error,
            notice=notice,
        )
    if active.initiated_locally:
        return _teardown(
            state,
            policy,
            now,
            signal=SignalType.CANCEL,
            status=CallStatus.MISSED,
            push_cancel=True,
            error=error,
            notice=notice,
        )
    return _teardown(
        state,
        policy,
        now,
        signal=SignalType.DECLINE,
        status=CallStatus.DECLINED,
        error=error,
        notice=notice,
    )


def _remote_end(state: MachineState, policy: CallPolicy, now: float) -> Result:
    """Terminate because every remote participant hung up or left."""

    active = state.active
    if active is None:
        return _unchanged(state)
    if active.ever_connected or active.token is not None:
        return _teardown(state, policy, now, status=CallStatus.ENDED)
    return _teardown(state, policy, now)


def _remote_gone(state: MachineState, policy: CallPolicy, now: float, user_id: str) -> Result:
    """Record that ``user_id`` hung up or left, ending the call when nobody is left.

    Once connected the call lasts while any remote participant is still in the
    media room; members who never joined do not keep it open. Before that, the
    call waits on everyone who has not declined or hung up yet.
    """

    active = state.active
    if active is None:
        return _unchanged(state)
    active = active.with_participant(user_id, joined=False, has_audio=False, has_video=False)
    active = replace(active, departed=active.departed | {user_id})
    state = replace(state, active=active)
    waiting_on = active.in_room if active.ever_connected else active.remaining
    if waiting_on:
        return _unchanged(state)
    return _remote_end(state, policy, now)


def _connected(state: MachineState, policy: CallPolicy, now: float) -> Result:
    active = state.active
    if active is None:
        return _unchanged(state)
    effects: list[Effect] = [
        CancelTimer(RING_TIMER),
        CancelTimer(CONNECT_TIMER),
        StartTimer(TICK_TIMER, policy.tick_interval, DurationTick(active.call_ref), repeat=True),
    ]
    if active.call_type is CallType.VIDEO:
        effects.append(
            StartTimer(
                VIDEO_WARNING_TIMER, policy.video_warning_after, VideoLimitWarning(active.call_ref)
            )
        )
        effects.append(
            StartTimer(VIDEO_LIMIT_TIMER, policy.video_limit, VideoLimitReached(active.call_ref))
        )
    if active.initiated_locally and active.call_log_id is not None:
        effects.append(DeleteOwnSignals(active.call_log_id))
    active = replace(active, connected_at=now)
    return replace(state, phase=CallState.CONNECTED, active=active, duration=0), effects


def _unchanged(state: MachineState) -> Result:
    return state, []


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _on_initiate(state: MachineState, event: InitiateCall, policy: CallPolicy, now: float) -> Result:
    if not state.phase.is_idle or state.incoming is not None:
        return replace(state, error=CallInProgress()), []
    call_type = CallType(event.call_type)
    active = ActiveCall(
        call_ref=event.call_ref,
        chat_id=event.chat_id,
        call_type=call_type,
        initiator_id=state.user_id,
        initiated_locally=True,
        started_at=now,
        is_video_enabled=call_type is CallType.VIDEO,
    )
    return (
        replace(
            state,
            phase=CallState.INITIATING,
            active=active,
            incoming=None,
            error=None,
            notice=None,
            duration=0,
        ),
        [CancelTimer(RESET_TIMER), RequestToken(event.call_ref, event.chat_id, call_type)],
    )


def _on_token_granted(state: MachineState, event: TokenGranted, policy: CallPolicy, now: float) -> Result:
    if not is_live(state, event.call_ref):
        active = state.active
        if active is not None and is_live(state, active.call_ref) and active.chat_id == event.token.channel:
            return _unchanged(state)
        return state, [ReleaseToken(event.token.channel)]
    active = state.active
    if active is None:
        return _unchanged(state)
    known = {p.id: p for p in active.participants}
    participants = tuple(known.get(p.id, p) for p in event.participants) or active.participants
    active = replace(active, token=event.token, participants=participants)
    if state.phase is CallState.INITIATING:
        return replace(state, active=active), [
            CreateCallLog(active.call_ref, active.chat_id, active.call_type)
        ]
    if (
        state.phase is CallState.CONNECTING
        and not active.initiated_locally
        and active.call_log_id is not None
    ):
        return replace(state, active=active), [
            SendSignal(active.chat_id, active.call_log_id, SignalType.ANSWER, call_ref=active.call_ref),
            JoinMedia(active.call_ref, event.token, video=active.call_type is CallType.VIDEO),
            UpdateCallLog(active.call_log_id, CallStatus.ANSWERED, call_ref=active.call_ref),
            StartTimer(CONNECT_TIMER, policy.connect_timeout, ConnectTimeout(active.call_ref)),
        ]
    return _unchanged(state)


def _on_token_rejected(state: MachineState, event: TokenRejected, policy: CallPolicy, now: float) -> Result:
    if not is_live(state, event.call_ref):
        return _unchanged(state)
    return (
        replace(state, phase=CallState.IDLE, active=None, incoming=None, error=event.error, duration=0),
        [CancelTimers()],
    )


def _on_log_created(state: MachineState, event: CallLogCreated, policy: CallPolicy, now: float) -> Result:
    if not is_live(state, event.call_ref) or state.phase is not CallState.INITIATING:
        return _unchanged(state)
    active = state.active
    if active is None or active.token is None:
        return _unchanged(state)
    active = replace(active, call_log_id=event.call_log_id)
    effects: list[Effect] = [
        SendSignal(active.chat_id, event.call_log_id, SignalType.RING, call_ref=active.call_ref),
        StartTimer(RING_TIMER, policy.ring_timeout, RingTimeout(active.call_ref)),
        NotifyPush(active.chat_id, event.call_log_id, active.call_type, "ring", call_ref=active.call_ref),
        JoinMedia(active.call_ref, active.token, video=active.call_type is CallType.VIDEO),
    ]
    return replace(state, phase=CallState.RINGING, active=active), effects


def _on_log_failed(state: MachineState, event: CallLogFailed, policy: CallPolicy, now: float) -> Result:
    if not is_live(state, event.call_ref):
        return _unchanged(state)
    active = state.active
    if active is None:
        return _unchanged(state)
    effects: list[Effect] = [CancelTimers()]
    if active.token is not None:
        effects.append(ReleaseToken(active.chat_id))
    return (
        replace(state, phase=CallState.IDLE, active=None, incoming=None, error=event.error),
        effects,
    )


def _on_transport_failed(state: MachineState, event: TransportFailed, policy: CallPolicy, now: float) -> Result:
    if not is_live(state, event.call_ref):
        return _unchanged(state)
    return _local_end(state, policy, now, error=event.error)


def _on_remote_media(state: MachineState, event: RemoteMediaChanged, policy: CallPolicy, now: float) -> Result:
    active = state.active
    if active is None or state.phase.is_idle or state.phase is CallState.INITIATING:
        return _unchanged(state)
    if not any(p.id == event.user_id for p in active.participants):
        return _unchanged(state)
    active = active.with_participant(
        event.user_id,
        has_audio=event.has_audio,
        has_video=event.has_video,
        is_screen_sharing=event.is_screen_sharing,
        joined=True,
    )
    active = replace(active, departed=active.departed - {event.user_id})
    state = replace(state, active=active)
    publishing = event.has_audio or event.has_video
    if publishing and state.phase in (CallState.RINGING, CallState.CONNECTING):
        return _connected(state, policy, now)
    return _unchanged(state)


def _on_remote_left(state: MachineState, event: RemoteLeft, policy: CallPolicy, now: float) -> Result:
    active = state.active
    if active is None or state.phase is not CallState.CONNECTED:
        return _unchanged(state)
    if not any(p.id == event.user_id for p in active.participants):
        return _unchanged(state)
    return _remote_gone(state, policy, now, event.user_id)


def _on_ring(state: MachineState, event: RingReceived, policy: CallPolicy, now: float) -> Result:
    signal = event.signal
    if signal.caller_id == state.user_id:
        return _unchanged(state)
    if state.incoming is not None and state.incoming.call_log_id == signal.call_log_id:
        return _unchanged(state)
    if state.active is not None and state.active.call_log_id == signal.call_log_id:
        return _unchanged(state)
    if state.phase.is_idle and state.incoming is None:
        incoming = IncomingCall(
            call_log_id=signal.call_log_id,
            chat_id=signal.chat_id,
            caller_id=signal.caller_id,
            caller_name=event.caller.display_name,
            caller_avatar=event.caller.avatar_url,
            call_type=CallType(event.call_type),
            signal_id=signal.id,
        )
        return (
            replace(
                state,
                phase=CallState.RINGING,
                active=None,
                incoming=incoming,
                error=None,
                notice=None,
                duration=0,
            ),
            [
                CancelTimer(RESET_TIMER),
                StartTimer(RING_TIMER, policy.ring_timeout, RingTimeout(signal.call_log_id)),
            ],
        )
    # Already busy with another call: auto-decline without touching it.
    return state, [
        SendSignal(signal.chat_id, signal.call_log_id, SignalType.BUSY),
        DeleteOwnSignals(signal.call_log_id),
    ]


def _on_answer_received(state: MachineState, event: AnswerReceived, policy: CallPolicy, now: float) -> Result:
    signal = event.signal
    if signal.caller_id == state.user_id:
        return _handled_elsewhere(state, signal)
    if not _same_call(state, signal):
        return _unchanged(state)
    active = state.active
    if active is None:
        return _unchanged(state)
    if not active.initiated_locally or state.phase is not CallState.RINGING:
        return _unchanged(state)
    active = replace(active, departed=active.departed - {signal.caller_id})
    return replace(state, phase=CallState.CONNECTING, active=active), [
        CancelTimer(RING_TIMER),
        DeleteOwnSignals(signal.call_log_id),
        StartTimer(CONNECT_TIMER, policy.connect_timeout, ConnectTimeout(active.call_ref)),
    ]


def _handled_elsewhere(state: MachineState, signal: CallSignal) -> Result:
    """Another device of the local user answered or declined the ring."""

    if not _pending_incoming(state, signal.call_log_id):
        return _unchanged(state)
    return (
        replace(state, phase=CallState.IDLE, incoming=None),
        [CancelTimer(RING_TIMER)],
    )


def _on_decline_received(state: MachineState, event: DeclineReceived, policy: CallPolicy, now: float) -> Result:
    signal = event.signal
    if signal.caller_id == state.user_id:
        return _handled_elsewhere(state, signal)
    if not _same_call(state, signal):
        return _unchanged(state)
    active = state.active
    if active is None:
        return _unchanged(state)
    if not active.initiated_locally or state.phase not in (CallState.RINGING, CallState.CONNECTING):
        return _unchanged(state)
    active = replace(active, departed=active.departed | {signal.caller_id})
    state = replace(state, active=active)
    if active.remaining:
        return _unchanged(state)
    error: CallError = RemoteBusy() if event.busy else CallDeclined()
    return _teardown(state, policy, now, error=error)


def _on_cancel_received(state: MachineState, event: CancelReceived, policy: CallPolicy, now: float) -> Result:
    signal = event.signal
    if _pending_incoming(state, signal.call_log_id):
        return _ended(state, policy, [CancelTimers()], active=None)
    if not _same_call(state, signal):
        return _unchanged(state)
    active = state.active
    if active is None:
        return _unchanged(state)
    if active.initiated_locally or signal.caller_id != active.initiator_id:
        return _unchanged(state)
    if active.ever_connected:
        return _teardown(state, policy, now, status=CallStatus.ENDED)
    # The caller gave up while our answer was in flight.
    status = CallStatus.DECLINED if active.token is not None else None
    return _teardown(state, policy, now, status=status)


def _on_hangup_received(state: MachineState, event: HangupReceived, policy: CallPolicy, now: float) -> Result:
    signal = event.signal
    if not _same_call(state, signal):
        return _unchanged(state)
    return _remote_gone(state, policy, now, signal.caller_id)


def _on_answer_call(state: MachineState, event: AnswerCall, policy: CallPolicy, now: float) -> Result:
    incoming = state.incoming
    if incoming is None or not _pending_incoming(state, incoming.call_log_id):
        return _unchanged(state)
    caller = Participant(
        id=incoming.caller_id,
        display_name=incoming.caller_name,
        avatar_url=incoming.caller_avatar,
    )
    active = ActiveCall(
        call_ref=event.call_ref,
        chat_id=incoming.chat_id,
        call_type=incoming.call_type,
        initiator_id=incoming.caller_id,
        initiated_locally=False,
        started_at=now,
        call_log_id=incoming.call_log_id,
        participants=(caller,),
        is_video_enabled=incoming.call_type is CallType.VIDEO,
    )
    return (
        replace(state, phase=CallState.CONNECTING, active=active, incoming=None, error=None),
        [
            CancelTimer(RING_TIMER),
            RequestToken(event.call_ref, incoming.chat_id, incoming.call_type),
        ],
    )


def _on_decline_call(state: MachineState, event: DeclineCall, policy: CallPolicy, now: float) -> Result:
    incoming = state.incoming
    if incoming is None or not _pending_incoming(state, incoming.call_log_id):
        return _unchanged(state)
    effects: list[Effect] = [
        CancelTimers(),
        SendSignal(incoming.chat_id, incoming.call_log_id, SignalType.DECLINE),
        UpdateCallLog(incoming.call_log_id, CallStatus.DECLINED),
        DeleteOwnSignals(incoming.call_log_id),
    ]
    return _ended(state, policy, effects, active=None)


def _on_end_call(state: MachineState, event: EndCall, policy: CallPolicy, now: float) -> Result:
    active = state.active
    if active is None or state.phase.is_idle:
        return _unchanged(state)
    return _local_end(state, policy, now)


def _on_dismiss_incoming(state: MachineState, event: DismissIncoming, policy: CallPolicy, now: float) -> Result:
    incoming = state.incoming
    if incoming is None or not _pending_incoming(state, incoming.call_log_id):
        return _unchanged(state)
    return replace(state, phase=CallState.IDLE, incoming=None), [CancelTimers()]


def _on_ring_timeout(state: MachineState, event: RingTimeout, policy: CallPolicy, now: float) -> Result:
    if _pending_incoming(state, event.call_ref):
        return _ended(state, policy, [CancelTimers()], active=None)
    if is_live(state, event.call_ref) and state.phase is CallState.RINGING:
        return _local_end(state, policy, now, error=NoAnswer())
    return _unchanged(state)


def _on_connect_timeout(state: MachineState, event: ConnectTimeout, policy: CallPolicy, now: float) -> Result:
    if is_live(state, event.call_ref) and state.phase is CallState.CONNECTING:
        return _local_end(state, policy, now, error=TransportFailure("Timed out connecting to the call"))
    return _unchanged(state)


def _on_tick(state: MachineState, event: DurationTick, policy: CallPolicy, now: float) -> Result:
    if not is_live(state, event.call_ref) or state.phase is not CallState.CONNECTED:
        return _unchanged(state)
    active = state.active
    if active is None:
        return _unchanged(state)
    return replace(state, duration=_duration(active, now)), []


def _on_video_warning(state: MachineState, event: VideoLimitWarning, policy: CallPolicy, now: float) -> Result:
    if not is_live(state, event.call_ref) or state.phase is not CallState.CONNECTED:
        return _unchanged(state)
    return replace(state, notice=VIDEO_LIMIT_WARNING_NOTICE), []


def _on_video_limit(state: MachineState, event: VideoLimitReached, policy: CallPolicy, now: float) -> Result:
    if not is_live(state, event.call_ref) or state.phase is not CallState.CONNECTED:
        return _unchanged(state)
    return _local_end(state, policy, now, notice=VIDEO_LIMIT_REACHED_NOTICE)


def _toggleable(state: MachineState) -> ActiveCall | None:
    if state.phase.is_idle:
        return None
    return state.active


def _on_toggle_mute(state: MachineState, event: ToggleMute, policy: CallPolicy, now: float) -> Result:
    active = _toggleable(state)
    if active is None:
        return _unchanged(state)
    muted = not active.is_muted
    return replace(state, active=replace(active, is_muted=muted)), [SetMuted(muted)]


def _on_toggle_video(state: MachineState, event: ToggleVideo, policy: CallPolicy, now: float) -> Result:
    active = _toggleable(state)
    if active is None:
        return _unchanged(state)
    enabled = not active.is_video_enabled
    return replace(state, active=replace(active, is_video_enabled=enabled)), [SetVideoEnabled(enabled)]


def _on_toggle_screen_share(state: MachineState, event: ToggleScreenShare, policy: CallPolicy, now: float) -> Result:
    active = _toggleable(state)
    if active is None:
        return _unchanged(state)
    enabled = not active.is_screen_sharing
    if enabled and not event.allowed:
        return replace(state, error=PermissionDenied("Screen sharing is not allowed")), []
    return (
        replace(state, active=replace(active, is_screen_sharing=enabled)),
        [SetScreenShare(enabled)],
    )


def _on_toggle_minimize(state: MachineState, event: ToggleMinimize, policy: CallPolicy, now: float) -> Result:
    if state.active is None:
        return _unchanged(state)
    return replace(state, active=replace(state.active, is_minimized=not state.active.is_minimized)), []


def _on_reset(state: MachineState, event: Reset, policy: CallPolicy, now: float) -> Result:
    if state.phase is not CallState.ENDED:
        return _unchanged(state)
    if event.call_ref is not None and state.active is not None and state.active.call_ref != event.call_ref:
        return _unchanged(state)
    return (
        replace(state, phase=CallState.IDLE, active=None, incoming=None, notice=None, duration=0),
        [CancelTimer(RESET_TIMER)],
    )


def _on_clear_error(state: MachineState, event: ClearError, policy: CallPolicy, now: float) -> Result:
    if state.error is None:
        return _unchanged(state)
    return replace(state, error=None), []


Handler = Callable[[MachineState, object, CallPolicy, float], Result]

_HANDLERS: dict[type, Handler] = {
    InitiateCall: _on_initiate,
    TokenGranted: _on_token_granted,
    TokenRejected: _on_token_rejected,
    CallLogCreated: _on_log_created,
    CallLogFailed: _on_log_failed,
    TransportFailed: _on_transport_failed,
    RemoteMediaChanged: _on_remote_media,
    RemoteLeft: _on_remote_left,
    RingReceived: _on_ring,
    AnswerReceived: _on_answer_received,
    DeclineReceived: _on_decline_received,
    CancelReceived: _on_cancel_received,
    HangupReceived: _on_hangup_received,
    AnswerCall: _on_answer_call,
    DeclineCall: _on_decline_call,
    EndCall: _on_end_call,
    DismissIncoming: _on_dismiss_incoming,
    RingTimeout: _on_ring_timeout,
    ConnectTimeout: _on_connect_timeout,
    DurationTick: _on_tick,
    VideoLimitWarning: _on_video_warning,
    VideoLimitReached: _on_video_limit,
    ToggleMute: _on_toggle_mute,
    ToggleVideo: _on_toggle_video,
    ToggleScreenShare: _on_toggle_screen_share,
    ToggleMinimize: _on_toggle_minimize,
    Reset: _on_reset,
    ClearError: _on_clear_error,
}

if set(_HANDLERS) != set(Event.__args__):  # type: ignore[attr-defined]
    raise RuntimeError("Every call event needs exactly one transition handler")


def transition(state: MachineState, event: Event, policy: CallPolicy, now: float) -> Result:
    """Apply ``event`` to ``state`` at monotonic time ``now``."""

    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unsupported call event: {type(event).__name__}")
    return handler(state, event, policy, now)


