from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from zemicall.calls.errors import CallDeclined, CallInProgress, NoAnswer, PermissionDenied, RemoteBusy
from zemicall.calls.machine import (
    CONNECT_TIMER,
    RESET_TIMER,
    RING_TIMER,
    TICK_TIMER,
    VIDEO_LIMIT_REACHED_NOTICE,
    VIDEO_LIMIT_TIMER,
    VIDEO_WARNING_TIMER,
    AnswerCall,
    AnswerReceived,
    CallLogCreated,
    CallPolicy,
    CancelReceived,
    CancelTimer,
    CancelTimers,
    CreateCallLog,
    DeclineCall,
    DeclineReceived,
    DeleteOwnSignals,
    DismissIncoming,
    EndCall,
    HangupReceived,
    InitiateCall,
    JoinMedia,
    LeaveMedia,
    MachineState,
    NotifyPush,
    RemoteLeft,
    RemoteMediaChanged,
    RequestToken,
    Reset,
    RingReceived,
    RingTimeout,
    SendSignal,
    StartTimer,
    TokenGranted,
    TokenRejected,
    ToggleScreenShare,
    UpdateCallLog,
    VideoLimitReached,
    transition,
)
from zemicall.calls.types import (
    CallSignal,
    CallState,
    CallStatus,
    CallType,
    MediaToken,
    Participant,
    Profile,
    SignalType,
)

POLICY = CallPolicy()
CHAT = "3f0c2a4e-8f61-4c4e-9d57-0b8f1f7b3a10"
ME = "11111111-1111-4111-8111-111111111111"
PEER = "22222222-2222-4222-8222-222222222222"
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _signal(signal_type: SignalType, *, caller: str = PEER, call_log_id: str = "log-1", signal_id: str = "sig") -> CallSignal:
    return CallSignal(
        id=f"{signal_id}-{signal_type.value}",
        chat_id=CHAT,
        call_log_id=call_log_id,
        caller_id=caller,
        signal_type=signal_type,
        expires_at=NOW + timedelta(seconds=60),
        created_at=NOW,
    )


def _token() -> MediaToken:
    return MediaToken(token="t", app_id="app", channel=CHAT, uid=1)


def _run(state: MachineState, *events, now: float = 0.0):
    effects = []
    for event in events:
        state, produced = transition(state, event, POLICY, now)
        effects.extend(produced)
    return state, effects


def _ringing_caller(call_type: CallType = CallType.VOICE) -> MachineState:
    state, _ = _run(
        MachineState(user_id=ME),
        InitiateCall(CHAT, call_type, "ref"),
        TokenGranted("ref", _token(), (Participant(id=PEER, display_name="Peer"),)),
        CallLogCreated("ref", "log-1"),
    )
    return state


def _connected_caller(call_type: CallType = CallType.VOICE, now: float = 0.0) -> MachineState:
    state, _ = _run(
        _ringing_caller(call_type),
        AnswerReceived(_signal(SignalType.ANSWER)),
        RemoteMediaChanged(PEER, has_audio=True, has_video=False),
        now=now,
    )
    return state


def _ringing_callee() -> MachineState:
    state, _ = _run(
        MachineState(user_id=ME),
        RingReceived(_signal(SignalType.RING), Profile(id=PEER, display_name="Peer"), CallType.VOICE),
    )
    return state


def test_initiate_requests_token_then_creates_log_then_rings() -> None:
    state, effects = _run(MachineState(user_id=ME), InitiateCall(CHAT, CallType.VOICE, "ref"))
    assert state.phase is CallState.INITIATING
    assert RequestToken("ref", CHAT, CallType.VOICE) in effects

    state, effects = _run(state, TokenGranted("ref", _token()))
    assert effects == [CreateCallLog("ref", CHAT, CallType.VOICE)]

    state, effects = _run(state, CallLogCreated("ref", "log-1"))
    assert state.phase is CallState.RINGING
    assert state.active is not None and state.active.call_log_id == "log-1"
    assert effects[0] == SendSignal(CHAT, "log-1", SignalType.RING, call_ref="ref")
    assert StartTimer(RING_TIMER, 45.0, RingTimeout("ref")) in effects
    assert NotifyPush(CHAT, "log-1", CallType.VOICE, "ring", call_ref="ref") in effects
    assert any(isinstance(effect, JoinMedia) for effect in effects)


def test_initiate_while_busy_sets_call_in_progress() -> None:
    state = _ringing_caller()
    state, effects = _run(state, InitiateCall(CHAT, CallType.VOICE, "other"))
    assert state.error == CallInProgress()
    assert state.active is not None and state.active.call_ref == "ref"
    assert effects == []


def test_token_rejection_returns_to_idle_without_writes() -> None:
    state, _ = _run(MachineState(user_id=ME), InitiateCall(CHAT, CallType.VIDEO, "ref"))
    state, effects = _run(state, TokenRejected("ref", PermissionDenied()))
    assert state.phase is CallState.IDLE
    assert state.error == PermissionDenied()
    assert effects == [CancelTimers()]


def test_ring_timeout_cancels_and_records_missed() -> None:
    state, effects = _run(_ringing_caller(), RingTimeout("ref"), now=45.0)
    assert state.phase is CallState.ENDED
    assert state.error == NoAnswer()
    assert effects[0] == CancelTimers()
    assert SendSignal(CHAT, "log-1", SignalType.CANCEL) in effects
    assert NotifyPush(CHAT, "log-1", CallType.VOICE, "cancel") in effects
    assert UpdateCallLog("log-1", CallStatus.MISSED, None) in effects
    assert LeaveMedia(CHAT) in effects
    assert DeleteOwnSignals("log-1") in effects
    assert StartTimer(RESET_TIMER, 2.5, Reset("ref")) in effects


def test_answer_then_media_connects_and_starts_ticking() -> None:
    state, effects = _run(_ringing_caller(), AnswerReceived(_signal(SignalType.ANSWER)))
    assert state.phase is CallState.CONNECTING
    assert CancelTimer(RING_TIMER) in effects
    assert any(isinstance(e, StartTimer) and e.name == CONNECT_TIMER for e in effects)

    state, effects = _run(state, RemoteMediaChanged(PEER, has_audio=True, has_video=False), now=3.0)
    assert state.phase is CallState.CONNECTED
    assert state.active is not None and state.active.connected_at == 3.0
    assert any(isinstance(e, StartTimer) and e.name == TICK_TIMER and e.repeat for e in effects)


def test_connected_hangup_records_rounded_duration() -> None:
    state = _connected_caller(now=10.0)
    state, effects = _run(state, EndCall(), now=22.4)
    assert SendSignal(CHAT, "log-1", SignalType.HANGUP) in effects
    assert UpdateCallLog("log-1", CallStatus.ENDED, 12) in effects
    assert state.duration == 12


def test_video_call_schedules_limit_and_ends_with_notice() -> None:
    state = _connected_caller(CallType.VIDEO)
    assert state.phase is CallState.CONNECTED
    state, effects = _run(state, VideoLimitReached("ref"), now=3600.0)
    assert state.phase is CallState.ENDED
    assert state.notice == VIDEO_LIMIT_REACHED_NOTICE
    assert UpdateCallLog("log-1", CallStatus.ENDED, 3600) in effects


def test_video_timers_start_on_connect() -> None:
    state, _ = _run(_ringing_caller(CallType.VIDEO), AnswerReceived(_signal(SignalType.ANSWER)))
    _, effects = _run(state, RemoteMediaChanged(PEER, has_audio=True, has_video=True))
    names = {effect.name for effect in effects if isinstance(effect, StartTimer)}
    assert {VIDEO_WARNING_TIMER, VIDEO_LIMIT_TIMER, TICK_TIMER} <= names


def test_remote_decline_and_busy_tear_down_without_writes() -> None:
    state, effects = _run(_ringing_caller(), DeclineReceived(_signal(SignalType.DECLINE)))
    assert state.phase is CallState.ENDED
    assert state.error == CallDeclined()
    assert not any(isinstance(e, (SendSignal, UpdateCallLog)) for e in effects)

    state, _ = _run(_ringing_caller(), DeclineReceived(_signal(SignalType.BUSY), busy=True))
    assert state.error == RemoteBusy()


def test_remote_hangup_ends_connected_call() -> None:
    state = _connected_caller()
    state, effects = _run(state, HangupReceived(_signal(SignalType.HANGUP)), now=5.0)
    assert state.phase is CallState.ENDED
    assert UpdateCallLog("log-1", CallStatus.ENDED, 5) in effects
    assert not any(isinstance(e, SendSignal) for e in effects)


def test_ring_while_busy_auto_declines_without_touching_call() -> None:
    state = _connected_caller()
    ring = _signal(SignalType.RING, caller="33333333-3333-4333-8333-333333333333", call_log_id="log-2")
    new_state, effects = _run(state, RingReceived(ring, Profile(id=ring.caller_id, display_name="C"), CallType.VOICE))
    assert new_state == state
    assert effects == [SendSignal(CHAT, "log-2", SignalType.BUSY), DeleteOwnSignals("log-2")]


def test_callee_decline_records_declined() -> None:
    state, effects = _run(_ringing_callee(), DeclineCall())
    assert state.phase is CallState.ENDED
    assert state.incoming is None
    assert SendSignal(CHAT, "log-1", SignalType.DECLINE) in effects
    assert UpdateCallLog("log-1", CallStatus.DECLINED) in effects


def test_cancel_while_ringing_ends_without_writes() -> None:
    state, effects = _run(_ringing_callee(), CancelReceived(_signal(SignalType.CANCEL)))
    assert state.phase is CallState.ENDED
    assert state.incoming is None
    assert not any(isinstance(e, (SendSignal, UpdateCallLog)) for e in effects)


def test_cancel_while_answering_records_declined() -> None:
    state, _ = _run(_ringing_callee(), AnswerCall("answer-ref"), TokenGranted("answer-ref", _token()))
    assert state.phase is CallState.CONNECTING
    state, effects = _run(state, CancelReceived(_signal(SignalType.CANCEL)))
    assert state.phase is CallState.ENDED
    assert UpdateCallLog("log-1", CallStatus.DECLINED, None) in effects
    assert LeaveMedia(CHAT) in effects


def test_answer_from_own_other_device_clears_ringing() -> None:
    own_answer = _signal(SignalType.ANSWER, caller=ME)
    state, effects = _run(_ringing_callee(), AnswerReceived(own_answer))
    assert state.phase is CallState.IDLE
    assert state.incoming is None
    assert effects == [CancelTimer(RING_TIMER)]


def test_duplicate_ring_for_same_call_is_ignored() -> None:
    state = _ringing_callee()
    again, effects = _run(
        state,
        RingReceived(_signal(SignalType.RING, signal_id="other"), Profile(id=PEER, display_name="Peer"), CallType.VOICE),
    )
    assert again == state
    assert effects == []


def test_stale_results_for_previous_call_are_ignored() -> None:
    state, _ = _run(_ringing_caller(), EndCall())
    assert state.phase is CallState.ENDED
    after, effects = _run(state, CallLogCreated("ref", "log-9"), AnswerReceived(_signal(SignalType.ANSWER)))
    assert after == state
    assert effects == []


def test_reset_only_applies_to_matching_call() -> None:
    state, _ = _run(_ringing_caller(), EndCall())
    unchanged, _ = _run(state, Reset("someone-else"))
    assert unchanged.phase is CallState.ENDED
    idle, effects = _run(state, Reset("ref"))
    assert idle.phase is CallState.IDLE
    assert idle.active is None
    assert effects == [CancelTimer(RESET_TIMER)]


def test_screen_share_denied_sets_error_without_effect() -> None:
    state = _connected_caller()
    denied, effects = _run(state, ToggleScreenShare(allowed=False))
    assert denied.error == PermissionDenied("Screen sharing is not allowed")
    assert effects == []
    assert denied.active is not None and not denied.active.is_screen_sharing


def test_group_call_waits_for_every_participant_before_ending() -> None:
    third = "33333333-3333-4333-8333-333333333333"
    state, _ = _run(
        MachineState(user_id=ME),
        InitiateCall(CHAT, CallType.VOICE, "ref"),
        TokenGranted(
            "ref",
            _token(),
            (Participant(id=PEER, display_name="Peer"), Participant(id=third, display_name="Third")),
        ),
        CallLogCreated("ref", "log-1"),
    )
    state, _ = _run(state, DeclineReceived(_signal(SignalType.DECLINE)))
    assert state.phase is CallState.RINGING
    state, _ = _run(state, DeclineReceived(replace(_signal(SignalType.DECLINE, signal_id="b"), caller_id=third)))
    assert state.phase is CallState.ENDED


THIRD = "33333333-3333-4333-8333-333333333333"


def _connected_group_caller() -> MachineState:
    state, _ = _run(
        MachineState(user_id=ME),
        InitiateCall(CHAT, CallType.VOICE, "ref"),
        TokenGranted(
            "ref",
            _token(),
            (Participant(id=PEER, display_name="Peer"), Participant(id=THIRD, display_name="Third")),
        ),
        CallLogCreated("ref", "log-1"),
        AnswerReceived(_signal(SignalType.ANSWER)),
        RemoteMediaChanged(PEER, has_audio=True, has_video=False),
    )
    return state


def test_group_call_ends_when_last_joined_member_hangs_up() -> None:
    state = _connected_group_caller()
    assert state.phase is CallState.CONNECTED

    state, effects = _run(state, HangupReceived(_signal(SignalType.HANGUP)), now=30.0)
    assert state.phase is CallState.ENDED
    assert UpdateCallLog("log-1", CallStatus.ENDED, 30) in effects
    assert LeaveMedia(CHAT) in effects


def test_group_call_ends_when_last_joined_member_leaves_the_room() -> None:
    state, effects = _run(_connected_group_caller(), RemoteLeft(PEER), now=8.0)
    assert state.phase is CallState.ENDED
    assert UpdateCallLog("log-1", CallStatus.ENDED, 8) in effects


def test_group_call_continues_while_a_joined_member_remains() -> None:
    state, _ = _run(
        _connected_group_caller(),
        RemoteMediaChanged(THIRD, has_audio=True, has_video=False),
        HangupReceived(_signal(SignalType.HANGUP)),
    )
    assert state.phase is CallState.CONNECTED
    assert state.active is not None
    assert [p.id for p in state.active.in_room] == [THIRD]

    state, _ = _run(state, RemoteLeft(THIRD))
    assert state.phase is CallState.ENDED


def test_termination_after_the_call_is_over_changes_nothing() -> None:
    ended, _ = _run(_connected_caller(), EndCall(), now=4.0)
    idle, _ = _run(ended, Reset("ref"))
    declined, _ = _run(_ringing_callee(), DeclineCall())
    late = (
        CancelReceived(_signal(SignalType.CANCEL)),
        HangupReceived(_signal(SignalType.HANGUP)),
        DeclineReceived(_signal(SignalType.DECLINE)),
        DeclineReceived(_signal(SignalType.DECLINE, caller=ME)),
        EndCall(),
        DeclineCall(),
    )
    for state in (ended, idle, declined):
        for event in late:
            after, effects = _run(state, event, now=10.0)
            assert after == state, event
            assert effects == [], event


def test_dismissing_a_ring_clears_it_without_signalling() -> None:
    state, effects = _run(_ringing_callee(), DismissIncoming())
    assert state.phase is CallState.IDLE
    assert state.incoming is None
    assert effects == [CancelTimers()]

    again, effects = _run(state, DismissIncoming())
    assert again == state
    assert effects == []
