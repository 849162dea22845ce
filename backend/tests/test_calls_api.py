from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from app.core.security import create_access_token, get_media_token_signer
from app.main import app
from app.models import CallLog, CallParticipantGrant, CallSignal, ChatMember, PushToken, SignalType, UserRole
from app.services.call_logs import create_call_log, format_duration, summary_key, update_call_log
from app.services.call_push import CallPushService, get_push_service
from app.services.call_signals import purge_expired_signals
from app.services.call_tokens import issue_call_token
from zemicall.calls import CallStatus, CallType, participant_uid


def _token_request(chat_id: str, call_type: str = "voice") -> dict[str, str]:
    return {"chatId": chat_id, "callType": call_type}


def test_token_requires_authentication(client, make_user, make_chat) -> None:
    alice, bob = make_user("Alice"), make_user("Bob")
    chat = make_chat(alice, bob)

    response = client.post("/api/calls/token", json=_token_request(chat.id))

    assert response.status_code == 401


def test_token_rejects_expired_access_token(client, make_user, make_chat) -> None:
    alice = make_user("Alice")
    chat = make_chat(alice, make_user("Bob"))
    expired = create_access_token({"sub": alice.id}, expires_delta=timedelta(minutes=-1))

    response = client.post(
        "/api/calls/token",
        json=_token_request(chat.id),
        headers={"Authorization": f"Bearer {expired}"},
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Token has expired"


def test_token_for_inactive_user_is_unauthorized(client, make_user, make_chat, headers_for) -> None:
    ghost = make_user("Ghost", is_active=False)
    chat = make_chat(ghost, make_user("Bob"))

    response = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(ghost))

    assert response.status_code == 401


@pytest.mark.parametrize(
    ("chat_id", "call_type", "detail"),
    [
        ("not-a-uuid", "voice", "Invalid chatId"),
        (None, "screen", "Invalid callType"),
    ],
)
def test_token_validates_input(client, make_user, make_chat, headers_for, chat_id, call_type, detail) -> None:
    alice = make_user("Alice")
    chat = make_chat(alice, make_user("Bob"))

    response = client.post(
        "/api/calls/token",
        json=_token_request(chat_id or chat.id, call_type),
        headers=headers_for(alice),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == detail


def test_token_requires_membership(client, make_user, make_chat, headers_for) -> None:
    alice, bob, mallory = make_user("Alice"), make_user("Bob"), make_user("Mallory")
    chat = make_chat(alice, bob)

    response = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(mallory))

    assert response.status_code == 403
    assert response.json()["detail"] == "Not a member of this chat"


def test_token_is_signed_for_the_chat_channel(client, make_user, make_chat, headers_for, session_factory) -> None:
    alice = make_user("Alice")
    chat = make_chat(alice, make_user("Bob"))

    response = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(alice))

    assert response.status_code == 200
    body = response.json()
    assert body["appId"] == "test-app"
    assert body["channel"] == chat.id
    assert body["uid"] == participant_uid(alice.id)
    claims = jwt.decode(body["token"], "test-certificate", algorithms=["HS256"])
    assert claims["channel"] == chat.id
    assert claims["uid"] == body["uid"]
    assert claims["iss"] == "test-app"

    with session_factory() as session:
        grant = session.query(CallParticipantGrant).filter_by(chat_id=chat.id, user_id=alice.id).one()
        assert grant.released_at is None


def test_texter_without_video_permission_is_denied(client, make_user, make_chat, headers_for) -> None:
    texter = make_user("Tess", role=UserRole.TEXTER, can_voice_call=True, can_video_call=False)
    chat = make_chat(texter, make_user("Olive"))

    voice = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(texter))
    video = client.post("/api/calls/token", json=_token_request(chat.id, "video"), headers=headers_for(texter))

    assert voice.status_code == 200
    assert video.status_code == 403
    assert video.json()["detail"] == "Call permission denied"


def test_token_reports_unconfigured_media_service(client, make_user, make_chat, headers_for) -> None:
    alice = make_user("Alice")
    chat = make_chat(alice, make_user("Bob"))
    app.dependency_overrides[get_media_token_signer] = lambda: None

    response = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(alice))

    assert response.status_code == 503
    assert response.json()["detail"] == "Media service is not configured"


def test_fifth_participant_gets_conflict(client, make_user, make_chat, headers_for) -> None:
    users = [make_user(f"User {index}") for index in range(5)]
    chat = make_chat(*users)

    for user in users[:4]:
        response = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(user))
        assert response.status_code == 200

    rejected = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(users[4]))
    assert rejected.status_code == 409
    assert rejected.json()["detail"] == "Call is full"

    # Re-requesting does not count against the holder's own slot.
    again = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(users[0]))
    assert again.status_code == 200

    released = client.post("/api/calls/token/release", json={"chatId": chat.id}, headers=headers_for(users[1]))
    assert released.status_code == 204
    admitted = client.post("/api/calls/token", json=_token_request(chat.id), headers=headers_for(users[4]))
    assert admitted.status_code == 200


def test_expired_grants_free_capacity(db_session, make_user, make_chat, media_signer) -> None:
    users = [make_user(f"User {index}") for index in range(5)]
    chat = make_chat(*users)
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    for user in users[:4]:
        issue_call_token(db_session, user, chat.id, "voice", signer=media_signer, now=long_ago)

    token = issue_call_token(db_session, users[4], chat.id, "voice", signer=media_signer)

    assert token.channel == chat.id


@pytest.mark.parametrize(
    ("role", "flags", "expected"),
    [
        (UserRole.OWNER, {}, {"voice": True, "video": True, "screenShare": True}),
        (UserRole.SUPER, {}, {"voice": True, "video": True, "screenShare": True}),
        (UserRole.TEXTER, {}, {"voice": False, "video": False, "screenShare": False}),
        (
            UserRole.TEXTER,
            {"can_voice_call": True, "can_video_call": False, "can_screen_share": True},
            {"voice": True, "video": False, "screenShare": True},
        ),
    ],
)
def test_capabilities_follow_role(client, make_user, headers_for, role, flags, expected) -> None:
    user = make_user("Someone", role=role, **flags)

    response = client.get("/api/calls/capabilities", headers=headers_for(user))

    assert response.status_code == 200
    assert response.json() == expected


def test_call_log_only_moves_forward(client, make_user, make_chat, headers_for) -> None:
    alice, bob = make_user("Alice"), make_user("Bob")
    chat = make_chat(alice, bob)

    created = client.post(
        "/api/calls/logs",
        json={"chat_id": chat.id, "call_type": "voice"},
        headers=headers_for(alice),
    )
    assert created.status_code == 201
    log = created.json()
    assert log["status"] == "missed"
    assert log["initiator_id"] == alice.id
    assert log["ended_at"] is None

    answered = client.patch(f"/api/calls/logs/{log['id']}", json={"status": "answered"}, headers=headers_for(bob))
    assert answered.json()["status"] == "answered"

    ended = client.patch(
        f"/api/calls/logs/{log['id']}",
        json={"status": "ended", "duration_seconds": 65},
        headers=headers_for(alice),
    )
    assert ended.json()["status"] == "ended"
    assert ended.json()["duration_seconds"] == 65
    assert ended.json()["ended_at"] is not None

    for late_status in ("declined", "missed", "answered"):
        late = client.patch(
            f"/api/calls/logs/{log['id']}", json={"status": late_status}, headers=headers_for(bob)
        )
        assert late.status_code == 200
        assert late.json()["status"] == "ended"
        assert late.json()["duration_seconds"] == 65

    fetched = client.get(f"/api/calls/logs/{log['id']}", headers=headers_for(bob))
    assert fetched.json()["status"] == "ended"


def test_call_log_access_rules(client, make_user, make_chat, headers_for) -> None:
    alice, bob, mallory = make_user("Alice"), make_user("Bob"), make_user("Mallory")
    chat = make_chat(alice, bob)
    log = client.post(
        "/api/calls/logs", json={"chat_id": chat.id, "call_type": "video"}, headers=headers_for(alice)
    ).json()

    assert client.get(f"/api/calls/logs/{log['id']}", headers=headers_for(mallory)).status_code == 403
    assert client.get(f"/api/calls/logs/{uuid.uuid4()}", headers=headers_for(alice)).status_code == 404
    negative = client.patch(
        f"/api/calls/logs/{log['id']}",
        json={"status": "ended", "duration_seconds": -5},
        headers=headers_for(alice),
    )
    assert negative.status_code == 422
    outsider = client.post(
        "/api/calls/logs", json={"chat_id": chat.id, "call_type": "voice"}, headers=headers_for(mallory)
    )
    assert outsider.status_code == 403


def test_history_lists_calls_with_counterpart_and_summary(
    client, make_user, make_chat, headers_for, session_factory
) -> None:
    alice, bob, carol = make_user("Alice"), make_user("Bob"), make_user("Carol")
    with_bob = make_chat(alice, bob)
    with_carol = make_chat(alice, carol)
    start = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    with session_factory() as session:
        outgoing = create_call_log(session, alice, with_bob.id, CallType.VOICE, now=start)
        update_call_log(session, alice, outgoing.id, CallStatus.ENDED, duration_seconds=65, now=start)
        incoming = create_call_log(session, carol, with_carol.id, CallType.VIDEO, now=start + timedelta(hours=1))
        outgoing_id, incoming_id = outgoing.id, incoming.id

    response = client.get("/api/calls/history", headers=headers_for(alice))
    assert response.status_code == 200
    entries = response.json()
    assert [entry["id"] for entry in entries] == [incoming_id, outgoing_id]

    newest, oldest = entries
    assert newest["summary"] == "video_call_missed"
    assert newest["other_participant"]["display_name"] == "Carol"
    assert newest["initiator"]["id"] == carol.id
    assert oldest["summary"] == "voice_call_ended|1:05"
    assert oldest["other_participant"]["display_name"] == "Bob"
    assert oldest["started_at"].startswith("2024-03-01T09:00:00")

    missed = client.get("/api/calls/history", params={"filter": "missed"}, headers=headers_for(alice))
    assert [entry["id"] for entry in missed.json()] == [incoming_id]

    carol_missed = client.get("/api/calls/history", params={"filter": "missed"}, headers=headers_for(carol))
    assert carol_missed.json() == []

    limited = client.get("/api/calls/history", params={"limit": 1}, headers=headers_for(alice))
    assert [entry["id"] for entry in limited.json()] == [incoming_id]


def test_history_hides_chats_the_user_left(client, make_user, make_chat, headers_for, session_factory) -> None:
    alice, bob = make_user("Alice"), make_user("Bob")
    chat = make_chat(alice, bob)
    with session_factory() as session:
        create_call_log(session, bob, chat.id, CallType.VOICE)
        membership = session.query(ChatMember).filter_by(chat_id=chat.id, user_id=alice.id).one()
        membership.left_at = datetime.now(timezone.utc)
        session.commit()

    response = client.get("/api/calls/history", headers=headers_for(alice))

    assert response.json() == []
    assert client.get(f"/api/chats/{chat.id}/calls", headers=headers_for(alice)).status_code == 403


def test_signal_insert_delete_and_permissions(client, make_user, make_chat, headers_for) -> None:
    alice, bob, mallory = make_user("Alice"), make_user("Bob"), make_user("Mallory")
    chat = make_chat(alice, bob)
    log = client.post(
        "/api/calls/logs", json={"chat_id": chat.id, "call_type": "voice"}, headers=headers_for(alice)
    ).json()

    created = client.post(
        "/api/calls/signals",
        json={"chat_id": chat.id, "call_log_id": log["id"], "signal_type": "ring"},
        headers=headers_for(alice),
    )
    assert created.status_code == 201
    signal = created.json()
    assert signal["caller_id"] == alice.id
    assert signal["signal_type"] == "ring"
    created_at = datetime.fromisoformat(signal["created_at"].replace("Z", "+00:00"))
    expires_at = datetime.fromisoformat(signal["expires_at"].replace("Z", "+00:00"))
    assert expires_at - created_at == timedelta(seconds=60)

    outsider = client.post(
        "/api/calls/signals",
        json={"chat_id": chat.id, "call_log_id": log["id"], "signal_type": "answer"},
        headers=headers_for(mallory),
    )
    assert outsider.status_code == 403

    assert client.delete(f"/api/calls/signals/{signal['id']}", headers=headers_for(bob)).status_code == 403
    assert client.delete(f"/api/calls/signals/{signal['id']}", headers=headers_for(alice)).status_code == 204
    assert client.delete(f"/api/calls/signals/{signal['id']}", headers=headers_for(alice)).status_code == 404


def test_signal_must_reference_a_log_in_the_same_chat(client, make_user, make_chat, headers_for) -> None:
    alice, bob = make_user("Alice"), make_user("Bob")
    chat, other_chat = make_chat(alice, bob), make_chat(alice, bob)
    log = client.post(
        "/api/calls/logs", json={"chat_id": other_chat.id, "call_type": "voice"}, headers=headers_for(alice)
    ).json()

    mismatched = client.post(
        "/api/calls/signals",
        json={"chat_id": chat.id, "call_log_id": log["id"], "signal_type": "ring"},
        headers=headers_for(alice),
    )
    missing = client.post(
        "/api/calls/signals",
        json={"chat_id": chat.id, "call_log_id": str(uuid.uuid4()), "signal_type": "ring"},
        headers=headers_for(alice),
    )
    invalid = client.post(
        "/api/calls/signals",
        json={"chat_id": chat.id, "call_log_id": log["id"], "signal_type": "wave"},
        headers=headers_for(alice),
    )

    assert mismatched.status_code == 400
    assert missing.status_code == 404
    assert invalid.status_code == 422


def test_purge_removes_only_expired_signals(db_session, make_user, make_chat) -> None:
    alice = make_user("Alice")
    chat = make_chat(alice, make_user("Bob"))
    log = create_call_log(db_session, alice, chat.id, CallType.VOICE)
    now = datetime.now(timezone.utc)
    for offset in (-30, -1, 30):
        db_session.add(
            CallSignal(
                chat_id=chat.id,
                call_log_id=log.id,
                caller_id=alice.id,
                signal_type=SignalType.RING,
                created_at=now - timedelta(seconds=60),
                expires_at=now + timedelta(seconds=offset),
            )
        )
    db_session.commit()

    removed = purge_expired_signals(db_session, now=now)

    assert removed == 2
    assert db_session.query(CallSignal).count() == 1


def _push_service(handler) -> CallPushService:
    return CallPushService(
        enabled=True,
        endpoint="https://push.example/v1/projects/demo/messages:send",
        access_token="push-secret",
        transport=httpx.MockTransport(handler),
    )


def test_push_ring_reaches_other_members_and_drops_dead_tokens(
    client, make_user, make_chat, headers_for, session_factory
) -> None:
    alice = make_user("Alice", avatar_url="https://cdn.example/alice.png")
    bob, carol = make_user("Bob"), make_user("Carol")
    chat = make_chat(alice, bob, carol)
    with session_factory() as session:
        session.add_all(
            [
                PushToken(user_id=alice.id, token="alice-phone"),
                PushToken(user_id=bob.id, token="bob-phone"),
                PushToken(user_id=carol.id, token="carol-old"),
            ]
        )
        session.commit()

    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append({"auth": request.headers["Authorization"], **body["message"]})
        if body["message"]["token"] == "carol-old":
            return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})
        return httpx.Response(200, json={"name": "projects/demo/messages/1"})

    app.dependency_overrides[get_push_service] = lambda: _push_service(handler)
    log_id = str(uuid.uuid4())

    response = client.post(
        "/api/calls/push",
        json={"chatId": chat.id, "callLogId": log_id, "callType": "video", "action": "ring"},
        headers=headers_for(alice),
    )

    assert response.status_code == 200
    assert response.json() == {"sent": 1, "cleaned": 1}
    assert sorted(request["token"] for request in requests) == ["bob-phone", "carol-old"]
    ring = requests[0]
    assert ring["auth"] == "Bearer push-secret"
    assert ring["android"] == {"priority": "high"}
    assert ring["data"] == {
        "type": "incoming_call",
        "chatId": chat.id,
        "callLogId": log_id,
        "callType": "video",
        "callerId": alice.id,
        "callerName": "Alice",
        "callerAvatar": "https://cdn.example/alice.png",
    }
    with session_factory() as session:
        assert {row.token for row in session.query(PushToken)} == {"alice-phone", "bob-phone"}


def test_push_cancel_payload_and_disabled_service(client, make_user, make_chat, headers_for, session_factory) -> None:
    alice, bob = make_user("Alice"), make_user("Bob")
    chat = make_chat(alice, bob)
    with session_factory() as session:
        session.add(PushToken(user_id=bob.id, token="bob-phone"))
        session.commit()

    payloads: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content)["message"]["data"])
        return httpx.Response(
            400,
            json={"error": {"status": "FAILED_PRECONDITION", "details": [{"errorCode": "UNREGISTERED"}]}},
        )

    app.dependency_overrides[get_push_service] = lambda: _push_service(handler)
    body = {"chatId": chat.id, "callLogId": "log-1", "callType": "voice", "action": "cancel"}
    cancelled = client.post("/api/calls/push", json=body, headers=headers_for(alice))

    assert cancelled.json() == {"sent": 0, "cleaned": 1}
    assert payloads == [{"type": "call_cancelled", "chatId": chat.id, "callLogId": "log-1"}]

    app.dependency_overrides[get_push_service] = lambda: CallPushService(
        enabled=False, endpoint=None, access_token=None
    )
    disabled = client.post("/api/calls/push", json=body, headers=headers_for(alice))
    assert disabled.json() == {"sent": 0, "cleaned": 0}

    outsider = make_user("Mallory")
    assert client.post("/api/calls/push", json=body, headers=headers_for(outsider)).status_code == 403


def test_directory_endpoints(client, make_user, make_chat, headers_for, session_factory) -> None:
    alice, bob, carol = make_user("Alice"), make_user("Bob"), make_user("Carol")
    pair = make_chat(alice, bob)
    group = make_chat(alice, bob, carol, name="Team")
    make_chat(bob, carol)

    chats = client.get("/api/chats", headers=headers_for(alice)).json()
    assert {chat["id"] for chat in chats} == {pair.id, group.id}
    assert {chat["name"] for chat in chats if chat["is_group"]} == {"Team"}

    members = client.get(f"/api/chats/{group.id}/members", headers=headers_for(alice)).json()
    assert [member["display_name"] for member in members] == ["Alice", "Bob", "Carol"]

    profile = client.get(f"/api/users/{bob.id}", headers=headers_for(alice))
    assert profile.json() == {"id": bob.id, "display_name": "Bob", "avatar_url": None}
    assert client.get(f"/api/users/{uuid.uuid4()}", headers=headers_for(alice)).status_code == 404

    with session_factory() as session:
        create_call_log(session, bob, pair.id, CallType.VOICE)
    calls = client.get(f"/api/chats/{pair.id}/calls", headers=headers_for(alice)).json()
    assert [call["summary"] for call in calls] == ["voice_call_missed"]
    assert calls[0]["other_participant"]["id"] == bob.id


@pytest.mark.parametrize(
    ("seconds", "rendered"),
    [(0, "0:00"), (5, "0:05"), (65, "1:05"), (3600, "1:00:00"), (3725, "1:02:05")],
)
def test_format_duration(seconds, rendered) -> None:
    assert format_duration(seconds) == rendered


def test_summary_key_only_carries_duration_for_ended_calls() -> None:
    assert summary_key(CallType.VOICE, CallStatus.ENDED, 65) == "voice_call_ended|1:05"
    assert summary_key(CallType.VIDEO, CallStatus.DECLINED, None) == "video_call_declined"
    assert summary_key(CallType.VOICE, CallStatus.ENDED, 0) == "voice_call_ended"


def test_log_rows_keep_utc_timestamps(db_session, make_user, make_chat) -> None:
    alice = make_user("Alice")
    chat = make_chat(alice, make_user("Bob"))
    started = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    log = create_call_log(db_session, alice, chat.id, CallType.VOICE, now=started)
    db_session.expire_all()
    stored = db_session.get(CallLog, log.id)

    assert stored is not None
    assert stored.started_at.replace(tzinfo=timezone.utc) == started
