"""Call log persistence and history views."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.api.deps import require_chat_member
from app.models import CallLog, CallStatus, CallType, ChatMember, User
from app.schemas import CallHistoryEntry, UserSummary

logger = logging.getLogger(__name__)

HistoryFilter = Literal["all", "missed"]


def format_duration(seconds: int) -> str:
    """Render a duration as ``m:ss`` or ``h:mm:ss``."""

    seconds = max(int(seconds), 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def summary_key(call_type: CallType, call_status: CallStatus, duration_seconds: int | None) -> str:
    """Key the chat timeline uses to render a call entry, e.g. ``voice_call_ended|1:05``."""

    key = f"{CallType(call_type).value}_call_{CallStatus(call_status).value}"
    if call_status is CallStatus.ENDED and duration_seconds:
        key = f"{key}|{format_duration(duration_seconds)}"
    return key


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call log not found")


def create_call_log(
    db: Session,
    user: User,
    chat_id: str,
    call_type: CallType,
    *,
    now: datetime | None = None,
) -> CallLog:
    require_chat_member(chat_id, user.id, db)
    log = CallLog(
        chat_id=chat_id,
        initiator_id=user.id,
        call_type=call_type,
        status=CallStatus.MISSED,
        started_at=now or datetime.now(timezone.utc),
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def get_call_log(db: Session, user: User, call_log_id: str) -> CallLog:
    """Fetch a log the user may see: 404 when missing, 403 for non-members."""

    log = db.get(CallLog, call_log_id)
    if log is None:
        raise _not_found()
    require_chat_member(log.chat_id, user.id, db)
    return log


def update_call_log(
    db: Session,
    user: User,
    call_log_id: str,
    new_status: CallStatus,
    *,
    duration_seconds: int | None = None,
    now: datetime | None = None,
) -> CallLog:
    """Move a log forward; backward or sideways moves leave it untouched.

    Two devices may both try to record an outcome, so the first terminal
    status wins and later writes are ignored rather than rejected.
    """

    log = get_call_log(db, user, call_log_id)
    current = CallStatus(log.status)
    if not current.can_advance_to(new_status):
        logger.debug(
            "Ignoring call log %s update %s -> %s", call_log_id, current.value, CallStatus(new_status).value
        )
        return log

    log.status = CallStatus(new_status)
    if log.status is CallStatus.ENDED:
        log.duration_seconds = int(duration_seconds or 0)
    if log.status.is_terminal:
        log.ended_at = now or datetime.now(timezone.utc)
    db.commit()
    db.refresh(log)
    return log


def _active_members(db: Session, chat_ids: set[str]) -> dict[str, list[User]]:
    if not chat_ids:
        return {}
    rows = db.execute(
        select(ChatMember)
        .options(selectinload(ChatMember.user))
        .where(ChatMember.chat_id.in_(chat_ids), ChatMember.left_at.is_(None))
        .order_by(ChatMember.joined_at, ChatMember.id)
    ).scalars()
    members: dict[str, list[User]] = {}
    for membership in rows:
        members.setdefault(membership.chat_id, []).append(membership.user)
    return members


def _history_entries(db: Session, user: User, logs: list[CallLog]) -> list[CallHistoryEntry]:
    members = _active_members(db, {log.chat_id for log in logs})
    entries: list[CallHistoryEntry] = []
    for log in logs:
        if log.initiator_id == user.id:
            other = next(
                (member for member in members.get(log.chat_id, []) if member.id != user.id),
                None,
            )
        else:
            other = log.initiator
        entries.append(
            CallHistoryEntry(
                id=log.id,
                chat_id=log.chat_id,
                initiator_id=log.initiator_id,
                call_type=log.call_type,
                status=log.status,
                started_at=log.started_at,
                ended_at=log.ended_at,
                duration_seconds=log.duration_seconds,
                initiator=UserSummary.model_validate(log.initiator),
                other_participant=UserSummary.model_validate(other) if other is not None else None,
                summary=summary_key(log.call_type, log.status, log.duration_seconds),
            )
        )
    return entries


def list_call_history(
    db: Session,
    user: User,
    *,
    history_filter: HistoryFilter = "all",
    limit: int = 50,
) -> list[CallHistoryEntry]:
    """Calls in the user's current chats, newest first."""

    member_chats = select(ChatMember.chat_id).where(
        ChatMember.user_id == user.id,
        ChatMember.left_at.is_(None),
    )
    stmt = (
        select(CallLog)
        .options(selectinload(CallLog.initiator))
        .where(CallLog.chat_id.in_(member_chats))
        .order_by(CallLog.started_at.desc())
        .limit(limit)
    )
    if history_filter == "missed":
        stmt = stmt.where(
            CallLog.status == CallStatus.MISSED,
            CallLog.initiator_id != user.id,
        )
    logs = list(db.execute(stmt).scalars())
    return _history_entries(db, user, logs)


def list_chat_calls(db: Session, user: User, chat_id: str, *, limit: int = 20) -> list[CallHistoryEntry]:
    require_chat_member(chat_id, user.id, db)
    stmt = (
        select(CallLog)
        .options(selectinload(CallLog.initiator))
        .where(CallLog.chat_id == chat_id)
        .order_by(CallLog.started_at.desc())
        .limit(limit)
    )
    return _history_entries(db, user, list(db.execute(stmt).scalars()))
