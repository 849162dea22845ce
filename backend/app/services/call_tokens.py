"""Media join token issuance with membership, permission and capacity checks."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from zemicall.calls.types import CallType, MediaToken, participant_uid

from app.api.deps import require_chat_member
from app.config import get_settings
from app.core.security import MediaTokenSigner
from app.models import CallParticipantGrant, User
from app.services.call_permissions import get_call_capabilities

logger = logging.getLogger(__name__)

settings = get_settings()


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def parse_chat_id(raw: str) -> str:
    """Return the canonical form of a chat UUID or raise HTTP 400."""

    try:
        return str(uuid.UUID(str(raw)))
    except (TypeError, ValueError):
        raise _bad_request("Invalid chatId") from None


def parse_call_type(raw: str) -> CallType:
    try:
        return CallType(raw)
    except ValueError:
        raise _bad_request("Invalid callType") from None


def count_active_grants(
    db: Session, chat_id: str, *, now: datetime, exclude_user_id: str | None = None
) -> int:
    """Count unreleased, unexpired grants on a chat's channel."""

    stmt = select(func.count(CallParticipantGrant.id)).where(
        CallParticipantGrant.chat_id == chat_id,
        CallParticipantGrant.released_at.is_(None),
        CallParticipantGrant.expires_at > now,
    )
    if exclude_user_id is not None:
        stmt = stmt.where(CallParticipantGrant.user_id != exclude_user_id)
    return int(db.execute(stmt).scalar_one())


def issue_call_token(
    db: Session,
    user: User,
    raw_chat_id: str,
    raw_call_type: str,
    *,
    signer: MediaTokenSigner | None,
    now: datetime | None = None,
) -> MediaToken:
    """Authorize *user* for the chat's call channel and sign a join token."""

    chat_id = parse_chat_id(raw_chat_id)
    call_type = parse_call_type(raw_call_type)
    require_chat_member(chat_id, user.id, db)

    if not get_call_capabilities(user, db).allows(call_type):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Call permission denied")

    if signer is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Media service is not configured",
        )

    now = now or datetime.now(timezone.utc)
    others = count_active_grants(db, chat_id, now=now, exclude_user_id=user.id)
    if others >= settings.max_call_participants:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Call is full")

    uid = participant_uid(user.id)
    expires_at = now + timedelta(seconds=settings.media_token_ttl_seconds)
    grant = db.execute(
        select(CallParticipantGrant).where(
            CallParticipantGrant.chat_id == chat_id,
            CallParticipantGrant.user_id == user.id,
        )
    ).scalar_one_or_none()
    if grant is None:
        grant = CallParticipantGrant(chat_id=chat_id, user_id=user.id)
        db.add(grant)
    grant.uid = uid
    grant.issued_at = now
    grant.expires_at = expires_at
    grant.released_at = None
    db.commit()

    token = signer.sign(channel=chat_id, uid=uid, expires_at=expires_at)
    logger.info("Issued %s call token for chat %s to user %s", call_type.value, chat_id, user.id)
    return MediaToken(token=token, app_id=signer.app_id, channel=chat_id, uid=uid)


def release_call_token(db: Session, user: User, raw_chat_id: str, *, now: datetime | None = None) -> bool:
    """Mark the user's grant for the chat as released; returns whether one was live."""

    chat_id = parse_chat_id(raw_chat_id)
    grant = db.execute(
        select(CallParticipantGrant).where(
            CallParticipantGrant.chat_id == chat_id,
            CallParticipantGrant.user_id == user.id,
            CallParticipantGrant.released_at.is_(None),
        )
    ).scalar_one_or_none()
    if grant is None:
        return False
    grant.released_at = now or datetime.now(timezone.utc)
    db.commit()
    return True
