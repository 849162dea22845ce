"""Chat directory endpoints used by call clients."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, require_chat_member
from app.database import get_db
from app.models import Chat, ChatMember, User
from app.schemas import CallHistoryEntry, ChatRead, UserSummary
from app.services.call_logs import list_chat_calls

router = APIRouter(tags=["chats"])


@router.get("/chats", response_model=list[ChatRead])
def list_chats(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[ChatRead]:
    """Chats the current user is still a member of."""

    stmt = (
        select(Chat)
        .join(ChatMember, ChatMember.chat_id == Chat.id)
        .where(ChatMember.user_id == current_user.id, ChatMember.left_at.is_(None))
        .order_by(Chat.created_at, Chat.id)
    )
    return [ChatRead.model_validate(chat) for chat in db.execute(stmt).scalars()]


@router.get("/chats/{chat_id}/members", response_model=list[UserSummary])
def list_chat_members(
    chat_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[UserSummary]:
    require_chat_member(chat_id, current_user.id, db)
    stmt = (
        select(User)
        .join(ChatMember, ChatMember.user_id == User.id)
        .where(ChatMember.chat_id == chat_id, ChatMember.left_at.is_(None))
        .order_by(ChatMember.joined_at, ChatMember.id)
    )
    return [UserSummary.model_validate(user) for user in db.execute(stmt).scalars()]


@router.get("/chats/{chat_id}/calls", response_model=list[CallHistoryEntry])
def read_chat_calls(
    chat_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[CallHistoryEntry]:
    return list_chat_calls(db, current_user, chat_id, limit=limit)


@router.get("/users/{user_id}", response_model=UserSummary)
def read_user(
    user_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UserSummary:
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserSummary.model_validate(user)
