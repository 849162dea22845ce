"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.security import decode_access_token
from app.database import get_db
from app.models import ChatMember, User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def _credentials_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Retrieve the current user from the JWT token."""

    return get_user_from_token(token, db)


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve an active user from a JWT token or raise an HTTP 401 error."""

    payload = decode_access_token(token)
    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub:
        raise _credentials_error()

    user = db.get(User, sub)
    if user is None or not user.is_active:
        raise _credentials_error()
    return user


def get_chat_member(chat_id: str, user_id: str, db: Session) -> ChatMember | None:
    """Return the current membership of ``user_id`` in ``chat_id`` if any."""

    stmt = select(ChatMember).where(
        ChatMember.chat_id == chat_id,
        ChatMember.user_id == user_id,
        ChatMember.left_at.is_(None),
    )
    return db.execute(stmt).scalar_one_or_none()


def require_chat_member(chat_id: str, user_id: str, db: Session) -> ChatMember:
    """Ensure the user currently belongs to the chat, raising HTTP 403 otherwise."""

    membership = get_chat_member(chat_id, user_id, db)
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a member of this chat",
        )
    return membership
