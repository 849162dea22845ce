"""Security helpers for access tokens and media join tokens."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Protocol

import jwt
from fastapi import HTTPException, status

from app.config import get_settings

settings = get_settings()


def create_access_token(data: Dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a signed JWT access token with an expiration time."""

    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta is not None else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT access token."""

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials") from exc
    return payload


class MediaTokenSigner(Protocol):
    """Produces the opaque credential a client presents to the media service."""

    app_id: str

    def sign(self, *, channel: str, uid: int, expires_at: datetime) -> str:
        ...


@dataclass(slots=True)
class JWTMediaTokenSigner:
    """Sign media join tokens as HS256 JWTs with the media app certificate.

    The media vendor's SDK only sees an opaque string; the claims mirror what
    its own token builders embed (app, channel, numeric uid, expiry).
    """

    app_id: str
    certificate: str

    def sign(self, *, channel: str, uid: int, expires_at: datetime) -> str:
        issued_at = datetime.now(timezone.utc)
        claims = {
            "iss": self.app_id,
            "channel": channel,
            "uid": uid,
            "role": "publisher",
            "iat": issued_at,
            "exp": expires_at,
            "nonce": secrets.token_hex(8),
        }
        return jwt.encode(claims, self.certificate, algorithm="HS256")


def get_media_token_signer() -> MediaTokenSigner | None:
    """Return the configured signer, or ``None`` when media is not configured."""

    if not settings.media_configured:
        return None
    return JWTMediaTokenSigner(
        app_id=settings.media_app_id or "",
        certificate=settings.media_app_certificate or "",
    )
