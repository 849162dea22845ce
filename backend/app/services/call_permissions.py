"""Call capability checks for Owner, Super and Texter accounts."""

from __future__ import annotations

from sqlalchemy.orm import Session

from zemicall.calls.types import CallCapabilities

from app.models import TexterSettings, User, UserRole


def get_call_capabilities(user: User, db: Session) -> CallCapabilities:
    """Return what *user* may do in a call.

    Texters without a settings row get no call features at all.
    """

    if user.role is not UserRole.TEXTER:
        return CallCapabilities()
    texter_settings = db.get(TexterSettings, user.id)
    if texter_settings is None:
        return CallCapabilities.for_role(user.role)
    return CallCapabilities.for_role(
        user.role,
        can_voice_call=texter_settings.can_voice_call,
        can_video_call=texter_settings.can_video_call,
        can_screen_share=texter_settings.can_screen_share,
    )
