"""Call endpoints: media tokens, call logs, signals and push fan-out."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from zemicall.realtime.managers import get_call_signal_manager

from app.api.deps import get_current_user
from app.config import get_settings
from app.core.security import MediaTokenSigner, get_media_token_signer
from app.database import get_db
from app.models import User
from app.schemas import (
    CallCapabilitiesRead,
    CallHistoryEntry,
    CallLogCreate,
    CallLogRead,
    CallLogUpdate,
    CallPushRequest,
    CallPushResult,
    CallSignalCreate,
    CallSignalRead,
    CallTokenRead,
    CallTokenRelease,
    CallTokenRequest,
)
from app.services.call_logs import (
    create_call_log,
    get_call_log,
    list_call_history,
    update_call_log,
)
from app.services.call_permissions import get_call_capabilities
from app.services.call_push import CallPushService, get_push_service
from app.services.call_signals import (
    delete_call_signal,
    insert_call_signal,
    serialize_signal,
)
from app.services.call_tokens import issue_call_token, release_call_token

settings = get_settings()
router = APIRouter(prefix="/calls", tags=["calls"])


@router.post("/token", response_model=CallTokenRead)
def request_call_token(
    payload: CallTokenRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    signer: MediaTokenSigner | None = Depends(get_media_token_signer),
) -> CallTokenRead:
    """Issue a media join token for the chat's call channel."""

    token = issue_call_token(db, current_user, payload.chat_id, payload.call_type, signer=signer)
    return CallTokenRead(token=token.token, app_id=token.app_id, channel=token.channel, uid=token.uid)


@router.post("/token/release", status_code=status.HTTP_204_NO_CONTENT)
def release_token(
    payload: CallTokenRelease,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Response:
    release_call_token(db, current_user, payload.chat_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/capabilities", response_model=CallCapabilitiesRead)
def read_capabilities(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CallCapabilitiesRead:
    capabilities = get_call_capabilities(current_user, db)
    return CallCapabilitiesRead(
        voice=capabilities.voice,
        video=capabilities.video,
        screen_share=capabilities.screen_share,
    )


@router.get("/history", response_model=list[CallHistoryEntry])
def read_call_history(
    history_filter: Literal["all", "missed"] = Query(default="all", alias="filter"),
    limit: int = Query(default=settings.call_history_default_limit, ge=1, le=settings.call_history_max_limit),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[CallHistoryEntry]:
    """Calls across the user's chats, newest first."""

    return list_call_history(db, current_user, history_filter=history_filter, limit=limit)


@router.post("/logs", response_model=CallLogRead, status_code=status.HTTP_201_CREATED)
def create_log(
    payload: CallLogCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CallLogRead:
    log = create_call_log(db, current_user, payload.chat_id, payload.call_type)
    return CallLogRead.model_validate(log)


@router.get("/logs/{call_log_id}", response_model=CallLogRead)
def read_log(
    call_log_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CallLogRead:
    return CallLogRead.model_validate(get_call_log(db, current_user, call_log_id))


@router.patch("/logs/{call_log_id}", response_model=CallLogRead)
def patch_log(
    call_log_id: str,
    payload: CallLogUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CallLogRead:
    """Advance a call log; stale or backward updates return the row unchanged."""

    log = update_call_log(
        db,
        current_user,
        call_log_id,
        payload.status,
        duration_seconds=payload.duration_seconds,
    )
    return CallLogRead.model_validate(log)


@router.post("/signals", response_model=CallSignalRead, status_code=status.HTTP_201_CREATED)
async def create_signal(
    payload: CallSignalCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CallSignalRead:
    """Store a signal and push it to the chat's realtime subscribers."""

    signal = insert_call_signal(
        db,
        current_user,
        payload.chat_id,
        payload.call_log_id,
        payload.signal_type,
    )
    serialized = serialize_signal(signal)
    await get_call_signal_manager().publish(serialized)
    return CallSignalRead.model_validate(serialized)


@router.delete("/signals/{signal_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_signal(
    signal_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Response:
    delete_call_signal(db, current_user, signal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/push", response_model=CallPushResult)
async def push_call(
    payload: CallPushRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    push_service: CallPushService = Depends(get_push_service),
) -> CallPushResult:
    """Notify the other members' devices about a ringing or cancelled call."""

    return await push_service.notify(
        db,
        current_user,
        chat_id=payload.chat_id,
        call_log_id=payload.call_log_id,
        call_type=payload.call_type,
        action=payload.action,
    )
