"""Push notification fan-out for incoming and cancelled calls."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.deps import require_chat_member
from app.config import get_settings
from app.models import CallType, ChatMember, PushToken, User
from app.schemas import CallPushResult

logger = logging.getLogger(__name__)

settings = get_settings()

_STALE_TOKEN_ERRORS = frozenset({"UNREGISTERED", "INVALID_ARGUMENT", "NOT_FOUND"})


class CallPushService:
    """Sends call push messages through the FCM HTTP v1 API."""

    def __init__(
        self,
        *,
        enabled: bool,
        endpoint: str | None,
        access_token: str | None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.enabled = bool(enabled and endpoint and access_token)
        self.endpoint = endpoint
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def build_data(
        action: str,
        *,
        chat_id: str,
        call_log_id: str,
        call_type: CallType,
        caller: User,
    ) -> dict[str, str]:
        """Data payload understood by the mobile call handler."""

        if action == "cancel":
            return {"type": "call_cancelled", "chatId": chat_id, "callLogId": call_log_id}
        return {
            "type": "incoming_call",
            "chatId": chat_id,
            "callLogId": call_log_id,
            "callType": CallType(call_type).value,
            "callerId": caller.id,
            "callerName": caller.display_name or "Unknown",
            "callerAvatar": caller.avatar_url or "",
        }

    @staticmethod
    def _is_stale_token(response: httpx.Response) -> bool:
        if response.status_code == 404:
            return True
        try:
            body: Any = response.json()
        except ValueError:
            return False
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return False
        if error.get("status") in _STALE_TOKEN_ERRORS:
            return True
        for detail in error.get("details") or []:
            if isinstance(detail, dict) and detail.get("errorCode") in _STALE_TOKEN_ERRORS:
                return True
        return False

    def recipients(self, db: Session, chat_id: str, caller_id: str) -> list[PushToken]:
        stmt = (
            select(PushToken)
            .join(ChatMember, ChatMember.user_id == PushToken.user_id)
            .where(
                ChatMember.chat_id == chat_id,
                ChatMember.left_at.is_(None),
                PushToken.user_id != caller_id,
            )
        )
        return list(db.execute(stmt).scalars())

    async def notify(
        self,
        db: Session,
        caller: User,
        *,
        chat_id: str,
        call_log_id: str,
        call_type: CallType,
        action: str,
    ) -> CallPushResult:
        """Push *action* to every other member's devices, dropping dead tokens."""

        require_chat_member(chat_id, caller.id, db)
        if not self.enabled:
            return CallPushResult(sent=0, cleaned=0)

        tokens = self.recipients(db, chat_id, caller.id)
        if not tokens:
            return CallPushResult(sent=0, cleaned=0)

        data = self.build_data(
            action,
            chat_id=chat_id,
            call_log_id=call_log_id,
            call_type=call_type,
            caller=caller,
        )
        sent = 0
        stale: list[PushToken] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for push_token in tokens:
                message = {
                    "message": {
                        "token": push_token.token,
                        "data": data,
                        "android": {"priority": "high"},
                    }
                }
                try:
                    response = await client.post(self.endpoint, json=message, headers=self._get_headers())
                except httpx.HTTPError:
                    logger.warning(
                        "Call push to user %s failed",
                        push_token.user_id,
                        exc_info=logger.isEnabledFor(logging.DEBUG),
                    )
                    continue
                if response.is_success:
                    sent += 1
                elif self._is_stale_token(response):
                    stale.append(push_token)
                else:
                    logger.warning(
                        "Push provider rejected call %s for user %s with HTTP %s",
                        action,
                        push_token.user_id,
                        response.status_code,
                    )

        for push_token in stale:
            db.delete(push_token)
        if stale:
            db.commit()
            logger.info("Removed %s unregistered push tokens", len(stale))
        return CallPushResult(sent=sent, cleaned=len(stale))


def get_push_service() -> CallPushService:
    endpoint = None
    if settings.fcm_project_id:
        endpoint = settings.fcm_endpoint.format(project_id=settings.fcm_project_id)
    return CallPushService(
        enabled=settings.push_notifications_enabled,
        endpoint=endpoint,
        access_token=settings.fcm_access_token,
        timeout=settings.push_timeout_seconds,
    )
