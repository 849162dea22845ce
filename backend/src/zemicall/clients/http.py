"""HTTP adapter implementing the call ports against the call service."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from ..calls.errors import CallError, ServiceUnavailable, error_for_status
from ..calls.ports import SignalHandler, Subscription
from ..calls.types import (
    CallCapabilities,
    CallLog,
    CallSignal,
    CallStatus,
    CallType,
    MediaToken,
    Profile,
    SignalType,
)
from .ws import SignalFeed

logger = logging.getLogger(__name__)


class CallApiClient:
    """Authenticated client for the ``/api/calls`` endpoints.

    One instance implements the signal store, call log store, token service,
    directory and push notifier ports for the signed-in user. Signal
    subscriptions are served by a :class:`SignalFeed` over WebSockets.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        client: httpx.AsyncClient | None = None,
        feed: SignalFeed | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._owns_client = client is None
        self._feed = feed or SignalFeed(self.base_url, access_token)

    def _get_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def aclose(self) -> None:
        await self._feed.close()
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, headers=self._get_headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise ServiceUnavailable(f"Call service request failed: {exc}") from exc
        if response.status_code >= 400:
            raise error_for_status(response.status_code, _detail(response))
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # SignalStore -------------------------------------------------------
    async def insert(self, chat_id: str, call_log_id: str, signal_type: SignalType) -> CallSignal:
        payload = await self._request(
            "POST",
            "/api/calls/signals",
            json={
                "chat_id": chat_id,
                "call_log_id": call_log_id,
                "signal_type": SignalType(signal_type).value,
            },
        )
        return CallSignal.from_payload(payload)

    async def delete(self, signal_id: str) -> None:
        try:
            await self._request("DELETE", f"/api/calls/signals/{signal_id}")
        except CallError as exc:
            # Already expired and purged.
            if exc.status_code != 400:
                raise

    async def subscribe(self, chat_id: str, handler: SignalHandler) -> Subscription:
        return await self._feed.subscribe(chat_id, handler)

    # CallLogStore ------------------------------------------------------
    async def create(self, chat_id: str, call_type: CallType) -> CallLog:
        payload = await self._request(
            "POST",
            "/api/calls/logs",
            json={"chat_id": chat_id, "call_type": CallType(call_type).value},
        )
        return CallLog.from_payload(payload)

    async def update(
        self,
        call_log_id: str,
        status: CallStatus,
        *,
        duration_seconds: int | None = None,
    ) -> CallLog:
        body: dict[str, Any] = {"status": CallStatus(status).value}
        if duration_seconds is not None:
            body["duration_seconds"] = duration_seconds
        payload = await self._request("PATCH", f"/api/calls/logs/{call_log_id}", json=body)
        return CallLog.from_payload(payload)

    async def get(self, call_log_id: str) -> CallLog | None:
        try:
            payload = await self._request("GET", f"/api/calls/logs/{call_log_id}")
        except CallError as exc:
            if exc.status_code in (400, 403):
                return None
            raise
        return CallLog.from_payload(payload)

    # TokenService ------------------------------------------------------
    async def request_token(self, chat_id: str, call_type: CallType) -> MediaToken:
        payload = await self._request(
            "POST",
            "/api/calls/token",
            json={"chatId": chat_id, "callType": CallType(call_type).value},
        )
        return MediaToken.from_payload(payload)

    async def release(self, chat_id: str) -> None:
        await self._request("POST", "/api/calls/token/release", json={"chatId": chat_id})

    async def capabilities(self) -> CallCapabilities:
        payload = await self._request("GET", "/api/calls/capabilities")
        return CallCapabilities.from_payload(payload)

    # Directory ---------------------------------------------------------
    async def get_profile(self, user_id: str) -> Profile | None:
        try:
            payload = await self._request("GET", f"/api/users/{user_id}")
        except CallError as exc:
            if exc.status_code == 400:
                return None
            raise
        return Profile.from_payload(payload)

    async def chat_members(self, chat_id: str) -> Sequence[Profile]:
        payload = await self._request("GET", f"/api/chats/{chat_id}/members")
        return [Profile.from_payload(item) for item in payload]

    async def list_chats(self) -> Sequence[str]:
        payload = await self._request("GET", "/api/chats")
        return [str(item["id"]) for item in payload]

    # PushNotifier ------------------------------------------------------
    async def notify(self, chat_id: str, call_log_id: str, call_type: CallType, action: str) -> int:
        payload = await self._request(
            "POST",
            "/api/calls/push",
            json={
                "chatId": chat_id,
                "callLogId": call_log_id,
                "callType": CallType(call_type).value,
                "action": action,
            },
        )
        return int(payload.get("sent", 0))


def _detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        return detail if isinstance(detail, str) else None
    return None
