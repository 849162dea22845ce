"""Call signal rows: insertion, deletion and expiry purge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ContextManager

from fastapi import HTTPException, status
from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.api.deps import require_chat_member
from app.config import get_settings
from app.models import CallLog, CallSignal, SignalType, User
from app.schemas import CallSignalRead

logger = logging.getLogger(__name__)

settings = get_settings()


def serialize_signal(signal: CallSignal) -> dict[str, Any]:
    return CallSignalRead.model_validate(signal).model_dump(mode="json")


def insert_call_signal(
    db: Session,
    user: User,
    chat_id: str,
    call_log_id: str,
    signal_type: SignalType,
    *,
    now: datetime | None = None,
) -> CallSignal:
    """Store a signal authored by *user*; it expires after the configured TTL."""

    require_chat_member(chat_id, user.id, db)
    log = db.get(CallLog, call_log_id)
    if log is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call log not found")
    if log.chat_id != chat_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Call log belongs to a different chat",
        )

    now = now or datetime.now(timezone.utc)
    signal = CallSignal(
        chat_id=chat_id,
        call_log_id=call_log_id,
        caller_id=user.id,
        signal_type=SignalType(signal_type),
        created_at=now,
        expires_at=now + timedelta(seconds=settings.call_signal_ttl_seconds),
    )
    db.add(signal)
    db.commit()
    db.refresh(signal)
    return signal


def delete_call_signal(db: Session, user: User, signal_id: str) -> None:
    signal = db.get(CallSignal, signal_id)
    if signal is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Signal not found")
    if signal.caller_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot delete another user's signal",
        )
    db.delete(signal)
    db.commit()


def purge_expired_signals(db: Session, *, now: datetime | None = None) -> int:
    """Delete every signal whose ``expires_at`` has passed."""

    now = now or datetime.now(timezone.utc)
    result = db.execute(delete(CallSignal).where(CallSignal.expires_at <= now))
    db.commit()
    return int(result.rowcount or 0)


class SignalPurger:
    """Background task deleting expired signals on a fixed interval."""

    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]],
        *,
        interval_seconds: float,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> int:
        with self._session_factory() as db:
            removed = purge_expired_signals(db)
        if removed:
            logger.debug("Purged %s expired call signals", removed)
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.run_once()
            except Exception:
                logger.warning(
                    "Failed to purge expired call signals",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )

    def start(self) -> None:
        if self.running or self._interval <= 0:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
