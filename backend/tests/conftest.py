"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.api import ws as ws_module
from app.core.security import JWTMediaTokenSigner, create_access_token, get_media_token_signer
from app.database import get_db
from app.main import app
from app.models import Base, Chat, ChatMember, TexterSettings, User, UserRole
from zemicall.calls import ManualClock
from zemicall.calls.memory import InMemoryBackend


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def media_signer() -> JWTMediaTokenSigner:
    return JWTMediaTokenSigner(app_id="test-app", certificate="test-certificate")


@pytest.fixture()
def client(session_factory, media_signer, monkeypatch) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def override_get_db_session() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(ws_module, "get_db_session", override_get_db_session)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_media_token_signer] = lambda: media_signer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(session_factory) -> Callable[..., User]:
    """Factory creating a persisted user; Texter flags create a settings row."""

    def factory(
        display_name: str,
        *,
        role: UserRole = UserRole.OWNER,
        avatar_url: str | None = None,
        is_active: bool = True,
        can_voice_call: bool | None = None,
        can_video_call: bool | None = None,
        can_screen_share: bool | None = None,
    ) -> User:
        with session_factory() as session:
            user = User(display_name=display_name, role=role, avatar_url=avatar_url, is_active=is_active)
            session.add(user)
            session.flush()
            flags = (can_voice_call, can_video_call, can_screen_share)
            if any(flag is not None for flag in flags):
                session.add(
                    TexterSettings(
                        user_id=user.id,
                        can_voice_call=bool(can_voice_call),
                        can_video_call=bool(can_video_call),
                        can_screen_share=bool(can_screen_share),
                    )
                )
            session.commit()
            return user

    return factory


@pytest.fixture()
def make_chat(session_factory) -> Callable[..., Chat]:
    def factory(*members: User, name: str | None = None) -> Chat:
        with session_factory() as session:
            chat = Chat(name=name, is_group=len(members) > 2)
            session.add(chat)
            session.flush()
            for member in members:
                session.add(ChatMember(chat_id=chat.id, user_id=member.id))
            session.commit()
            return chat

    return factory


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}


@pytest.fixture()
def headers_for() -> Callable[[User], dict[str, str]]:
    return auth_headers


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def backend(clock) -> InMemoryBackend:
    """Loopback call backend sharing the simulated clock."""

    return InMemoryBackend(clock)
