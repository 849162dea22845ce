from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings

settings = get_settings()


def engine_options(url: str) -> dict[str, Any]:
    """Pool settings per backend.

    SQLite (local runs) gets a single-file connection shared across threads;
    MySQL keeps a pre-pinged pool sized for short signal and token requests.
    """
    if make_url(url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_size": 10, "max_overflow": 20, "pool_pre_ping": True, "pool_recycle": 1800}


engine = create_engine(settings.database_url, echo=settings.debug, future=True, **engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Session for call signal sockets and the expired signal purger.

    Both outlive a single request, so they open and close their own sessions
    around each unit of work instead of holding ``Depends(get_db)``.
    """
    with SessionLocal() as db:
        yield db
