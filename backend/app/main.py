import logging.config
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from zemicall.realtime.managers import get_call_signal_manager, shutdown_realtime, startup_realtime

from app.api.routes import router as api_router
from app.api.ws import router as ws_router
from app.config import get_settings
from app.database import get_db_session
from app.services.call_signals import SignalPurger


def build_logging_config(level: str) -> dict[str, Any]:
    """Root handler at *level*; the realtime transport always reports recovery at INFO."""

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": "%(asctime)s %(levelname)s [%(name)s] %(message)s"},
        },
        "handlers": {
            "default": {"class": "logging.StreamHandler", "formatter": "standard"},
        },
        "root": {"handlers": ["default"], "level": level.upper()},
        "loggers": {
            "zemicall.realtime.transport": {
                "handlers": ["default"],
                "level": "INFO",
                "propagate": False,
            },
        },
    }


settings = get_settings()

logging.config.dictConfig(build_logging_config(settings.log_level))

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.cors_origins],
    allow_origin_regex=settings.cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

signal_purger = SignalPurger(get_db_session, interval_seconds=settings.call_signal_purge_interval_seconds)


@app.get("/health", tags=["system"])
def health_check() -> dict[str, Any]:
    return {
        "status": "ok",
        "environment": settings.environment,
        "media": settings.media_configured,
        "signal_purger": signal_purger.running,
        "realtime_connections": get_call_signal_manager().connections.total_connections(),
    }


@app.on_event("startup")
async def _startup() -> None:
    await startup_realtime()
    signal_purger.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await signal_purger.stop()
    await shutdown_realtime()


app.include_router(api_router, prefix="/api")
app.include_router(ws_router)
