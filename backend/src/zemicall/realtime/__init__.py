"""Realtime helpers for distributing call signals."""

from .transport import (  # noqa: F401
    BrokerConfig,
    RealtimeTransport,
    Subscription,
    TransportUnavailableError,
)

__all__ = [
    "BrokerConfig",
    "RealtimeTransport",
    "Subscription",
    "TransportUnavailableError",
]
