"""Network adapters for the call service."""

from .http import CallApiClient  # noqa: F401
from .ws import SignalFeed  # noqa: F401

__all__ = ["CallApiClient", "SignalFeed"]
