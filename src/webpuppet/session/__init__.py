"""Rendering session providers."""
from .base import Cookie, SessionEvent, SessionHandle, SessionProvider
from .cdp import CdpSessionProvider

__all__ = [
    "CdpSessionProvider",
    "Cookie",
    "SessionEvent",
    "SessionHandle",
    "SessionProvider",
]
