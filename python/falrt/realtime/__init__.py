"""
Realtime sessions over websockets: pooled, token-authenticated and throttled.
"""

from .connection import DEFAULT_THROTTLE_INTERVAL, RealtimeConnection, Throttle
from .pool import SessionPool
from .session import AiohttpTransport, Session, SessionState

__all__ = [
    "AiohttpTransport",
    "DEFAULT_THROTTLE_INTERVAL",
    "RealtimeConnection",
    "Session",
    "SessionPool",
    "SessionState",
    "Throttle",
]
