"""
falrt - Client SDK for model inference endpoints.

This module provides the main public API:

- FalClient: Synchronous client for one-shot runs and the queue
- AsyncFalClient: Asynchronous client, adds realtime connections
- RealtimeConnection: Handle returned by AsyncFalClient.connect
- SessionPool: Registry that shares realtime sockets between handles

Example usage:

    from falrt import AsyncFalClient

    async with AsyncFalClient() as client:
        connection = client.connect(
            "fal-ai/fast-lcm-diffusion",
            on_result=lambda result: print(result),
        )
        await connection.send({"prompt": "a moonlit harbour"})
"""

from .app_id import AppId, ensure_app_id_format, is_legacy_format
from .auth import TokenGrant, TokenProvider
from .client import AsyncFalClient, FalClient
from .config import ClientConfig, __version__, configure_logging
from .errors import (
    FalError,
    InvalidAppIdError,
    InvalidInputError,
    InvalidResultError,
    InvalidResultFormatError,
    InvalidUrlError,
    QueueTimeoutError,
    RealtimeConnectionError,
    ServerError,
    ServiceError,
    UnauthorizedError,
)
from .queue import (
    AsyncQueueClient,
    Completed,
    InProgress,
    InQueue,
    QueueClient,
    QueueStatus,
    RequestLog,
)
from .realtime import RealtimeConnection, Session, SessionPool, SessionState

__all__ = [
    # Clients
    "FalClient",
    "AsyncFalClient",
    "ClientConfig",
    "configure_logging",

    # Endpoint identifiers
    "AppId",
    "ensure_app_id_format",
    "is_legacy_format",

    # Queue
    "AsyncQueueClient",
    "QueueClient",
    "QueueStatus",
    "InQueue",
    "InProgress",
    "Completed",
    "RequestLog",

    # Realtime
    "RealtimeConnection",
    "Session",
    "SessionPool",
    "SessionState",
    "TokenGrant",
    "TokenProvider",

    # Exceptions
    "FalError",
    "ServerError",
    "InvalidUrlError",
    "InvalidResultFormatError",
    "UnauthorizedError",
    "QueueTimeoutError",
    "InvalidAppIdError",
    "RealtimeConnectionError",
    "InvalidInputError",
    "InvalidResultError",
    "ServiceError",

    # Version
    "__version__",
]
